"""Per-run emergency stop shared by every resource sync in that run."""
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class EmergencyStop:
    """
    Cooperative cancellation token.

    Once tripped it stays tripped; the first reason wins. Pagination checks
    it before every fetch, the orchestrator before every resource.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    def trip(self, reason: str) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
        logger.error(f"Emergency stop: {reason}")

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason
