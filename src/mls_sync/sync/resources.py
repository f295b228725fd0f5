"""
Resource definitions: what to fetch, how records are keyed, and when a
record counts as visible.

The MLS order matters: open houses are only kept when their listing is
already stored, so Property must be synced before OpenHouse.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from mls_sync.core import RecordFilter, SyncSettings

# default page size per MLS resource
MLS_BATCH_SIZES = {"Office": 500, "Member": 500, "Property": 1000, "OpenHouse": 500}


@dataclass(frozen=True)
class ResourceDefinition:
    """
    One resource type synced by the orchestrator.

    Attributes:
        name: Resource type used in reports and persistence
        endpoint: Collection path on the provider
        key_field: Record field holding the unique key
        expand: Related entities fetched with each record
        batch_size: Page size, None for the provider default
        record_filter: Client-side predicate; rejected records are not reconciled
        parent: (parent resource type, field holding the parent key)
        visibility_field: Field saying whether the record should be stored
        visible_by_default: Visibility when the field is missing
        watermark_field: Modification timestamp field
    """
    name: str
    endpoint: str
    key_field: str
    expand: Optional[str] = None
    batch_size: Optional[int] = None
    record_filter: Optional[RecordFilter] = None
    parent: Optional[Tuple[str, str]] = None
    visibility_field: Optional[str] = "MlgCanView"
    visible_by_default: bool = False
    watermark_field: str = "ModificationTimestamp"

    def key_of(self, record: Dict[str, Any]) -> Optional[str]:
        key = record.get(self.key_field)
        return None if key is None else str(key)

    def is_visible(self, record: Dict[str, Any]) -> bool:
        if self.visibility_field is None:
            return True
        value = record.get(self.visibility_field)
        if value is None:
            return self.visible_by_default
        return bool(value)


def location_filter(
    state_or_province: Optional[str], county_or_parish: Optional[str]
) -> Optional[RecordFilter]:
    """Keep listings in one state and county; None disables that check."""
    if not state_or_province and not county_or_parish:
        return None

    def in_area(record: Dict[str, Any]) -> bool:
        if state_or_province and record.get("StateOrProvince") != state_or_province:
            return False
        if county_or_parish and record.get("CountyOrParish") != county_or_parish:
            return False
        return True

    return in_area


def vintage_filter(vintages: List[int]) -> Optional[RecordFilter]:
    if not vintages:
        return None
    wanted = set(vintages)

    def in_vintages(record: Dict[str, Any]) -> bool:
        return record.get("c_vintage") in wanted

    return in_vintages


def default_mls_resources(settings: Optional[SyncSettings] = None) -> List[ResourceDefinition]:
    """Office, Member, Property, OpenHouse, in sync order."""
    settings = settings or SyncSettings()

    def batch(name: str) -> Optional[int]:
        return settings.batch_size_for(name, MLS_BATCH_SIZES[name])

    return [
        ResourceDefinition(
            name="Office",
            endpoint="Office",
            key_field="OfficeKey",
            expand="Media",
            batch_size=batch("Office"),
        ),
        ResourceDefinition(
            name="Member",
            endpoint="Member",
            key_field="MemberKey",
            expand="Media",
            batch_size=batch("Member"),
        ),
        ResourceDefinition(
            name="Property",
            endpoint="Property",
            key_field="ListingKey",
            expand="Media,Rooms,UnitTypes",
            batch_size=batch("Property"),
            record_filter=location_filter(settings.state_or_province, settings.county_or_parish),
        ),
        ResourceDefinition(
            name="OpenHouse",
            endpoint="OpenHouse",
            key_field="OpenHouseKey",
            batch_size=batch("OpenHouse"),
            parent=("Property", "ListingKey"),
        ),
    ]


def census_resources(settings: Optional[SyncSettings] = None) -> List[ResourceDefinition]:
    """The Census dataset catalog as a single resource."""
    settings = settings or SyncSettings()
    return [
        ResourceDefinition(
            name="CensusDataset",
            endpoint="data.json",
            key_field="identifier",
            record_filter=vintage_filter(settings.census_vintages),
            visibility_field="c_isAvailable",
            visible_by_default=True,
            watermark_field="modified",
        ),
    ]
