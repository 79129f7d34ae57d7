"""
Data models for the CCA capacity roll-up engine.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

from .constants import (
    DEFAULT_REGION,
    ON_PREMISES_SOURCE_KINDS,
    ROLLUP_OWN_BUCKET,
)
from .units import to_gib, to_tib


def normalize_region(region: Optional[str]) -> str:
    """Normalize a location code: 'East US ' -> 'eastus', blank -> 'Unknown'."""
    if not region or not str(region).strip():
        return DEFAULT_REGION
    code = ''.join(str(region).split()).lower()
    # Collectors may pass the placeholder back in any case
    if code == DEFAULT_REGION.lower():
        return DEFAULT_REGION
    return code


@dataclass(frozen=True)
class ResourceRecord:
    """
    One discovered cloud object, in the shape collectors hand to the engine.

    capacity_bytes is None until resolved; a collector that already has an
    authoritative size (e.g. a database's max size) sets it directly.
    """
    workload_kind: str
    identity: str
    display_name: str = ""
    region: str = DEFAULT_REGION
    parent_identity: Optional[str] = None
    capacity_bytes: Optional[int] = None
    rollup_policy: str = ROLLUP_OWN_BUCKET

    # Detail-only fields, never part of an aggregation key
    account_id: Optional[str] = None
    resource_group: Optional[str] = None
    metric_target: Optional[str] = None  # telemetry sub-identity
    metric_label: Optional[str] = None   # e.g. the file share name
    labels: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


class AggregateKey(NamedTuple):
    workload: str
    region: str


@dataclass
class AggregateCell:
    """Counters for one (workload, region) cell."""
    workload: str
    region: str
    count: int = 0
    bytes: int = 0

    @property
    def key(self) -> AggregateKey:
        return AggregateKey(self.workload, self.region)

    @property
    def size_gib(self) -> float:
        return to_gib(self.bytes)

    @property
    def size_tib(self) -> float:
        return to_tib(self.bytes)

    def to_dict(self) -> Dict:
        """Convert to a report row."""
        return {
            'region': self.region,
            'workload': self.workload,
            'count': self.count,
            'size_gib': self.size_gib,
            'size_tib': self.size_tib,
        }


class Contribution(NamedTuple):
    """One increment emitted by the attribution router."""
    key: AggregateKey
    count_delta: int
    byte_delta: int


@dataclass(frozen=True)
class ProtectionRecord:
    """One backup-protected item."""
    workload_kind: str
    region: str
    source_kind: str
    protected_identity: Optional[str] = None

    @property
    def is_on_premises(self) -> bool:
        return self.source_kind in ON_PREMISES_SOURCE_KINDS


@dataclass
class ProtectionRow:
    """
    Protection coverage for one (workload, region) cell.

    protected_size_tib is a proportional estimate (cell TiB times the
    protected fraction), not a measured backup size.
    """
    region: str
    workload: str
    discovered: int = 0
    protected: int = 0
    percent_protected: int = 0
    protected_size_tib: float = 0.0
    on_prem_flag: bool = False

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass
class CompletenessRow:
    workload: str
    discovered: int = 0
    with_size: int = 0
    completeness_percent: float = 100.0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class RecordSkip:
    """A record rejected at the engine boundary."""
    identity: str
    reason: str


@dataclass
class DataQualityEvent:
    """A recorded, countable data-quality note (never fatal)."""
    kind: str
    identity: str = ""
    detail: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class CollectorResult:
    """
    Outcome of one collector call (one resource kind in one subscription).

    A failed call carries an error message and whatever records it produced
    before failing; those partial records are still valid input.
    Nested failures that did not stop the call (one storage account, one
    server) land in partial_errors.
    """
    name: str
    account_id: Optional[str] = None
    records: List[ResourceRecord] = field(default_factory=list)
    protection_records: List[ProtectionRecord] = field(default_factory=list)
    error: Optional[str] = None
    partial_errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def summary(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'account_id': self.account_id,
            'records': len(self.records),
            'protection_records': len(self.protection_records),
            'error': self.error,
            'partial_errors': list(self.partial_errors),
        }
