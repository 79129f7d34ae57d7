"""
Capacity resolution for resources whose real usage only shows up in telemetry.

Kinds with an authoritative size property are read directly. Telemetry-backed
kinds walk an ordered chain of lookups and take the first strictly positive
value:

  1. daily Maximum filtered by the exact sub-identity label (e.g. share name)
  2. the same query with the label lower-cased (control plane and telemetry
     plane disagree on case)
  3. hourly Average without a label filter, only for unlabelled records;
     a labelled record shares its target with its siblings, so the
     unfiltered total would be counted once per label
  4. a direct usage probe against the resource (slow, last resort)

If nothing comes back positive the capacity is 0. That is a valid state; the
resource is still counted and shows up as incomplete.

The network calls themselves belong to the collector and are injected as a
CapacityProbe.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .constants import (
    AGGREGATION_AVERAGE,
    AGGREGATION_MAXIMUM,
    INTERVAL_DAILY,
    INTERVAL_HOURLY,
    WORKLOAD_BLOB,
    WORKLOAD_COSMOSDB,
    WORKLOAD_DATA_LAKE,
    WORKLOAD_FILES,
    WORKLOAD_STORAGE_ACCOUNT,
    WORKLOAD_TABLE,
)
from .models import ResourceRecord
from .units import to_bytes
from .utils import AuthError

logger = logging.getLogger(__name__)

SOURCE_DIRECT = "direct"
SOURCE_FILTERED = "filtered"
SOURCE_FILTERED_LOWER = "filtered_lowercase"
SOURCE_COARSE = "coarse"
SOURCE_USAGE_PROBE = "usage_probe"
SOURCE_NONE = "none"

# metric_query(target, metric_name, aggregation, interval, dimension, label)
MetricQuery = Callable[[str, str, str, str, Optional[str], Optional[str]], Optional[float]]
UsageProbe = Callable[[ResourceRecord], Optional[float]]


@dataclass(frozen=True)
class MetricSpec:
    """How a workload kind's usage is observed in telemetry."""
    metric_name: str
    dimension: Optional[str] = None


KIND_METRIC_SPECS: Dict[str, MetricSpec] = {
    WORKLOAD_STORAGE_ACCOUNT: MetricSpec('UsedCapacity'),
    WORKLOAD_BLOB: MetricSpec('BlobCapacity'),
    WORKLOAD_DATA_LAKE: MetricSpec('BlobCapacity'),
    WORKLOAD_FILES: MetricSpec('FileCapacity', dimension='FileShare'),
    WORKLOAD_TABLE: MetricSpec('TableCapacity'),
    WORKLOAD_COSMOSDB: MetricSpec('DataUsage'),
}


@dataclass
class CapacityProbe:
    """Collector-supplied callbacks used by the resolution chain."""
    metric_query: Optional[MetricQuery] = None
    usage_probe: Optional[UsageProbe] = None


@dataclass
class ResolutionOutcome:
    bytes: int = 0
    source: str = SOURCE_NONE
    errors: List[str] = field(default_factory=list)


class MetricResolutionChain:
    """Resolves a record's capacity in bytes."""

    def __init__(self, probe: Optional[CapacityProbe] = None,
                 specs: Optional[Dict[str, MetricSpec]] = None):
        self.probe = probe or CapacityProbe()
        self.specs = KIND_METRIC_SPECS if specs is None else specs

    def resolve_capacity(self, record: ResourceRecord) -> int:
        return self.resolve(record).bytes

    def resolve(self, record: ResourceRecord) -> ResolutionOutcome:
        outcome = ResolutionOutcome()

        if record.capacity_bytes is not None:
            outcome.bytes = to_bytes(record.capacity_bytes)
            outcome.source = SOURCE_DIRECT
            return outcome

        spec = self.specs.get(record.workload_kind)
        if spec is None:
            return outcome

        for source, step in self._steps(record, spec):
            try:
                value = step()
            except AuthError:
                raise
            except Exception as e:
                logger.debug(f"Capacity step '{source}' failed for {record.identity}: {e}")
                outcome.errors.append(f"{source}: {e}")
                continue

            resolved = to_bytes(value)
            if resolved > 0:
                outcome.bytes = resolved
                outcome.source = source
                return outcome

        return outcome

    def _steps(self, record: ResourceRecord, spec: MetricSpec):
        """Yield (source, thunk) pairs in priority order, skipping inapplicable steps."""
        query = self.probe.metric_query
        target = record.metric_target or record.identity
        label = record.metric_label

        if query is not None:
            if spec.dimension and label:
                yield SOURCE_FILTERED, lambda: query(
                    target, spec.metric_name, AGGREGATION_MAXIMUM, INTERVAL_DAILY,
                    spec.dimension, label)
                if label.lower() != label:
                    yield SOURCE_FILTERED_LOWER, lambda: query(
                        target, spec.metric_name, AGGREGATION_MAXIMUM, INTERVAL_DAILY,
                        spec.dimension, label.lower())
            else:
                # Unfiltered totals cover every label on the target
                yield SOURCE_COARSE, lambda: query(
                    target, spec.metric_name, AGGREGATION_AVERAGE, INTERVAL_HOURLY,
                    None, None)

        usage_probe = self.probe.usage_probe
        if usage_probe is not None:
            yield SOURCE_USAGE_PROBE, lambda: usage_probe(record)
