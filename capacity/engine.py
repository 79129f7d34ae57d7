"""
Capacity roll-up engine.

Wires the pipeline together for one run:

    validate -> resolve capacity -> route -> accumulate
                                  \\-> anonymized detail row

Records that attribute their bytes to a parent (attached disks) are held
back until finalize(), when every parent of the run has been registered.
That keeps the result independent of the order collectors deliver in.

The engine is safe to feed from several collection threads at once.
finalize() must run after every ingest has returned.
"""
import logging
import threading
from collections import Counter
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from .config import EngineConfig
from .constants import (
    EVENT_COLLECTOR_FAILURE,
    EVENT_ORPHAN,
    EVENT_PROBE_ERROR,
    EVENT_SKIP,
    ROLLUP_POLICIES,
)
from .metrics import CapacityProbe, MetricResolutionChain, ResolutionOutcome
from .models import (
    AggregateCell,
    CollectorResult,
    CompletenessRow,
    DataQualityEvent,
    ProtectionRecord,
    ProtectionRow,
    RecordSkip,
    ResourceRecord,
    normalize_region,
)
from .protection import correlate
from .pseudonymize import Pseudonymizer
from .router import AttributionRouter
from .store import AggregationStore
from .units import to_gib

logger = logging.getLogger(__name__)


class CapacityEngine:
    """
    One aggregation run.

    Args:
        config: Validated engine settings (anonymization, storage mode)
        probe: Default capacity probe for records that need telemetry
    """

    def __init__(self, config: Optional[EngineConfig] = None, probe: Optional[CapacityProbe] = None):
        self.config = config or EngineConfig()
        self.store = AggregationStore()
        self.router = AttributionRouter(self.config.storage_aggregation_mode)
        self.pseudonymizer = Pseudonymizer(self.config.anonymize_scope, self.config.anonymize_salt)
        self.chain = MetricResolutionChain(probe)

        self._deferred: List[ResourceRecord] = []
        self._details: List[Dict] = []
        self._events: List[DataQualityEvent] = []
        self._skips: List[RecordSkip] = []
        self._protection: List[ProtectionRecord] = []
        self._lock = threading.Lock()
        self._finalized = False

    # =========================================================================
    # Input
    # =========================================================================

    def ingest(self, record: ResourceRecord, probe: Optional[CapacityProbe] = None) -> Optional[RecordSkip]:
        """
        Feed one record through the pipeline.

        Returns a RecordSkip when the record is rejected at the boundary,
        None otherwise.
        """
        reason = self._validate(record)
        if reason:
            return self._skip(record, reason)

        record = replace(record, region=normalize_region(record.region))

        chain = MetricResolutionChain(probe, self.chain.specs) if probe is not None else self.chain
        outcome = chain.resolve(record)
        if outcome.errors and outcome.bytes == 0:
            self._event(EVENT_PROBE_ERROR, self._anonymize_id(record.identity),
                        self._step_errors(outcome.errors))

        resolved = replace(record, capacity_bytes=outcome.bytes)
        self._add_detail(resolved, outcome)

        if self.router.wants_parent(resolved) and not self._finalized:
            with self._lock:
                self._deferred.append(resolved)
            return None

        self._route(resolved)
        return None

    def ingest_many(self, records: Iterable[ResourceRecord],
                    probe: Optional[CapacityProbe] = None) -> List[RecordSkip]:
        skips = []
        for record in records:
            skip = self.ingest(record, probe)
            if skip:
                skips.append(skip)
        return skips

    def ingest_protection(self, records: Iterable[ProtectionRecord]) -> None:
        records = list(records)
        with self._lock:
            self._protection.extend(records)

    def ingest_result(self, result: CollectorResult, probe: Optional[CapacityProbe] = None) -> List[RecordSkip]:
        """Consume one collector call's output, including its partial records on failure."""
        failures = list(result.partial_errors)
        if not result.ok:
            failures.append(result.error)
        for message in failures:
            logger.debug(f"Collector {result.name} reported failure: {message}")
            detail = self.scrub_message(message)
            if result.account_id:
                detail = f"{result.account_id}: {detail}"
            self._event(EVENT_COLLECTOR_FAILURE, result.name, detail)
        skips = self.ingest_many(result.records, probe)
        self.ingest_protection(result.protection_records)
        return skips

    def finalize(self) -> None:
        """Route the deferred parent-attributed records. Safe to call more than once."""
        with self._lock:
            deferred, self._deferred = self._deferred, []
            self._finalized = True
        for record in deferred:
            self._route(record)
        if deferred:
            logger.debug(f"Routed {len(deferred)} parent-attributed record(s)")

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    @staticmethod
    def _validate(record: ResourceRecord) -> Optional[str]:
        if not record.identity or not str(record.identity).strip():
            return "blank identity"
        if not record.workload_kind or not str(record.workload_kind).strip():
            return "blank workload kind"
        if record.rollup_policy not in ROLLUP_POLICIES:
            return f"invalid rollup policy {record.rollup_policy!r}"
        return None

    def _skip(self, record: ResourceRecord, reason: str) -> RecordSkip:
        skip = RecordSkip(identity=record.identity or "", reason=reason)
        logger.debug(f"Skipping malformed record {skip.identity!r}: {reason}")
        with self._lock:
            self._skips.append(skip)
        self._event(EVENT_SKIP, self._anonymize_id(skip.identity), reason)
        return skip

    def _route(self, record: ResourceRecord) -> None:
        resolved_bytes = record.capacity_bytes or 0

        if not self.router.wants_parent(record):
            self.router.register(record)
        elif self.router.is_orphan(record):
            self._event(
                EVENT_ORPHAN,
                self._anonymize_id(record.identity),
                f"parent {self._anonymize_id(record.parent_identity)} not seen",
            )

        for contribution in self.router.route(record, resolved_bytes):
            self.store.accumulate(*contribution)
        self.store.record_discovery(record.workload_kind, resolved_bytes)

    def _add_detail(self, record: ResourceRecord, outcome: ResolutionOutcome) -> None:
        row = {
            'workload': record.workload_kind,
            'region': record.region,
            'identity': record.identity,
            'display_name': record.display_name,
            'parent_identity': record.parent_identity or '',
            'account_id': record.account_id or '',
            'resource_group': record.resource_group or '',
            'rollup_policy': record.rollup_policy,
            'contributes_bytes': self.router.contributes_bytes(record),
            'capacity_bytes': outcome.bytes,
            'size_gib': to_gib(outcome.bytes),
            'capacity_source': outcome.source,
            'labels': dict(record.labels),
        }
        row = self.pseudonymizer.anonymize_detail(row)
        with self._lock:
            self._details.append(row)

    def _anonymize_id(self, identity: Optional[str]) -> str:
        if not identity:
            return ""
        return self.pseudonymizer.anonymize_detail({"identity": identity})["identity"]

    def _step_errors(self, errors: List[str]) -> str:
        """Join resolution step failures, reduced to step names and codes when anonymizing."""
        if not self.pseudonymizer.active:
            return "; ".join(errors)
        parts = []
        for error in errors:
            step, _, message = error.partition(": ")
            code = self.pseudonymizer.scrub_message(message)
            parts.append(f"{step} ({code})" if code else step)
        return "; ".join(parts)

    def scrub_message(self, message: Optional[str]) -> str:
        """Error text safe to publish under the run's anonymize scope."""
        if not self.pseudonymizer.active:
            return str(message)
        return self.pseudonymizer.scrub_message(message) or "details withheld"

    def collector_summaries(self, results: Iterable[CollectorResult]) -> List[Dict]:
        """Per-call summaries for report metadata, with error text scrubbed."""
        summaries = []
        for result in results:
            summary = result.summary()
            if summary['error'] is not None:
                summary['error'] = self.scrub_message(summary['error'])
            summary['partial_errors'] = [self.scrub_message(e) for e in summary['partial_errors']]
            summaries.append(summary)
        return summaries

    def _event(self, kind: str, identity: str, detail: str) -> None:
        with self._lock:
            self._events.append(DataQualityEvent(kind=kind, identity=identity, detail=detail))

    # =========================================================================
    # Output
    # =========================================================================

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def protection_records(self) -> List[ProtectionRecord]:
        with self._lock:
            return list(self._protection)

    @property
    def events(self) -> List[DataQualityEvent]:
        with self._lock:
            return list(self._events)

    @property
    def skips(self) -> List[RecordSkip]:
        with self._lock:
            return list(self._skips)

    def event_counts(self) -> Dict[str, int]:
        return dict(Counter(e.kind for e in self.events))

    def details(self) -> List[Dict]:
        """Anonymized per-resource rows, sorted by workload, region and identity."""
        with self._lock:
            rows = list(self._details)
        return sorted(rows, key=lambda r: (r['workload'], r['region'], str(r['identity'])))

    def snapshot(self) -> List[AggregateCell]:
        return self.store.snapshot()

    def totals_by_workload(self) -> List[AggregateCell]:
        return self.store.totals_by_workload()

    def completeness(self) -> List[CompletenessRow]:
        return self.store.completeness()

    def protection(self, extra: Iterable[ProtectionRecord] = ()) -> List[ProtectionRow]:
        return correlate(self.store.snapshot(), self.protection_records + list(extra))

    def cell(self, workload: str, region: str) -> Tuple[int, int]:
        """(count, bytes) for one cell, (0, 0) if it was never written."""
        for cell in self.store.snapshot():
            if cell.workload == workload and cell.region == region:
                return cell.count, cell.bytes
        return 0, 0
