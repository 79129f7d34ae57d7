"""
Report assembly and writers.

A CapacityReport is a set of plain tables (lists of dicts) built from a
finished run. write_report() renders each table to CSV and the whole report
to a single JSON summary, which scripts/generate_capacity_report.py turns
into an Excel workbook.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from .engine import CapacityEngine
from .models import ProtectionRecord
from .protection import correlate
from .store import AggregationStore
from .units import to_tib
from .utils import get_timestamp, write_csv, write_json

logger = logging.getLogger(__name__)

# Column order for each table
TOTALS_COLUMNS = ['workload', 'count', 'size_gib', 'size_tib']
REGION_WORKLOAD_COLUMNS = ['region', 'workload', 'count', 'size_gib', 'size_tib']
COMPLETENESS_COLUMNS = ['workload', 'discovered', 'with_size', 'completeness_percent']
PROTECTION_COLUMNS = [
    'region', 'workload', 'discovered', 'protected',
    'percent_protected', 'protected_size_tib', 'on_prem_flag',
]
DETAIL_COLUMNS = [
    'workload', 'region', 'identity', 'display_name', 'parent_identity',
    'account_id', 'resource_group', 'rollup_policy', 'contributes_bytes',
    'capacity_bytes', 'size_gib', 'capacity_source', 'labels',
]
DATA_QUALITY_COLUMNS = ['kind', 'identity', 'detail']

# table name -> columns, in file-writing order
REPORT_TABLES = {
    'totals_by_workload': TOTALS_COLUMNS,
    'totals_by_region_workload': REGION_WORKLOAD_COLUMNS,
    'completeness': COMPLETENESS_COLUMNS,
    'protection': PROTECTION_COLUMNS,
    'details': DETAIL_COLUMNS,
    'data_quality': DATA_QUALITY_COLUMNS,
}


@dataclass
class CapacityReport:
    totals_by_workload: List[Dict[str, Any]] = field(default_factory=list)
    totals_by_region_workload: List[Dict[str, Any]] = field(default_factory=list)
    completeness: List[Dict[str, Any]] = field(default_factory=list)
    protection: List[Dict[str, Any]] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)
    data_quality: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def table(self, name: str) -> List[Dict[str, Any]]:
        if name not in REPORT_TABLES:
            raise KeyError(f"Unknown report table: {name}")
        return getattr(self, name)

    def summary(self) -> Dict[str, Any]:
        """Headline numbers for the JSON summary and the console."""
        total_bytes = self.metadata.get('total_bytes', 0)
        return {
            'total_resources': sum(r['count'] for r in self.totals_by_workload),
            'total_size_tib': to_tib(total_bytes),
            'workloads': len(self.totals_by_workload),
            'regions': len({r['region'] for r in self.totals_by_region_workload}),
            'data_quality_events': len(self.data_quality),
        }

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'metadata': self.metadata,
            'summary': self.summary(),
        }
        for name in REPORT_TABLES:
            result[name] = self.table(name)
        return result


def build_report(
    source: Union[CapacityEngine, AggregationStore],
    protection_records: Optional[Iterable[ProtectionRecord]] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> CapacityReport:
    """
    Assemble the report tables from a finished engine (or a bare store).

    An engine that has not been finalized is finalized here so that
    parent-attributed records are never silently left out.
    """
    extra_protection = list(protection_records or [])
    meta = dict(metadata or {})
    meta.setdefault('generated_at', get_timestamp())

    if isinstance(source, CapacityEngine):
        if not source.finalized:
            source.finalize()
        store = source.store
        protection_rows = source.protection(extra_protection)
        details = source.details()
        data_quality = [e.to_dict() for e in source.events]
        meta.setdefault('storage_aggregation_mode', source.config.storage_aggregation_mode)
        meta.setdefault('anonymize_scope', source.config.anonymize_scope)
        meta['salt_generated'] = source.pseudonymizer.salt_generated
        # A generated salt is only recoverable from here
        if source.pseudonymizer.active and source.pseudonymizer.salt_generated:
            meta['anonymize_salt'] = source.pseudonymizer.salt
        meta['event_counts'] = source.event_counts()
    else:
        store = source
        protection_rows = correlate(store.snapshot(), extra_protection)
        details = []
        data_quality = []

    meta['total_bytes'] = store.total_bytes

    report = CapacityReport(
        totals_by_workload=[
            {k: v for k, v in cell.to_dict().items() if k != 'region'}
            for cell in store.totals_by_workload()
        ],
        totals_by_region_workload=[cell.to_dict() for cell in store.snapshot()],
        completeness=[row.to_dict() for row in store.completeness()],
        protection=[row.to_dict() for row in protection_rows],
        details=details,
        data_quality=data_quality,
        metadata=meta,
    )
    logger.info(
        f"Report built: {len(report.totals_by_region_workload)} cells, "
        f"{len(report.details)} resources, {len(report.data_quality)} data quality events"
    )
    return report


def _csv_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten dict-valued cells (labels) into JSON strings for CSV."""
    flat = []
    for row in rows:
        flat.append({
            k: json.dumps(v, sort_keys=True) if isinstance(v, dict) else v
            for k, v in row.items()
        })
    return flat


def write_report(report: CapacityReport, output_dir: str, prefix: str = "cca_capacity") -> Dict[str, str]:
    """
    Write one CSV per table plus a JSON summary.

    Returns:
        Mapping of table name (and 'summary') to the written file path
    """
    os.makedirs(output_dir, exist_ok=True)
    paths: Dict[str, str] = {}

    for name, columns in REPORT_TABLES.items():
        path = os.path.join(output_dir, f"{prefix}_{name}.csv")
        write_csv(_csv_rows(report.table(name)), path, fieldnames=columns)
        paths[name] = path

    summary_path = os.path.join(output_dir, f"{prefix}_summary.json")
    write_json(report.to_dict(), summary_path)
    paths['summary'] = summary_path

    return paths


def load_report(filepath: str) -> CapacityReport:
    """Read a JSON summary written by write_report()."""
    with open(filepath) as f:
        data = json.load(f)
    return CapacityReport(
        metadata=data.get('metadata', {}),
        **{name: data.get(name, []) for name in REPORT_TABLES},
    )
