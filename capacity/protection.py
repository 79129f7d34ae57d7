"""
Protection correlation: join discovered-resource cells against backup items.
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

from .models import AggregateCell, ProtectionRecord, ProtectionRow, normalize_region

logger = logging.getLogger(__name__)


def correlate(
    snapshot: Iterable[AggregateCell],
    protection_records: Iterable[ProtectionRecord]
) -> List[ProtectionRow]:
    """
    Build one protection row per (workload, region).

    protected_size_tib is an ESTIMATE: the cell's TiB scaled by the protected
    fraction. Backup items do not report the source size reliably, so this
    assumes protected resources are average-sized for their cell.

    Cells with more backup items than discovered resources (e.g. a resource
    protected by two vaults) are capped at 100%.
    """
    cells: Dict[Tuple[str, str], AggregateCell] = {
        (c.workload, c.region): c for c in snapshot
    }

    protected: Dict[Tuple[str, str], int] = defaultdict(int)
    on_prem: Dict[Tuple[str, str], bool] = defaultdict(bool)
    for record in protection_records:
        key = (record.workload_kind, normalize_region(record.region))
        protected[key] += 1
        if record.is_on_premises:
            on_prem[key] = True

    rows = []
    for key in set(cells) | set(protected):
        workload, region = key
        cell = cells.get(key)
        discovered = cell.count if cell else 0
        protected_count = protected.get(key, 0)

        percent = 0
        size_tib = 0.0
        if discovered > 0:
            fraction = min(protected_count, discovered) / discovered
            percent = int(fraction * 100 + 0.5)
            size_tib = round(cell.size_tib * fraction, 3) if cell else 0.0
        elif protected_count:
            logger.debug(f"{protected_count} protected {workload} item(s) in {region} with no discovered resources")

        rows.append(ProtectionRow(
            region=region,
            workload=workload,
            discovered=discovered,
            protected=protected_count,
            percent_protected=percent,
            protected_size_tib=size_tib,
            on_prem_flag=on_prem.get(key, False),
        ))

    return sorted(rows, key=lambda r: (r.region, r.workload))
