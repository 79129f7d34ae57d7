"""
Aggregation store: (workload, region) cells plus per-workload completeness.

Accumulation is plain addition per key, so totals do not depend on the order
collectors deliver records in.
"""
import threading
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List

from .constants import SIZELESS_KINDS
from .models import AggregateCell, AggregateKey, CompletenessRow


def completeness_percent(discovered: int, with_size: int) -> float:
    """Share of discovered resources with a usable size; nothing discovered is 100%."""
    if discovered <= 0:
        return 100.0
    return round(with_size / discovered * 100, 1)


class AggregationStore:
    """Thread-safe accumulator for resource counts and bytes."""

    def __init__(self):
        self._cells: Dict[AggregateKey, AggregateCell] = {}
        self._discovered: Dict[str, int] = defaultdict(int)
        self._with_size: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def accumulate(self, key: AggregateKey, count_delta: int, byte_delta: int) -> None:
        """Add deltas to a cell, creating it on first non-empty write."""
        if not count_delta and not byte_delta:
            return
        with self._lock:
            cell = self._cells.get(key)
            if cell is None:
                cell = AggregateCell(workload=key[0], region=key[1])
                self._cells[AggregateKey(key[0], key[1])] = cell
            cell.count += count_delta
            cell.bytes += byte_delta

    def record_discovery(self, workload: str, resolved_bytes: int) -> None:
        """Track one routed resource for completeness."""
        with self._lock:
            self._discovered[workload] += 1
            if resolved_bytes > 0 or workload in SIZELESS_KINDS:
                self._with_size[workload] += 1

    def snapshot(self) -> List[AggregateCell]:
        """Copies of all cells, sorted by workload then region."""
        with self._lock:
            cells = [replace(c) for c in self._cells.values()]
        return sorted(cells, key=lambda c: (c.workload, c.region))

    def totals_by_workload(self) -> List[AggregateCell]:
        """One row per workload with all regions folded in (region is blank)."""
        totals: Dict[str, AggregateCell] = {}
        for cell in self.snapshot():
            total = totals.setdefault(cell.workload, AggregateCell(workload=cell.workload, region=''))
            total.count += cell.count
            total.bytes += cell.bytes
        return [totals[w] for w in sorted(totals)]

    def completeness(self) -> List[CompletenessRow]:
        with self._lock:
            discovered = dict(self._discovered)
            with_size = dict(self._with_size)
        return [
            CompletenessRow(
                workload=workload,
                discovered=count,
                with_size=with_size.get(workload, 0),
                completeness_percent=completeness_percent(count, with_size.get(workload, 0)),
            )
            for workload, count in sorted(discovered.items())
        ]

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return sum(c.bytes for c in self._cells.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._cells)
