"""
Tests for capacity/store.py aggregation store and completeness.
"""
import os
import sys
import threading

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from capacity.models import AggregateKey
from capacity.store import AggregationStore, completeness_percent

VM = AggregateKey("Virtual Machine", "eastus")


class TestAccumulate:
    """Tests for accumulate and snapshot."""

    def test_creates_cell_on_first_write(self):
        """Test the first write creates the cell."""
        store = AggregationStore()
        store.accumulate(VM, 1, 100)
        cells = store.snapshot()
        assert len(cells) == 1
        assert (cells[0].count, cells[0].bytes) == (1, 100)

    def test_zero_delta_is_noop(self):
        """Test accumulate(k, 0, 0) never creates or changes a cell."""
        store = AggregationStore()
        store.accumulate(VM, 0, 0)
        assert len(store) == 0

        store.accumulate(VM, 1, 5)
        store.accumulate(VM, 0, 0)
        assert store.snapshot()[0].bytes == 5

    def test_bytes_only_delta(self):
        """Test a bytes-only delta does not bump the count."""
        store = AggregationStore()
        store.accumulate(VM, 1, 0)
        store.accumulate(VM, 0, 128)
        cell = store.snapshot()[0]
        assert cell.count == 1
        assert cell.bytes == 128

    def test_snapshot_sorted_and_detached(self):
        """Test snapshots are sorted copies."""
        store = AggregationStore()
        store.accumulate(AggregateKey("Virtual Machine", "westus"), 1, 0)
        store.accumulate(AggregateKey("Azure Files", "eastus"), 1, 0)
        store.accumulate(VM, 1, 0)

        cells = store.snapshot()
        assert [(c.workload, c.region) for c in cells] == [
            ("Azure Files", "eastus"),
            ("Virtual Machine", "eastus"),
            ("Virtual Machine", "westus"),
        ]
        cells[0].count = 99
        assert store.snapshot()[0].count == 1

    def test_totals_by_workload(self):
        """Test regions fold into one row per workload."""
        store = AggregationStore()
        store.accumulate(VM, 2, 10)
        store.accumulate(AggregateKey("Virtual Machine", "westus"), 1, 5)
        totals = store.totals_by_workload()
        assert len(totals) == 1
        assert (totals[0].count, totals[0].bytes, totals[0].region) == (3, 15, '')
        assert store.total_bytes == 15

    def test_concurrent_accumulate(self):
        """Test concurrent increments are not lost."""
        store = AggregationStore()

        def work():
            for _ in range(1000):
                store.accumulate(VM, 1, 2)

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        cell = store.snapshot()[0]
        assert cell.count == 8000
        assert cell.bytes == 16000


class TestCompleteness:
    """Tests for completeness tracking."""

    def test_percent_rules(self):
        """Test rounding and the empty case."""
        assert completeness_percent(0, 0) == 100.0
        assert completeness_percent(3, 2) == 66.7
        assert completeness_percent(4, 4) == 100.0

    def test_record_discovery(self):
        """Test sized and unsized resources are tracked per workload."""
        store = AggregationStore()
        store.record_discovery("Azure Files", 100)
        store.record_discovery("Azure Files", 0)
        rows = {r.workload: r for r in store.completeness()}
        assert rows["Azure Files"].discovered == 2
        assert rows["Azure Files"].with_size == 1
        assert rows["Azure Files"].completeness_percent == 50.0

    def test_sizeless_kinds_count_as_sized(self):
        """Test VMs and vaults never drag completeness down."""
        store = AggregationStore()
        store.record_discovery("Virtual Machine", 0)
        store.record_discovery("Recovery Services Vault", 0)
        for row in store.completeness():
            assert row.completeness_percent == 100.0
