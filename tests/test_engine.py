"""
Tests for capacity/engine.py.

Covers:
- VM / disk attribution (attached, unattached, orphaned, any arrival order)
- storage aggregation modes (no double counting)
- linearity and order independence of totals
- boundary validation, data-quality events and collector failures
- anonymized detail rows
"""
import os
import random
import sys
import threading
from unittest.mock import Mock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from capacity.config import EngineConfig
from capacity.constants import (
    EVENT_COLLECTOR_FAILURE,
    EVENT_ORPHAN,
    EVENT_PROBE_ERROR,
    EVENT_SKIP,
    ROLLUP_ATTRIBUTE_TO_PARENT,
    ROLLUP_OWN_BUCKET_EXCLUDED,
    WORKLOAD_FILES,
    WORKLOAD_MANAGED_DISK,
    WORKLOAD_STORAGE_ACCOUNT,
    WORKLOAD_TABLE,
    WORKLOAD_UNATTACHED_DISK,
    WORKLOAD_VM,
)
from capacity.engine import CapacityEngine
from capacity.metrics import CapacityProbe
from capacity.models import CollectorResult, ProtectionRecord, ResourceRecord

GIB = 1024 ** 3
ACCOUNT = "/subscriptions/s/resourcegroups/rg/providers/microsoft.storage/storageaccounts/acct"


def vm(name="vm1", region="eastus"):
    return ResourceRecord(workload_kind=WORKLOAD_VM, identity=name, display_name=name, region=region)


def attached_disk(name="disk1", parent="vm1", size_gib=128, region="eastus"):
    return ResourceRecord(
        workload_kind=WORKLOAD_MANAGED_DISK,
        identity=name,
        display_name=name,
        region=region,
        parent_identity=parent,
        capacity_bytes=size_gib * GIB,
        rollup_policy=ROLLUP_ATTRIBUTE_TO_PARENT,
    )


def unattached_disk(name="spare", size_gib=64, region="eastus"):
    return ResourceRecord(
        workload_kind=WORKLOAD_UNATTACHED_DISK,
        identity=name,
        region=region,
        capacity_bytes=size_gib * GIB,
    )


def storage_records():
    """A storage account with one file share and a table service."""
    return [
        ResourceRecord(
            workload_kind=WORKLOAD_STORAGE_ACCOUNT, identity=ACCOUNT,
            display_name="acct", region="East US", metric_target=ACCOUNT,
        ),
        ResourceRecord(
            workload_kind=WORKLOAD_FILES, identity=f"{ACCOUNT}/fileservices/default/shares/finance",
            display_name="Finance", region="East US", parent_identity=ACCOUNT,
            metric_target=f"{ACCOUNT}/fileServices/default", metric_label="Finance",
            rollup_policy=ROLLUP_OWN_BUCKET_EXCLUDED,
        ),
        ResourceRecord(
            workload_kind=WORKLOAD_TABLE, identity=f"{ACCOUNT}/tableservices/default",
            display_name="acct", region="East US", parent_identity=ACCOUNT,
            metric_target=f"{ACCOUNT}/tableServices/default",
            rollup_policy=ROLLUP_OWN_BUCKET_EXCLUDED,
        ),
    ]


def storage_probe():
    """Telemetry: account 500 GiB, Finance share 100 GiB (filtered), table 50 GiB (coarse only)."""
    def query(target, metric, aggregation, interval, dimension, label):
        if metric == 'UsedCapacity':
            return 500 * GIB
        if metric == 'FileCapacity' and label == 'Finance':
            return 100 * GIB
        if metric == 'TableCapacity' and dimension is None:
            return 50 * GIB
        return None
    return CapacityProbe(metric_query=query)


def cells(engine):
    return {(c.workload, c.region): (c.count, c.bytes) for c in engine.snapshot()}


class TestVmDisks:
    """Tests for disk attribution to VMs."""

    def test_attached_disk_bytes_go_to_vm(self):
        """Test a VM with an attached disk is one VM cell with the disk's bytes."""
        engine = CapacityEngine()
        engine.ingest(vm())
        engine.ingest(attached_disk())
        engine.finalize()

        assert cells(engine) == {(WORKLOAD_VM, "eastus"): (1, 128 * GIB)}

    def test_disk_before_vm(self):
        """Test arrival order does not matter."""
        engine = CapacityEngine()
        engine.ingest(attached_disk())
        engine.ingest(vm())
        engine.finalize()

        assert engine.cell(WORKLOAD_VM, "eastus") == (1, 128 * GIB)
        assert engine.cell(WORKLOAD_MANAGED_DISK, "eastus") == (0, 0)
        assert engine.events == []

    def test_disk_uses_vm_region(self):
        """Test bytes land in the parent's cell even if regions differ."""
        engine = CapacityEngine()
        engine.ingest(vm(region="westus"))
        engine.ingest(attached_disk(region="eastus"))
        engine.finalize()

        assert cells(engine) == {(WORKLOAD_VM, "westus"): (1, 128 * GIB)}

    def test_unattached_disk_own_bucket(self):
        """Test unattached disks get their own cell."""
        engine = CapacityEngine()
        engine.ingest(vm())
        engine.ingest(unattached_disk())
        engine.finalize()

        assert engine.cell(WORKLOAD_UNATTACHED_DISK, "eastus") == (1, 64 * GIB)
        assert engine.cell(WORKLOAD_VM, "eastus") == (1, 0)

    def test_orphan_disk(self):
        """Test a disk whose VM never arrives is counted on its own and noted."""
        engine = CapacityEngine()
        engine.ingest(attached_disk(parent="ghost-vm"))
        engine.finalize()

        assert engine.cell(WORKLOAD_MANAGED_DISK, "eastus") == (1, 128 * GIB)
        events = engine.events
        assert [e.kind for e in events] == [EVENT_ORPHAN]
        assert events[0].identity == "disk1"
        assert "ghost-vm" in events[0].detail

    def test_vm_without_disk_counts(self):
        """Test a VM with no disks is counted with 0 bytes and full completeness."""
        engine = CapacityEngine()
        engine.ingest(vm())
        engine.finalize()

        assert engine.cell(WORKLOAD_VM, "eastus") == (1, 0)
        assert engine.completeness()[0].completeness_percent == 100.0

    def test_deferred_until_finalize(self):
        """Test parent-attributed bytes are invisible until finalize."""
        engine = CapacityEngine()
        engine.ingest(vm())
        engine.ingest(attached_disk())
        assert engine.cell(WORKLOAD_VM, "eastus") == (1, 0)

        engine.finalize()
        engine.finalize()
        assert engine.cell(WORKLOAD_VM, "eastus") == (1, 128 * GIB)
        assert engine.finalized is True

    def test_ingest_after_finalize_routes_immediately(self):
        """Test late parent-attributed records are not lost."""
        engine = CapacityEngine()
        engine.ingest(vm())
        engine.finalize()
        engine.ingest(attached_disk())

        assert engine.cell(WORKLOAD_VM, "eastus") == (1, 128 * GIB)


class TestStorageModes:
    """Tests for account-level versus service-level storage bytes."""

    def test_service_level(self):
        """Test sub-services carry the bytes; the account is counted only."""
        engine = CapacityEngine(probe=storage_probe())
        engine.ingest_many(storage_records())
        engine.finalize()

        assert cells(engine) == {
            (WORKLOAD_STORAGE_ACCOUNT, "eastus"): (1, 0),
            (WORKLOAD_FILES, "eastus"): (1, 100 * GIB),
            (WORKLOAD_TABLE, "eastus"): (1, 50 * GIB),
        }

    def test_account_level(self):
        """Test the account carries the bytes; sub-services are counted only."""
        engine = CapacityEngine(EngineConfig(storage_aggregation_mode="AccountLevel"), probe=storage_probe())
        engine.ingest_many(storage_records())
        engine.finalize()

        assert cells(engine) == {
            (WORKLOAD_STORAGE_ACCOUNT, "eastus"): (1, 500 * GIB),
            (WORKLOAD_FILES, "eastus"): (1, 0),
            (WORKLOAD_TABLE, "eastus"): (1, 0),
        }

    @pytest.mark.parametrize("mode", ["AccountLevel", "ServiceLevel"])
    def test_never_double_counted(self, mode):
        """Test total storage bytes are one side or the other, never both."""
        engine = CapacityEngine(EngineConfig(storage_aggregation_mode=mode), probe=storage_probe())
        engine.ingest_many(storage_records())
        engine.finalize()

        assert engine.store.total_bytes in (500 * GIB, 150 * GIB)

    def test_capacity_sources_in_details(self):
        """Test detail rows show which chain step produced the size."""
        engine = CapacityEngine(probe=storage_probe())
        engine.ingest_many(storage_records())
        sources = {r['workload']: r['capacity_source'] for r in engine.details()}

        assert sources[WORKLOAD_FILES] == "filtered"
        assert sources[WORKLOAD_TABLE] == "coarse"

    def test_shares_never_take_account_wide_total(self):
        """Test shares with no per-share telemetry stay at 0 instead of each taking the unfiltered total."""
        target = f"{ACCOUNT}/fileServices/default"

        def query(target, metric, aggregation, interval, dimension, label):
            return None if label else 300 * GIB

        engine = CapacityEngine(probe=CapacityProbe(metric_query=query))
        engine.ingest_many([
            ResourceRecord(
                workload_kind=WORKLOAD_FILES, identity=f"{target}/shares/{name}", region="eastus",
                metric_target=target, metric_label=name, rollup_policy=ROLLUP_OWN_BUCKET_EXCLUDED,
            )
            for name in ("Finance", "Legal")
        ])
        engine.finalize()

        assert engine.cell(WORKLOAD_FILES, "eastus") == (2, 0)
        assert {r['capacity_source'] for r in engine.details()} == {"none"}

    def test_per_call_probe(self):
        """Test a probe passed to ingest overrides the engine default."""
        engine = CapacityEngine()
        engine.ingest_many(storage_records(), probe=storage_probe())

        assert engine.cell(WORKLOAD_FILES, "eastus") == (1, 100 * GIB)


class TestTotalsProperties:
    """Tests for linearity and order independence."""

    def records(self):
        return [
            vm("vm1"), vm("vm2", region="westus"),
            attached_disk("d1", "vm1", 10), attached_disk("d2", "vm2", 20),
            attached_disk("d3", "vm1", 30), unattached_disk("u1", 5),
        ]

    def run(self, records):
        engine = CapacityEngine()
        engine.ingest_many(records)
        engine.finalize()
        return cells(engine)

    def test_order_independence(self):
        """Test any permutation yields identical cells."""
        records = self.records()
        expected = self.run(records)
        rng = random.Random(7)
        for _ in range(5):
            shuffled = list(records)
            rng.shuffle(shuffled)
            assert self.run(shuffled) == expected

    def test_linearity(self):
        """Test disjoint inputs sum cell by cell."""
        first = [vm("a1"), attached_disk("ad", "a1", 10), unattached_disk("au", 1)]
        second = [vm("b1"), attached_disk("bd", "b1", 20), unattached_disk("bu", 2)]

        left, right, both = self.run(first), self.run(second), self.run(first + second)
        for key in both:
            l_count, l_bytes = left.get(key, (0, 0))
            r_count, r_bytes = right.get(key, (0, 0))
            assert both[key] == (l_count + r_count, l_bytes + r_bytes)

    def test_concurrent_ingest(self):
        """Test ingest from several threads loses nothing."""
        engine = CapacityEngine()

        def work(offset):
            for i in range(50):
                engine.ingest(vm(f"vm-{offset}-{i}"))
                engine.ingest(attached_disk(f"d-{offset}-{i}", f"vm-{offset}-{i}", 1))

        threads = [threading.Thread(target=work, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        engine.finalize()

        assert engine.cell(WORKLOAD_VM, "eastus") == (200, 200 * GIB)


class TestBoundary:
    """Tests for validation, skips and data-quality events."""

    @pytest.mark.parametrize("record,reason", [
        (ResourceRecord(workload_kind=WORKLOAD_VM, identity=""), "blank identity"),
        (ResourceRecord(workload_kind=WORKLOAD_VM, identity="   "), "blank identity"),
        (ResourceRecord(workload_kind="", identity="x"), "blank workload kind"),
        (ResourceRecord(workload_kind=WORKLOAD_VM, identity="x", rollup_policy="Sideways"), "invalid rollup policy"),
    ])
    def test_malformed_records_skipped(self, record, reason):
        """Test malformed records are skipped, noted and never counted."""
        engine = CapacityEngine()
        skip = engine.ingest(record)
        engine.finalize()

        assert skip is not None
        assert reason in skip.reason
        assert engine.snapshot() == []
        assert engine.details() == []
        assert engine.event_counts() == {EVENT_SKIP: 1}
        assert engine.skips == [skip]

    def test_region_normalized(self):
        """Test region spelling variants share one cell."""
        engine = CapacityEngine()
        engine.ingest_many([vm("a", region="East US"), vm("b", region="eastus"), vm("c", region="")])

        assert engine.cell(WORKLOAD_VM, "eastus") == (2, 0)
        assert engine.cell(WORKLOAD_VM, "Unknown") == (1, 0)

    def test_region_placeholder_any_case(self):
        """Test a blank region and a collector-supplied 'Unknown' share one cell."""
        engine = CapacityEngine()
        engine.ingest_many([vm("a", region=""), vm("b", region="Unknown"), vm("c", region=" UNKNOWN ")])

        assert cells(engine) == {(WORKLOAD_VM, "Unknown"): (3, 0)}

    def test_probe_error_event(self):
        """Test failed lookups that end at 0 are noted, and the resource still counts."""
        probe = CapacityProbe(metric_query=Mock(side_effect=RuntimeError("throttled")))
        engine = CapacityEngine(probe=probe)
        engine.ingest(storage_records()[2])

        assert engine.cell(WORKLOAD_TABLE, "eastus") == (1, 0)
        events = engine.events
        assert [e.kind for e in events] == [EVENT_PROBE_ERROR]
        assert "throttled" in events[0].detail
        assert engine.completeness()[0].completeness_percent == 0.0

    def test_probe_error_detail_scrubbed_when_anonymized(self):
        """Test lookup failure messages are reduced to step names under object anonymization."""
        probe = CapacityProbe(metric_query=Mock(side_effect=RuntimeError("share Finance missing")))
        engine = CapacityEngine(EngineConfig(anonymize_scope="Objects", anonymize_salt="s"), probe=probe)
        engine.ingest(storage_records()[1])

        event = engine.events[0]
        assert "Finance" not in event.detail
        assert event.detail == "filtered; filtered_lowercase"
        assert event.identity.startswith("obj-")

    def test_collector_failure_keeps_partial_records(self):
        """Test a failed collector call is noted and its partial records still count."""
        engine = CapacityEngine()
        result = CollectorResult(
            name="Virtual Machines", account_id="sub-1",
            records=[vm()], error="throttled after page 3",
        )
        engine.ingest_result(result)
        engine.finalize()

        assert engine.cell(WORKLOAD_VM, "eastus") == (1, 0)
        event = engine.events[0]
        assert event.kind == EVENT_COLLECTOR_FAILURE
        assert event.identity == "Virtual Machines"
        assert event.detail == "sub-1: throttled after page 3"

    def test_collector_protection_records(self):
        """Test protection records from a collector join the coverage table."""
        engine = CapacityEngine()
        engine.ingest_result(CollectorResult(
            name="Recovery Services Vaults",
            records=[vm(), vm("vm2")],
            protection_records=[ProtectionRecord(WORKLOAD_VM, "eastus", "AzureIaasVM")],
        ))
        engine.finalize()

        row = engine.protection()[0]
        assert (row.discovered, row.protected, row.percent_protected) == (2, 1, 50)


    def test_partial_errors_noted_for_successful_call(self):
        """Test nested listing failures become events even when the call itself succeeded."""
        engine = CapacityEngine()
        engine.ingest_result(CollectorResult(
            name="Storage accounts", account_id="sub-1", records=[vm()],
            partial_errors=["file shares for storage account acct1: throttled",
                            "file shares for storage account acct2: throttled"],
        ))

        events = engine.events
        assert [e.kind for e in events] == [EVENT_COLLECTOR_FAILURE, EVENT_COLLECTOR_FAILURE]
        assert events[0].detail == "sub-1: file shares for storage account acct1: throttled"
        assert engine.cell(WORKLOAD_VM, "eastus") == (1, 0)


class TestAnonymizedEvents:
    """Tests for event text and metadata under anonymization."""

    AZURE_ERROR = (
        "(ResourceGroupNotFound) Resource group 'rg-payroll' could not be found.\n"
        "Code: ResourceGroupNotFound\n"
        "Message: Resource group 'rg-payroll' could not be found."
    )

    @pytest.mark.parametrize("scope", ["ResourceGroups", "Objects", "All"])
    def test_collector_failure_reduced_to_code(self, scope):
        """Test collector failure text keeps only the Azure error code."""
        engine = CapacityEngine(EngineConfig(anonymize_scope=scope, anonymize_salt="s"))
        engine.ingest_result(CollectorResult(name="SQL databases", account_id="sub-1", error=self.AZURE_ERROR))

        event = engine.events[0]
        assert event.detail == "sub-1: ResourceGroupNotFound"
        assert "payroll" not in event.detail

    def test_collector_failure_without_code_withheld(self):
        """Test free text with no error code is not published."""
        engine = CapacityEngine(EngineConfig(anonymize_scope="ResourceGroups", anonymize_salt="s"))
        engine.ingest_result(CollectorResult(
            name="Storage accounts", account_id="sub-1",
            partial_errors=["file shares for storage account payrollsa: timed out"],
        ))

        assert engine.events[0].detail == "sub-1: details withheld"

    def test_collector_failure_kept_without_anonymization(self):
        """Test the full message is kept when nothing is anonymized."""
        engine = CapacityEngine()
        engine.ingest_result(CollectorResult(name="SQL databases", account_id="sub-1", error=self.AZURE_ERROR))

        assert engine.events[0].detail == f"sub-1: {self.AZURE_ERROR}"

    def test_lookup_errors_scrubbed_under_group_scope(self):
        """Test a group name inside a lookup failure does not survive group-only anonymization."""
        error = RuntimeError(
            "(ResourceNotFound) The Resource '/subscriptions/s/resourceGroups/rg-payroll/providers/x' was not found.")
        probe = CapacityProbe(metric_query=Mock(side_effect=error))
        engine = CapacityEngine(EngineConfig(anonymize_scope="ResourceGroups", anonymize_salt="s"), probe=probe)
        engine.ingest(storage_records()[1])

        event = engine.events[0]
        assert "rg-payroll" not in event.detail
        assert event.detail == "filtered (ResourceNotFound); filtered_lowercase (ResourceNotFound)"

    def test_collector_summaries_scrubbed(self):
        """Test metadata summaries carry codes, not names, when anonymizing."""
        engine = CapacityEngine(EngineConfig(anonymize_scope="ResourceGroups", anonymize_salt="s"))
        results = [
            CollectorResult(name="SQL databases", account_id="sub-1", error=self.AZURE_ERROR),
            CollectorResult(name="Storage accounts", account_id="sub-1",
                            partial_errors=["file shares for storage account payrollsa: timed out"]),
        ]

        summaries = engine.collector_summaries(results)
        assert summaries[0]['error'] == "ResourceGroupNotFound"
        assert summaries[1]['error'] is None
        assert summaries[1]['partial_errors'] == ["details withheld"]
        assert "payroll" not in repr(summaries)
        assert results[0].error == self.AZURE_ERROR

    def test_collector_summaries_plain(self):
        """Test summaries are unchanged when nothing is anonymized."""
        result = CollectorResult(name="SQL databases", account_id="sub-1", error="boom")
        assert CapacityEngine().collector_summaries([result]) == [result.summary()]


class TestAnonymizedDetails:
    """Tests for pseudonymized output."""

    def test_details_hide_names(self):
        """Test no original name appears in details or events under All."""
        engine = CapacityEngine(EngineConfig(anonymize_scope="All", anonymize_salt="s"))
        engine.ingest(ResourceRecord(
            workload_kind=WORKLOAD_VM, identity="/subscriptions/s/resourceGroups/RG-Payroll/vms/payroll-01",
            display_name="payroll-01", resource_group="RG-Payroll", labels={"owner": "alice"},
        ))
        engine.ingest(attached_disk("payroll-disk", parent="payroll-ghost"))
        engine.finalize()

        flat = repr(engine.details()) + repr(engine.events)
        for original in ("payroll", "RG-Payroll", "alice"):
            assert original not in flat

    def test_aggregates_unchanged_by_anonymization(self):
        """Test cells are identical with and without anonymization."""
        plain = CapacityEngine()
        masked = CapacityEngine(EngineConfig(anonymize_scope="All", anonymize_salt="s"))
        for engine in (plain, masked):
            engine.ingest_many([vm(), attached_disk(), unattached_disk()])
            engine.finalize()

        assert cells(plain) == cells(masked)

    def test_parent_relationship_preserved(self):
        """Test a disk's anonymized parent matches its VM's anonymized identity."""
        engine = CapacityEngine(EngineConfig(anonymize_scope="Objects", anonymize_salt="s"))
        engine.ingest_many([vm(), attached_disk()])
        rows = {r['workload']: r for r in engine.details()}

        assert rows[WORKLOAD_MANAGED_DISK]['parent_identity'] == rows[WORKLOAD_VM]['identity']
