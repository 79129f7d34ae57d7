#!/usr/bin/env python3
"""
CCA Capacity - Azure Collector

Inventories Azure resources across subscriptions and rolls them up into
capacity and protection tables without double counting.

Usage:
    python3 azure_collect.py
    python3 azure_collect.py --subscription <subscription-id>
    python3 azure_collect.py --storage-mode AccountLevel --anonymize-scope All
    python3 azure_collect.py --generate-config > cca-config.yaml
"""
import argparse
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from azure.core.exceptions import HttpResponseError, ServiceRequestError
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.cosmosdb import CosmosDBManagementClient
from azure.mgmt.monitor import MonitorManagementClient
from azure.mgmt.recoveryservices import RecoveryServicesClient
from azure.mgmt.recoveryservicesbackup import RecoveryServicesBackupClient
from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.subscription import SubscriptionClient

from capacity.config import (
    ConfigError,
    build_engine_config,
    generate_sample_config,
    get_parallel_workers,
    load_config,
)
from capacity.constants import (
    ANONYMIZE_SCOPES,
    DEFAULT_METRIC_LOOKBACK_DAYS,
    DEFAULT_RETRY_ATTEMPTS,
    PROTECTED_WORKLOAD_MAPPING,
    ROLLUP_ATTRIBUTE_TO_PARENT,
    ROLLUP_OWN_BUCKET,
    ROLLUP_OWN_BUCKET_EXCLUDED,
    STORAGE_MODES,
    WORKLOAD_BLOB,
    WORKLOAD_COSMOSDB,
    WORKLOAD_DATA_LAKE,
    WORKLOAD_FILES,
    WORKLOAD_MANAGED_DISK,
    WORKLOAD_RECOVERY_VAULT,
    WORKLOAD_SQL_DATABASE,
    WORKLOAD_SQL_MANAGED_INSTANCE,
    WORKLOAD_STORAGE_ACCOUNT,
    WORKLOAD_TABLE,
    WORKLOAD_UNATTACHED_DISK,
    WORKLOAD_VM,
)
from capacity.engine import CapacityEngine
from capacity.metrics import CapacityProbe
from capacity.models import CollectorResult, ProtectionRecord, ResourceRecord, normalize_region
from capacity.report import build_report, write_report
from capacity.units import to_bytes
from capacity.utils import (
    AuthError,
    ProgressTracker,
    check_and_raise_auth_error,
    generate_run_id,
    get_timestamp,
    parallel_collect,
    print_summary_table,
    retry_with_backoff,
    setup_logging,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Authentication & Subscriptions
# =============================================================================

def get_credential():
    """Get Azure credential. In Cloud Shell, uses managed identity."""
    return DefaultAzureCredential()


def get_subscriptions(credential) -> List[Dict]:
    """Get all accessible subscriptions."""
    subscription_client = SubscriptionClient(credential)
    subscriptions = []

    for sub in subscription_client.subscriptions.list():
        subscriptions.append({
            'id': sub.subscription_id,
            'name': sub.display_name,
            'state': sub.state
        })

    return subscriptions


def _extract_resource_group(resource_id: str) -> str:
    """Extract resource group from Azure resource ID."""
    try:
        parts = resource_id.split('/')
        lowered = [p.lower() for p in parts]
        return parts[lowered.index('resourcegroups') + 1]
    except (ValueError, IndexError):
        return 'unknown'


def _extract_storage_account(resource_id: str) -> str:
    """Storage account name from an account or sub-service resource ID."""
    parts = resource_id.split('/')
    lowered = [p.lower() for p in parts]
    try:
        return parts[lowered.index('storageaccounts') + 1]
    except (ValueError, IndexError):
        return ''


def _identity(resource_id: Optional[str]) -> str:
    """Azure resource IDs are case-insensitive; disk.managed_by often differs in case from the VM's id."""
    return (resource_id or '').lower()


@retry_with_backoff(max_attempts=DEFAULT_RETRY_ATTEMPTS, exceptions=(HttpResponseError, ServiceRequestError))
def _list_all(list_fn: Callable, *args, **kwargs) -> List:
    """Drain an SDK pager, retrying transient failures."""
    return list(list_fn(*args, **kwargs))


# =============================================================================
# Capacity Probe (Azure Monitor)
# =============================================================================

class AzureMonitorProbe:
    """
    Telemetry lookups for resources without an authoritative size property.

    metric_query returns the most recent non-null data point of the requested
    aggregation over the lookback window. usage_probe asks the file service
    directly for a share's used bytes.
    """

    def __init__(self, credential, subscription_id: str, lookback_days: int = DEFAULT_METRIC_LOOKBACK_DAYS):
        self.subscription_id = subscription_id
        self.lookback_days = lookback_days
        self.monitor_client = MonitorManagementClient(credential, subscription_id)
        self.storage_client = StorageManagementClient(credential, subscription_id)

    def metric_query(
        self,
        target: str,
        metric_name: str,
        aggregation: str,
        interval: str,
        dimension: Optional[str],
        label: Optional[str]
    ) -> Optional[float]:
        end_time = datetime.now(timezone.utc)
        start_time = end_time - timedelta(days=self.lookback_days)

        kwargs = {
            'resource_uri': target,
            'timespan': f"{start_time.isoformat()}/{end_time.isoformat()}",
            'interval': interval,
            'metricnames': metric_name,
            'aggregation': aggregation,
        }
        if dimension and label:
            kwargs['filter'] = f"{dimension} eq '{label}'"

        response = self.monitor_client.metrics.list(**kwargs)

        latest = None
        for metric in response.value or []:
            for timeseries in metric.timeseries or []:
                for data in timeseries.data or []:
                    value = getattr(data, aggregation.lower(), None)
                    if value is not None:
                        latest = value
        return latest

    def usage_probe(self, record: ResourceRecord) -> Optional[float]:
        if record.workload_kind != WORKLOAD_FILES or not record.metric_label:
            return None
        target = record.metric_target or ''
        account_name = _extract_storage_account(target)
        if not account_name:
            return None
        share = self.storage_client.file_shares.get(
            record.resource_group or _extract_resource_group(target),
            account_name,
            record.metric_label,
            expand='stats',
        )
        return getattr(share, 'share_usage_bytes', None)

    def as_probe(self) -> CapacityProbe:
        return CapacityProbe(metric_query=self.metric_query, usage_probe=self.usage_probe)


# =============================================================================
# VM Collector
# =============================================================================

def collect_vms(credential, subscription_id: str) -> CollectorResult:
    """Collect Azure Virtual Machines. Their bytes arrive through attached disks."""
    result = CollectorResult(name="VMs", account_id=subscription_id)
    try:
        compute_client = ComputeManagementClient(credential, subscription_id)

        for vm in _list_all(compute_client.virtual_machines.list_all):
            if not vm.id:
                continue

            result.records.append(ResourceRecord(
                workload_kind=WORKLOAD_VM,
                identity=_identity(vm.id),
                display_name=vm.name or '',
                region=vm.location,
                account_id=subscription_id,
                resource_group=_extract_resource_group(vm.id),
                labels=dict(vm.tags or {}),
            ))

        logger.info(f"Found {len(result.records)} Azure VMs")
    except Exception as e:
        check_and_raise_auth_error(e, "collect VMs", "azure")
        logger.error(f"Failed to collect VMs: {e}")
        result.error = str(e)

    return result


# =============================================================================
# Managed Disk Collector
# =============================================================================

def _disk_bytes(disk) -> int:
    disk_size_bytes = getattr(disk, 'disk_size_bytes', None)
    if disk_size_bytes:
        return to_bytes(disk_size_bytes)
    # Azure reports disk_size_gb in binary gigabytes
    return to_bytes(getattr(disk, 'disk_size_gb', None), 'GiB')


def collect_disks(credential, subscription_id: str) -> CollectorResult:
    """
    Collect Azure Managed Disks.

    A disk attached to a VM attributes its bytes to the VM's cell; an
    unattached disk is counted in its own bucket.
    """
    result = CollectorResult(name="Disks", account_id=subscription_id)
    try:
        compute_client = ComputeManagementClient(credential, subscription_id)

        for disk in _list_all(compute_client.disks.list):
            if not disk.id:
                continue

            owner = getattr(disk, 'managed_by', None)
            result.records.append(ResourceRecord(
                workload_kind=WORKLOAD_MANAGED_DISK if owner else WORKLOAD_UNATTACHED_DISK,
                identity=_identity(disk.id),
                display_name=disk.name or '',
                region=disk.location,
                parent_identity=_identity(owner) if owner else None,
                capacity_bytes=_disk_bytes(disk),
                rollup_policy=ROLLUP_ATTRIBUTE_TO_PARENT if owner else ROLLUP_OWN_BUCKET,
                account_id=subscription_id,
                resource_group=_extract_resource_group(disk.id),
                labels=dict(disk.tags or {}),
            ))

        logger.info(f"Found {len(result.records)} Azure Managed Disks")
    except Exception as e:
        check_and_raise_auth_error(e, "collect Disks", "azure")
        logger.error(f"Failed to collect Disks: {e}")
        result.error = str(e)

    return result


# =============================================================================
# Storage Account Collector (account + blob/ADLS, file share, table services)
# =============================================================================

def _storage_service(
    kind: str,
    service_id: str,
    account_id: str,
    location: str,
    subscription_id: str,
    rg: str,
    display_name: str,
    metric_target: str,
    metric_label: Optional[str] = None
) -> ResourceRecord:
    return ResourceRecord(
        workload_kind=kind,
        identity=_identity(service_id),
        display_name=display_name,
        region=location,
        parent_identity=_identity(account_id),
        rollup_policy=ROLLUP_OWN_BUCKET_EXCLUDED,
        account_id=subscription_id,
        resource_group=rg,
        metric_target=metric_target,
        metric_label=metric_label,
    )


def collect_storage_accounts(credential, subscription_id: str) -> CollectorResult:
    """
    Collect Azure Storage Accounts and their sub-services.

    Which side contributes bytes (account or sub-services) is decided by the
    engine's storage aggregation mode, never here.
    """
    result = CollectorResult(name="Storage accounts", account_id=subscription_id)
    try:
        storage_client = StorageManagementClient(credential, subscription_id)

        for account in _list_all(storage_client.storage_accounts.list):
            account_id = getattr(account, 'id', None)
            account_name = getattr(account, 'name', '')
            if not account_id or not account_name:
                continue

            rg = _extract_resource_group(account_id)
            location = getattr(account, 'location', '')

            result.records.append(ResourceRecord(
                workload_kind=WORKLOAD_STORAGE_ACCOUNT,
                identity=_identity(account_id),
                display_name=account_name,
                region=location,
                account_id=subscription_id,
                resource_group=rg,
                metric_target=account_id,
                labels=dict(getattr(account, 'tags', None) or {}),
            ))

            blob_target = f"{account_id}/blobServices/default"
            result.records.append(_storage_service(
                WORKLOAD_DATA_LAKE if getattr(account, 'is_hns_enabled', False) else WORKLOAD_BLOB,
                blob_target, account_id, location, subscription_id, rg,
                display_name=f"{account_name}/blob", metric_target=blob_target,
            ))

            table_target = f"{account_id}/tableServices/default"
            result.records.append(_storage_service(
                WORKLOAD_TABLE, table_target, account_id, location, subscription_id, rg,
                display_name=f"{account_name}/table", metric_target=table_target,
            ))

            file_target = f"{account_id}/fileServices/default"
            try:
                for share in _list_all(storage_client.file_shares.list, rg, account_name):
                    share_name = getattr(share, 'name', '')
                    if not share_name:
                        continue
                    share_id = getattr(share, 'id', None) or f"{file_target}/shares/{share_name}"
                    result.records.append(_storage_service(
                        WORKLOAD_FILES, share_id, account_id, location, subscription_id, rg,
                        display_name=share_name, metric_target=file_target, metric_label=share_name,
                    ))
            except Exception as e:
                check_and_raise_auth_error(e, f"list file shares for storage account {account_name}", "azure")
                logger.warning(f"Failed to list file shares for storage account {account_name}: {e}")
                result.partial_errors.append(f"file shares for storage account {account_name}: {e}")

        logger.info(f"Found {len(result.records)} Azure storage resources")
    except Exception as e:
        check_and_raise_auth_error(e, "collect Storage Accounts", "azure")
        logger.error(f"Failed to collect Storage Accounts: {e}")
        result.error = str(e)

    return result


# =============================================================================
# SQL Database Collectors
# =============================================================================

def collect_sql_databases(credential, subscription_id: str) -> CollectorResult:
    """Collect Azure SQL Databases. Size is the configured max size."""
    result = CollectorResult(name="SQL databases", account_id=subscription_id)
    try:
        sql_client = SqlManagementClient(credential, subscription_id)

        for server in _list_all(sql_client.servers.list):
            server_id = getattr(server, 'id', None)
            server_name = getattr(server, 'name', '')
            if not server_id:
                continue

            rg = _extract_resource_group(server_id)

            try:
                for db in _list_all(sql_client.databases.list_by_server, rg, server_name):
                    db_name = getattr(db, 'name', '')
                    db_id = getattr(db, 'id', None)
                    if db_name == 'master' or not db_id:
                        continue  # Skip system database

                    max_size_bytes = getattr(db, 'max_size_bytes', None)
                    result.records.append(ResourceRecord(
                        workload_kind=WORKLOAD_SQL_DATABASE,
                        identity=_identity(db_id),
                        display_name=db_name,
                        region=getattr(db, 'location', ''),
                        parent_identity=_identity(server_id),
                        capacity_bytes=to_bytes(max_size_bytes) if max_size_bytes is not None else None,
                        account_id=subscription_id,
                        resource_group=rg,
                        labels=dict(getattr(db, 'tags', None) or {}),
                    ))
            except Exception as e:
                check_and_raise_auth_error(e, f"list databases for server {server_name}", "azure")
                logger.warning(f"Failed to list databases for server {server_name}: {e}")
                result.partial_errors.append(f"databases for server {server_name}: {e}")

        logger.info(f"Found {len(result.records)} Azure SQL Databases")
    except Exception as e:
        check_and_raise_auth_error(e, "collect SQL Servers", "azure")
        logger.error(f"Failed to collect SQL Servers: {e}")
        result.error = str(e)

    return result


def collect_sql_managed_instances(credential, subscription_id: str) -> CollectorResult:
    """Collect Azure SQL Managed Instances. Size is the reserved storage."""
    result = CollectorResult(name="SQL managed instances", account_id=subscription_id)
    try:
        sql_client = SqlManagementClient(credential, subscription_id)

        for mi in _list_all(sql_client.managed_instances.list):
            mi_id = getattr(mi, 'id', None)
            if not mi_id:
                continue

            storage_gb = getattr(mi, 'storage_size_in_gb', None)
            result.records.append(ResourceRecord(
                workload_kind=WORKLOAD_SQL_MANAGED_INSTANCE,
                identity=_identity(mi_id),
                display_name=getattr(mi, 'name', '') or '',
                region=getattr(mi, 'location', ''),
                capacity_bytes=to_bytes(storage_gb, 'GB') if storage_gb is not None else None,
                account_id=subscription_id,
                resource_group=_extract_resource_group(mi_id),
                labels=dict(getattr(mi, 'tags', None) or {}),
            ))

        logger.info(f"Found {len(result.records)} Azure SQL Managed Instances")
    except Exception as e:
        check_and_raise_auth_error(e, "collect SQL Managed Instances", "azure")
        logger.error(f"Failed to collect SQL Managed Instances: {e}")
        result.error = str(e)

    return result


# =============================================================================
# Cosmos DB Collector
# =============================================================================

def collect_cosmosdb_accounts(credential, subscription_id: str) -> CollectorResult:
    """Collect Azure Cosmos DB accounts. Size comes from the DataUsage metric."""
    result = CollectorResult(name="CosmosDB accounts", account_id=subscription_id)
    try:
        cosmos_client = CosmosDBManagementClient(credential, subscription_id)

        for account in _list_all(cosmos_client.database_accounts.list):
            if not account.id:
                continue

            result.records.append(ResourceRecord(
                workload_kind=WORKLOAD_COSMOSDB,
                identity=_identity(account.id),
                display_name=account.name or '',
                region=account.location,
                account_id=subscription_id,
                resource_group=_extract_resource_group(account.id),
                metric_target=account.id,
                labels=dict(account.tags or {}),
            ))

        logger.info(f"Found {len(result.records)} Azure Cosmos DB accounts")
    except Exception as e:
        check_and_raise_auth_error(e, "collect Cosmos DB accounts", "azure")
        logger.error(f"Failed to collect Cosmos DB accounts: {e}")
        result.error = str(e)

    return result


# =============================================================================
# Azure Backup (Recovery Services)
# =============================================================================

def collect_recovery_services_vaults(credential, subscription_id: str) -> CollectorResult:
    """
    Collect Recovery Services Vaults and the items they protect.

    Vaults are inventoried as resources; each backup protected item becomes a
    ProtectionRecord in the vault's region.
    """
    result = CollectorResult(name="Recovery Services vaults", account_id=subscription_id)
    try:
        rs_client = RecoveryServicesClient(credential, subscription_id)
        backup_client = RecoveryServicesBackupClient(credential, subscription_id)

        for vault in _list_all(rs_client.vaults.list_by_subscription_id):
            vault_id = getattr(vault, 'id', None)
            vault_name = getattr(vault, 'name', '')
            if not vault_id or not vault_name:
                continue

            rg = _extract_resource_group(vault_id)
            vault_location = getattr(vault, 'location', '')

            result.records.append(ResourceRecord(
                workload_kind=WORKLOAD_RECOVERY_VAULT,
                identity=_identity(vault_id),
                display_name=vault_name,
                region=vault_location,
                account_id=subscription_id,
                resource_group=rg,
                labels=dict(getattr(vault, 'tags', None) or {}),
            ))

            try:
                for item in _list_all(backup_client.backup_protected_items.list, vault_name, rg):
                    record = _protection_record(item, vault_location)
                    if record:
                        result.protection_records.append(record)
            except Exception as e:
                check_and_raise_auth_error(e, f"list protected items for vault {vault_name}", "azure")
                logger.warning(f"Failed to list protected items for vault {vault_name}: {e}")
                result.partial_errors.append(f"protected items for vault {vault_name}: {e}")

        logger.info(
            f"Found {len(result.records)} Recovery Services Vaults with "
            f"{len(result.protection_records)} protected items"
        )
    except Exception as e:
        check_and_raise_auth_error(e, "collect Recovery Services Vaults", "azure")
        logger.error(f"Failed to collect Recovery Services Vaults: {e}")
        result.error = str(e)

    return result


def _protection_record(item, vault_location: str) -> Optional[ProtectionRecord]:
    """Map a backup protected item to a ProtectionRecord."""
    item_props = getattr(item, 'properties', None)
    if item_props is None:
        return None

    source_kind = str(getattr(item_props, 'backup_management_type', None) or '')
    workload_type = str(getattr(item_props, 'workload_type', None) or '')
    if not source_kind or not workload_type:
        logger.debug(f"Skipping protected item {getattr(item, 'name', '')} without management/workload type")
        return None

    source_resource_id = getattr(item_props, 'source_resource_id', None)
    return ProtectionRecord(
        workload_kind=PROTECTED_WORKLOAD_MAPPING.get(workload_type, workload_type),
        region=vault_location,
        source_kind=source_kind,
        protected_identity=_identity(source_resource_id) if source_resource_id else None,
    )


# =============================================================================
# Main Collection Logic
# =============================================================================

# Resource kinds inside one subscription are collected sequentially
COLLECTORS: List[Tuple[str, Callable[..., CollectorResult]]] = [
    ("VMs", collect_vms),
    ("Disks", collect_disks),
    ("Storage accounts", collect_storage_accounts),
    ("SQL databases", collect_sql_databases),
    ("SQL managed instances", collect_sql_managed_instances),
    ("CosmosDB accounts", collect_cosmosdb_accounts),
    ("Recovery Services vaults", collect_recovery_services_vaults),
]


def filter_regions(result: CollectorResult, regions: Optional[Iterable[str]]) -> CollectorResult:
    """Drop records outside the requested regions (no-op when regions is empty)."""
    region_filter: Set[str] = {normalize_region(r) for r in regions or [] if r and r.strip()}
    if not region_filter:
        return result
    result.records = [r for r in result.records if normalize_region(r.region) in region_filter]
    result.protection_records = [
        p for p in result.protection_records if normalize_region(p.region) in region_filter
    ]
    return result


def collect_subscription(
    credential,
    subscription_id: str,
    subscription_name: str,
    engine: CapacityEngine,
    probe: Optional[CapacityProbe] = None,
    regions: Optional[List[str]] = None,
    results: Optional[List[CollectorResult]] = None
) -> List[CollectorResult]:
    """
    Collect every resource kind in a subscription and feed the engine.

    Each result is appended to `results` (a new list when omitted) as soon
    as the engine has it, so a caller-supplied list keeps what was collected
    before a failure.

    Raises:
        AuthError: If a collector hits an authentication error; results
            already fed to the engine stay valid
    """
    logger.info(f"Collecting resources from subscription: {subscription_name} ({subscription_id})")

    if results is None:
        results = []
    for _name, collect_fn in COLLECTORS:
        result = filter_regions(collect_fn(credential, subscription_id), regions)
        engine.ingest_result(result, probe)
        results.append(result)

    return results


def _collect_subscription_task(
    credential,
    sub: Dict,
    engine: CapacityEngine,
    tracker: Optional[ProgressTracker],
    regions: Optional[List[str]]
) -> List[CollectorResult]:
    """One worker's unit of work: a whole subscription, failures included."""
    if tracker:
        tracker.start_account(sub['id'], sub['name'])
    results: List[CollectorResult] = []
    failed = None
    try:
        probe = AzureMonitorProbe(credential, sub['id']).as_probe()
        collect_subscription(credential, sub['id'], sub['name'], engine, probe, regions, results=results)
    except AuthError as e:
        logger.error(f"Authentication/authorization error for subscription {sub['id']} ({sub['name']}): {e}")
        logger.error("Check that you have correct permissions for this subscription.")
        failed = CollectorResult(name="Subscription", account_id=sub['id'], error=str(e))
    except Exception as e:
        logger.error(f"Collection stopped for subscription {sub['id']} ({sub['name']}): {e}")
        failed = CollectorResult(name="Subscription", account_id=sub['id'], error=str(e))
    if failed is not None:
        engine.ingest_result(failed)
        results.append(failed)

    if tracker:
        tracker.add_resources(sum(len(r.records) for r in results))
        tracker.complete_account()
    return results


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='CCA Capacity - Azure Collector')
    parser.add_argument('--config', help='Path to YAML config file (default: ./cca-config.yaml or ~/.cca/config.yaml)')
    parser.add_argument('--generate-config', action='store_true', help='Print a sample config file and exit')
    parser.add_argument('--org-name', help='Organization name recorded in the report metadata')
    parser.add_argument('--subscription', help='Specific subscription ID (default: all accessible)')
    parser.add_argument('--regions', help='Comma-separated list of regions to filter (e.g., eastus,westus2)')
    parser.add_argument('--output', help='Output directory (default: current directory)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument(
        '--parallel-workers',
        type=int,
        help='Number of subscriptions to collect in parallel (default: 4, use 1 for serial)'
    )
    parser.add_argument(
        '--storage-mode',
        choices=sorted(STORAGE_MODES),
        help='Count storage bytes at the account or the sub-service level (default: ServiceLevel)'
    )
    parser.add_argument(
        '--anonymize-scope',
        choices=sorted(ANONYMIZE_SCOPES),
        help='Pseudonymize names in the detail table (default: None)'
    )
    parser.add_argument(
        '--anonymize-salt',
        help='Salt for pseudonyms; reuse it to correlate runs (default: random per run)'
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    args = _parse_args(argv)

    if args.generate_config:
        print(generate_sample_config())
        return

    config = load_config(args)
    args.output = args.output or '.'
    args.log_level = args.log_level or 'INFO'

    setup_logging(args.log_level, output_dir=args.output)

    try:
        engine_config = build_engine_config(config)
        parallel_workers = get_parallel_workers(config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    # Get credential
    try:
        credential = get_credential()
    except Exception as e:
        logger.error(f"Failed to authenticate with Azure: {e}")
        logger.error("Check your Azure credentials are configured correctly.")
        sys.exit(1)

    # Get subscriptions
    try:
        all_subscriptions = get_subscriptions(credential)
    except Exception as e:
        logger.error(f"Failed to list Azure subscriptions: {e}")
        logger.error("Check your credentials have subscription read access.")
        sys.exit(1)

    if not all_subscriptions:
        logger.error("No Azure subscriptions found. Check permissions.")
        sys.exit(1)

    if args.subscription:
        subscriptions = [s for s in all_subscriptions if s['id'] == args.subscription]
        if not subscriptions:
            logger.error(f"Subscription {args.subscription} not found")
            sys.exit(1)
    else:
        subscriptions = [s for s in all_subscriptions if s['state'] == 'Enabled']

    logger.info(f"Found {len(subscriptions)} subscription(s) to scan")

    regions = [r.strip() for r in args.regions.split(',') if r.strip()] if args.regions else None
    engine = CapacityEngine(engine_config)

    with ProgressTracker("Azure", total_accounts=len(subscriptions)) as tracker:
        collection_tasks = [
            (sub['id'], _collect_subscription_task, (credential, sub, engine, tracker, regions))
            for sub in subscriptions
        ]
        results = parallel_collect(
            collection_tasks=collection_tasks,
            parallel_workers=parallel_workers,
            logger=logger
        )
        engine.finalize()
        tracker.total_capacity_bytes = engine.store.total_bytes

    failed = [r for r in results if not r.ok]
    if failed:
        logger.warning(f"{len(failed)} collector call(s) failed; see the data quality table")

    run_id = generate_run_id()
    report = build_report(engine, metadata={
        'run_id': run_id,
        'timestamp': get_timestamp(),
        'provider': 'azure',
        'org_name': config.get('org_name'),
        'subscriptions': [s['id'] for s in subscriptions],
        'regions': regions or [],
        'collectors': engine.collector_summaries(results),
    })

    # Short timestamp for filenames (HHMMSS)
    file_ts = datetime.now(timezone.utc).strftime('%H%M%S')
    output_base = args.output.rstrip('/') or '.'
    write_report(report, output_base, prefix=f"cca_capacity_{file_ts}")

    print(f"\nRun ID: {run_id}")
    print_summary_table(report.totals_by_workload)
    if engine.pseudonymizer.active and engine.pseudonymizer.salt_generated:
        print(f"Anonymization salt (keep it to correlate future runs): {engine.pseudonymizer.salt}")
    print(f"Output: {output_base}/")


if __name__ == '__main__':
    main()
