"""
Constants for the CCA capacity roll-up engine.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Byte/Size Conversion Constants
# =============================================================================

BYTES_PER_KIB = 1024
BYTES_PER_MIB = 1024 ** 2
BYTES_PER_GIB = 1024 ** 3
BYTES_PER_TIB = 1024 ** 4

# SI units (base 1000) - providers report disk sizes and quotas this way
BYTES_PER_KB_SI = 1000
BYTES_PER_MB_SI = 1000 ** 2
BYTES_PER_GB_SI = 1000 ** 3
BYTES_PER_TB_SI = 1000 ** 4

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_PARALLEL_WORKERS = 4
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_REGION = "Unknown"

# =============================================================================
# Workload Kinds
# =============================================================================

WORKLOAD_VM = "Virtual Machine"
WORKLOAD_MANAGED_DISK = "Managed Disk"
WORKLOAD_UNATTACHED_DISK = "Unattached Disk"
WORKLOAD_STORAGE_ACCOUNT = "Storage Account"
WORKLOAD_BLOB = "Blob Storage"
WORKLOAD_FILES = "Azure Files"
WORKLOAD_TABLE = "Table Storage"
WORKLOAD_DATA_LAKE = "Data Lake Storage"
WORKLOAD_SQL_DATABASE = "SQL Database"
WORKLOAD_SQL_MANAGED_INSTANCE = "SQL Managed Instance"
WORKLOAD_COSMOSDB = "Cosmos DB"
WORKLOAD_RECOVERY_VAULT = "Recovery Services Vault"
WORKLOAD_ON_PREM_FILES = "On-Premises Files"
WORKLOAD_ON_PREM_SERVER = "On-Premises Server"
# Backup-only kinds: databases hosted inside VMs, never inventoried as resources
WORKLOAD_SQL_SERVER_IN_VM = "SQL Server in VM"
WORKLOAD_SAP_HANA_IN_VM = "SAP HANA in VM"
WORKLOAD_SAP_ASE_IN_VM = "SAP ASE in VM"

# Storage account level aggregate vs. the sub-services it contains
STORAGE_ACCOUNT_KINDS = frozenset({WORKLOAD_STORAGE_ACCOUNT})
STORAGE_SERVICE_KINDS = frozenset({
    WORKLOAD_BLOB,
    WORKLOAD_FILES,
    WORKLOAD_TABLE,
    WORKLOAD_DATA_LAKE,
})

# Counted as "with size" even though they never carry capacity themselves
SIZELESS_KINDS = frozenset({WORKLOAD_VM, WORKLOAD_RECOVERY_VAULT})

# =============================================================================
# Roll-up Policies
# =============================================================================

ROLLUP_OWN_BUCKET = "OwnBucket"
ROLLUP_ATTRIBUTE_TO_PARENT = "AttributeToParent"
ROLLUP_OWN_BUCKET_EXCLUDED = "OwnBucketExcludedFromParentDouble"

ROLLUP_POLICIES = frozenset({
    ROLLUP_OWN_BUCKET,
    ROLLUP_ATTRIBUTE_TO_PARENT,
    ROLLUP_OWN_BUCKET_EXCLUDED,
})

# =============================================================================
# Storage Aggregation Modes
# =============================================================================

STORAGE_MODE_ACCOUNT_LEVEL = "AccountLevel"
STORAGE_MODE_SERVICE_LEVEL = "ServiceLevel"

STORAGE_MODES = frozenset({STORAGE_MODE_ACCOUNT_LEVEL, STORAGE_MODE_SERVICE_LEVEL})
DEFAULT_STORAGE_MODE = STORAGE_MODE_SERVICE_LEVEL

# =============================================================================
# Anonymization
# =============================================================================

ANONYMIZE_NONE = "None"
ANONYMIZE_RESOURCE_GROUPS = "ResourceGroups"
ANONYMIZE_OBJECTS = "Objects"
ANONYMIZE_ALL = "All"

ANONYMIZE_SCOPES = frozenset({
    ANONYMIZE_NONE,
    ANONYMIZE_RESOURCE_GROUPS,
    ANONYMIZE_OBJECTS,
    ANONYMIZE_ALL,
})

SCOPE_RESOURCE_GROUP_NAME = "ResourceGroupName"
SCOPE_OBJECT_NAME = "ObjectName"

PSEUDONYM_PREFIXES = {
    SCOPE_RESOURCE_GROUP_NAME: "rg-",
    SCOPE_OBJECT_NAME: "obj-",
}
PSEUDONYM_LENGTH = 10

# Which pseudonym scopes each configured anonymize_scope switches on
ANONYMIZE_SCOPE_MAP = {
    ANONYMIZE_NONE: frozenset(),
    ANONYMIZE_RESOURCE_GROUPS: frozenset({SCOPE_RESOURCE_GROUP_NAME}),
    ANONYMIZE_OBJECTS: frozenset({SCOPE_OBJECT_NAME}),
    ANONYMIZE_ALL: frozenset({SCOPE_RESOURCE_GROUP_NAME, SCOPE_OBJECT_NAME}),
}

# =============================================================================
# Protection Sources
# =============================================================================

# Azure backup management types
SOURCE_AZURE_IAAS_VM = "AzureIaasVM"
SOURCE_AZURE_STORAGE = "AzureStorage"
SOURCE_AZURE_WORKLOAD = "AzureWorkload"
SOURCE_AZURE_SQL = "AzureSql"
SOURCE_MAB = "MAB"
SOURCE_DPM = "DPM"
SOURCE_AZURE_BACKUP_SERVER = "AzureBackupServer"

ON_PREMISES_SOURCE_KINDS = frozenset({
    SOURCE_MAB,
    SOURCE_DPM,
    SOURCE_AZURE_BACKUP_SERVER,
})

# Backup item workload types -> workload kinds
PROTECTED_WORKLOAD_MAPPING = {
    "VM": WORKLOAD_VM,
    "AzureFileShare": WORKLOAD_FILES,
    "SQLDataBase": WORKLOAD_SQL_SERVER_IN_VM,
    "SAPHanaDatabase": WORKLOAD_SAP_HANA_IN_VM,
    "SAPAseDatabase": WORKLOAD_SAP_ASE_IN_VM,
    "FileFolder": WORKLOAD_ON_PREM_FILES,
    "Client": WORKLOAD_ON_PREM_SERVER,
    "SystemState": WORKLOAD_ON_PREM_SERVER,
    "BareMetal": WORKLOAD_ON_PREM_SERVER,
}

# =============================================================================
# Telemetry Aggregations
# =============================================================================

AGGREGATION_MAXIMUM = "Maximum"
AGGREGATION_AVERAGE = "Average"
INTERVAL_DAILY = "P1D"
INTERVAL_HOURLY = "PT1H"
DEFAULT_METRIC_LOOKBACK_DAYS = 3

# =============================================================================
# Data Quality Events
# =============================================================================

EVENT_SKIP = "skip"
EVENT_ORPHAN = "orphan"
EVENT_PROBE_ERROR = "probe_error"
EVENT_COLLECTOR_FAILURE = "collector_failure"

# =============================================================================
# Authentication Error Constants
# =============================================================================

# Azure error status codes that indicate auth/permission issues
AZURE_AUTH_STATUS_CODES = {401, 403}
