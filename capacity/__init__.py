"""
CCA Capacity shared library.
"""
# Import constants module for easy access
from . import constants
from .config import ConfigError, EngineConfig, build_engine_config, load_config
from .constants import (
    DEFAULT_PARALLEL_WORKERS,
    DEFAULT_STORAGE_MODE,
    STORAGE_MODE_ACCOUNT_LEVEL,
    STORAGE_MODE_SERVICE_LEVEL,
)
from .engine import CapacityEngine
from .metrics import CapacityProbe, MetricResolutionChain
from .models import (
    AggregateCell,
    AggregateKey,
    CollectorResult,
    DataQualityEvent,
    ProtectionRecord,
    ResourceRecord,
)
from .pseudonymize import Pseudonymizer, pseudonymize
from .report import CapacityReport, build_report, write_report
from .units import to_bytes, to_gib, to_tib
from .utils import (
    AuthError,
    generate_run_id,
    get_timestamp,
    setup_logging,
    write_csv,
    write_json,
)

__all__ = [
    # Constants
    'constants',
    'DEFAULT_PARALLEL_WORKERS',
    'DEFAULT_STORAGE_MODE',
    'STORAGE_MODE_ACCOUNT_LEVEL',
    'STORAGE_MODE_SERVICE_LEVEL',
    # Config
    'ConfigError',
    'EngineConfig',
    'build_engine_config',
    'load_config',
    # Models
    'AggregateCell',
    'AggregateKey',
    'CollectorResult',
    'DataQualityEvent',
    'ProtectionRecord',
    'ResourceRecord',
    # Engine
    'CapacityEngine',
    'CapacityProbe',
    'MetricResolutionChain',
    'Pseudonymizer',
    'pseudonymize',
    # Report
    'CapacityReport',
    'build_report',
    'write_report',
    # Units
    'to_bytes',
    'to_gib',
    'to_tib',
    # Utils
    'AuthError',
    'generate_run_id',
    'get_timestamp',
    'setup_logging',
    'write_json',
    'write_csv',
]
