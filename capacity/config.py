"""
CCA Capacity - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (CCA_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
org_name: "acme-corp"
output: "./collections"
parallel_workers: 4

azure:
  subscription: ${CCA_AZURE_SUBSCRIPTION}
  regions:
    - eastus
    - westeurope

engine:
  anonymize_scope: All
  anonymize_salt: ${CCA_ANONYMIZE_SALT}
  storage_aggregation_mode: ServiceLevel
```
"""
import os
import re
import stat
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

import yaml  # type: ignore[import-untyped]

from .constants import (
    ANONYMIZE_NONE,
    ANONYMIZE_SCOPES,
    DEFAULT_PARALLEL_WORKERS,
    DEFAULT_STORAGE_MODE,
    STORAGE_MODES,
)

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './cca-config.yaml',
    './cca-config.yml',
    '~/.cca/config.yaml',
    '~/.cca/config.yml',
]

# Environment variable prefix
ENV_PREFIX = 'CCA_'

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'org_name': 'CCA_ORG_NAME',
    'output': 'CCA_OUTPUT',
    'log_level': 'CCA_LOG_LEVEL',
    'parallel_workers': 'CCA_PARALLEL_WORKERS',
    'azure.subscription': 'CCA_AZURE_SUBSCRIPTION',
    'azure.regions': 'CCA_REGIONS',
    'engine.anonymize_scope': 'CCA_ANONYMIZE_SCOPE',
    'engine.anonymize_salt': 'CCA_ANONYMIZE_SALT',
    'engine.storage_aggregation_mode': 'CCA_STORAGE_MODE',
}


class ConfigError(ValueError):
    """Invalid configuration value. Raised before any collection starts."""


@dataclass(frozen=True)
class EngineConfig:
    """Validated run-level engine settings."""
    anonymize_scope: str = ANONYMIZE_NONE
    anonymize_salt: Optional[str] = None
    storage_aggregation_mode: str = DEFAULT_STORAGE_MODE


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Get a nested value from a dict using dot notation."""
    keys = key_path.split('.')
    value = data
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Salt may live in the file; warn on group/world access
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value: Any = os.environ.get(env_var)
        if value is None:
            continue
        if config_key == 'azure.regions':
            value = [v.strip() for v in value.split(',') if v.strip()]
        elif config_key == 'parallel_workers':
            try:
                value = int(value)
            except ValueError:
                logger.warning(f"Ignoring non-integer {env_var}={value!r}")
                continue
        _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    arg_mapping = {
        'org_name': 'org_name',
        'output': 'output',
        'log_level': 'log_level',
        'parallel_workers': 'parallel_workers',
        'subscription': 'azure.subscription',
        'regions': 'azure.regions',
        'anonymize_scope': 'engine.anonymize_scope',
        'anonymize_salt': 'engine.anonymize_salt',
        'storage_mode': 'engine.storage_aggregation_mode',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            if arg_name == 'regions' and isinstance(value, str):
                value = [v.strip() for v in value.split(',') if v.strip()]
            _set_nested(config, config_key, value)

    return config


def config_to_args(config: Dict[str, Any], args) -> None:
    """Apply merged config values back onto the argparse args object."""
    if 'org_name' in config:
        args.org_name = config['org_name']
    if 'output' in config:
        args.output = config['output']
    if 'log_level' in config:
        args.log_level = config['log_level']
    if 'parallel_workers' in config:
        args.parallel_workers = config['parallel_workers']

    azure_config = config.get('azure', {})
    if 'subscription' in azure_config and not getattr(args, 'subscription', None):
        args.subscription = azure_config['subscription']
    if 'regions' in azure_config and not getattr(args, 'regions', None):
        regions = azure_config['regions']
        args.regions = ','.join(regions) if isinstance(regions, list) else regions


def build_engine_config(config: Dict[str, Any]) -> EngineConfig:
    """
    Validate the merged `engine` block.

    Raises:
        ConfigError: For an unknown anonymize scope or storage aggregation mode
    """
    engine = config.get('engine') or {}

    scope = engine.get('anonymize_scope') or ANONYMIZE_NONE
    if scope not in ANONYMIZE_SCOPES:
        raise ConfigError(
            f"Invalid anonymize_scope {scope!r}; expected one of {', '.join(sorted(ANONYMIZE_SCOPES))}"
        )

    mode = engine.get('storage_aggregation_mode') or DEFAULT_STORAGE_MODE
    if mode not in STORAGE_MODES:
        raise ConfigError(
            f"Invalid storage_aggregation_mode {mode!r}; expected one of {', '.join(sorted(STORAGE_MODES))}"
        )

    salt = engine.get('anonymize_salt') or None
    return EngineConfig(
        anonymize_scope=scope,
        anonymize_salt=str(salt) if salt is not None else None,
        storage_aggregation_mode=mode,
    )


def get_parallel_workers(config: Dict[str, Any]) -> int:
    """Parallel subscription workers from the merged config (minimum 1)."""
    value = _get_nested(config, 'parallel_workers', DEFAULT_PARALLEL_WORKERS)
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid parallel_workers {value!r}; expected an integer")


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables

    Returns merged config dict.
    """
    configs = []

    # 1. Environment variables (lowest priority)
    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    # 2. Config file
    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    # 3. CLI arguments (highest priority)
    configs.append(args_to_config(args))

    merged = merge_configs(*configs)
    config_to_args(merged, args)

    return merged


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# CCA Capacity Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# =============================================================================
# Common Settings
# =============================================================================

# Organization name (used in report metadata)
org_name: "my-organization"

# Output directory for reports
output: "./collections"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

# Subscriptions collected concurrently
parallel_workers: 4


# =============================================================================
# Azure Settings (azure_collect.py)
# =============================================================================
azure:
  # Specific subscription ID (leave empty for all accessible subscriptions)
  # subscription: "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"

  # Filter to specific regions (default: all regions with resources)
  # regions:
  #   - eastus
  #   - westus2


# =============================================================================
# Engine Settings
# =============================================================================
engine:
  # Pseudonymize names in the detail table: None, ResourceGroups, Objects, All
  anonymize_scope: None

  # Salt for pseudonyms. Reuse the same salt to correlate runs.
  # Always use an env var, never put the salt in a shared file.
  # anonymize_salt: ${CCA_ANONYMIZE_SALT}

  # Where storage bytes are counted: AccountLevel or ServiceLevel
  storage_aggregation_mode: ServiceLevel
'''
