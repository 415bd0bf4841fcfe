"""
PP Gateway Audit - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (PPGW_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./gateway-audit"
log_level: INFO

tenant_id: ${PPGW_TENANT_ID}
client_id: ${PPGW_CLIENT_ID}

environments:
  - "Default-00000000-0000-0000-0000-000000000000"
  - "Finance (Prod)"
gateways:
  - "OnPremGW"
parallel_environments: 4
xlsx: true
```
"""
import logging
import os
import re
import stat
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './ppgw-config.yaml',
    './ppgw-config.yml',
    '~/.ppgw/config.yaml',
    '~/.ppgw/config.yml',
]

# Environment variable prefix
ENV_PREFIX = 'PPGW_'

# Client secret is only ever read from the environment
CLIENT_SECRET_ENV_VAR = 'PPGW_CLIENT_SECRET'

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'PPGW_OUTPUT',
    'log_level': 'PPGW_LOG_LEVEL',
    'tenant_id': 'PPGW_TENANT_ID',
    'client_id': 'PPGW_CLIENT_ID',
    'environments': 'PPGW_ENVIRONMENTS',
    'gateways': 'PPGW_GATEWAYS',
    'parallel_environments': 'PPGW_PARALLEL_ENVIRONMENTS',
    'timeout': 'PPGW_TIMEOUT',
    'xlsx': 'PPGW_XLSX',
}

LIST_KEYS = ('environments', 'gateways')
INT_KEYS = ('parallel_environments', 'timeout')
BOOL_KEYS = ('xlsx',)


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


def _split_list(value: Any) -> Any:
    """Turn a comma-separated string into a list; lists pass through."""
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    if isinstance(value, (list, tuple)):
        items = []
        for v in value:
            items.extend(_split_list(v) if isinstance(v, str) else [v])
        return items
    return value


def _coerce(key: str, value: Any) -> Any:
    """Normalize a raw config value to the type its key expects."""
    if value is None:
        return None
    if key in LIST_KEYS:
        return _split_list(value)
    if key in INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Config value for '{key}' must be an integer, got {value!r}")
    if key in BOOL_KEYS and isinstance(value, str):
        return value.lower() in ('true', '1', 'yes')
    return value


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Warn if config file has loose permissions
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping at the top level")

    if 'client_secret' in config:
        logger.warning(f"Ignoring client_secret in {config_path}; set {CLIENT_SECRET_ENV_VAR} instead")
        config.pop('client_secret')

    config = _substitute_env_vars(config)
    return {k: _coerce(k, v) for k, v in config.items()}


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
        value = os.environ.get(env_var)
        if value is not None:
            config[config_key] = _coerce(config_key, value)

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

    for key in ENV_VAR_MAPPING:
        value = getattr(args, key, None)
        # store_true flags default to False; only an explicit True overrides
        if key in BOOL_KEYS and value is False:
            continue
        if value is not None:
            config[key] = _coerce(key, value)

    return config


def config_to_args(config: Dict[str, Any], args) -> None:
    """Apply merged config values back onto the argparse namespace."""
    for key in ENV_VAR_MAPPING:
        if key in config:
            setattr(args, key, config[key])


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

    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    configs.append(args_to_config(args))

    merged = merge_configs(*configs)
    config_to_args(merged, args)

    return merged


def get_client_secret() -> Optional[str]:
    """Client secret for service principal auth (environment only)."""
    return os.environ.get(CLIENT_SECRET_ENV_VAR)


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# PP Gateway Audit Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Output directory or Azure Blob container URL
output: "./ppgw_output"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

# Service principal (optional). Without all three of tenant_id, client_id and
# the PPGW_CLIENT_SECRET environment variable, DefaultAzureCredential is used
# (Azure CLI login, managed identity, ...).
# tenant_id: ${PPGW_TENANT_ID}
# client_id: ${PPGW_CLIENT_ID}
#
# Client secret: always use the PPGW_CLIENT_SECRET env var, never this file.

# Only scan these environments (id or display name)
# environments:
#   - "Default-00000000-0000-0000-0000-000000000000"
#   - "Finance (Prod)"

# Only report usage of these gateways (id or name)
# gateways:
#   - "OnPremGW"

# Environments processed in parallel (1 = serial)
parallel_environments: 1

# Per-request HTTP timeout in seconds
timeout: 60

# Also write an Excel workbook
xlsx: false
'''
