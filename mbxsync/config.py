"""
Mailbox Delegation Sync - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (MBXSYNC_*, EXO_*, MS365_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
group: "sales-delegates@contoso.com"
mailbox: "sales@contoso.com"
output: "./mbxsync_output"

exchange:
  organization: contoso.onmicrosoft.com
  app_id: ${EXO_APP_ID}  # env var substitution
  certificate_path: ~/.mbxsync/exo-app.pfx
```

Secrets (certificate password, Graph client secret) are read from the
environment only and never from the config file.
"""
import os
import re
import stat
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List

import yaml

from .constants import (
    DEFAULT_OUTPUT_DIR,
    ENV_MS365_CLIENT_SECRET,
    MEMBERSHIP_SOURCES,
    SOURCE_EXCHANGE,
    SOURCE_GRAPH,
)
from .utils import ConfigError

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './mbxsync-config.yaml',
    './mbxsync-config.yml',
    '~/.mbxsync/config.yaml',
    '~/.mbxsync/config.yml',
]

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'group': 'MBXSYNC_GROUP',
    'mailbox': 'MBXSYNC_MAILBOX',
    'output': 'MBXSYNC_OUTPUT',
    'log_level': 'MBXSYNC_LOG_LEVEL',
    'membership_source': 'MBXSYNC_MEMBERSHIP_SOURCE',
    'convert_to_shared': 'MBXSYNC_CONVERT_TO_SHARED',
    'update_only': 'MBXSYNC_UPDATE_ONLY',
    'exchange.organization': 'EXO_ORGANIZATION',
    'exchange.app_id': 'EXO_APP_ID',
    'exchange.certificate_path': 'EXO_CERTIFICATE_PATH',
    'exchange.certificate_thumbprint': 'EXO_CERTIFICATE_THUMBPRINT',
    'graph.tenant_id': 'MS365_TENANT_ID',
    'graph.client_id': 'MS365_CLIENT_ID',
}

BOOLEAN_KEYS = ('convert_to_shared', 'update_only')


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes')


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
    value = data
    for key in key_path.split('.'):
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

    # Security check: warn if config file has loose permissions
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):  # Group or world access
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        try:
            config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

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
        value = os.environ.get(env_var)
        if value is not None:
            if config_key in BOOLEAN_KEYS:
                value = _parse_bool(value)
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

    # Map argparse attributes to config structure
    arg_mapping = {
        'group': 'group',
        'mailbox': 'mailbox',
        'output': 'output',
        'log_level': 'log_level',
        'membership_source': 'membership_source',
        'organization': 'exchange.organization',
        'app_id': 'exchange.app_id',
        'certificate_path': 'exchange.certificate_path',
        'certificate_thumbprint': 'exchange.certificate_thumbprint',
        'tenant_id': 'graph.tenant_id',
        'client_id': 'graph.client_id',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            _set_nested(config, config_key, value)

    # store_true flags only override when set
    for flag in BOOLEAN_KEYS:
        if getattr(args, flag, False):
            config[flag] = True

    return config


def config_to_args(config: Dict[str, Any], args) -> None:
    """Apply merged config values back to the argparse args object."""
    for key in ('group', 'mailbox', 'output', 'log_level', 'membership_source'):
        if key in config:
            setattr(args, key, config[key])
    for key in BOOLEAN_KEYS:
        if key in config:
            setattr(args, key, _parse_bool(config[key]))

    exchange = config.get('exchange', {})
    for key in ('organization', 'app_id', 'certificate_path', 'certificate_thumbprint'):
        if key in exchange and not getattr(args, key, None):
            setattr(args, key, exchange[key])

    graph = config.get('graph', {})
    for key in ('tenant_id', 'client_id'):
        if key in graph and not getattr(args, key, None):
            setattr(args, key, graph[key])


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
    merged.setdefault('output', DEFAULT_OUTPUT_DIR)
    merged.setdefault('membership_source', SOURCE_EXCHANGE)

    config_to_args(merged, args)

    return merged


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Check that the merged config holds everything a run needs.

    Returns:
        List of problems; empty when the config is usable
    """
    problems = []

    if not config.get('group'):
        problems.append("group is required (--group or MBXSYNC_GROUP)")
    if not config.get('mailbox'):
        problems.append("mailbox is required (--mailbox or MBXSYNC_MAILBOX)")

    if not _get_nested(config, 'exchange.organization'):
        problems.append("exchange organization is required (--organization or EXO_ORGANIZATION)")
    if not _get_nested(config, 'exchange.app_id'):
        problems.append("exchange app id is required (--app-id or EXO_APP_ID)")
    if not (_get_nested(config, 'exchange.certificate_path')
            or _get_nested(config, 'exchange.certificate_thumbprint')):
        problems.append("a certificate is required (--certificate-path or --certificate-thumbprint)")

    source = config.get('membership_source', SOURCE_EXCHANGE)
    if source not in MEMBERSHIP_SOURCES:
        problems.append(f"membership_source must be one of {', '.join(MEMBERSHIP_SOURCES)}, got '{source}'")
    elif source == SOURCE_GRAPH:
        if not _get_nested(config, 'graph.tenant_id'):
            problems.append("graph tenant id is required (--tenant-id or MS365_TENANT_ID)")
        if not _get_nested(config, 'graph.client_id'):
            problems.append("graph client id is required (--client-id or MS365_CLIENT_ID)")
        if not os.environ.get(ENV_MS365_CLIENT_SECRET):
            problems.append(f"{ENV_MS365_CLIENT_SECRET} environment variable is required for the graph source")

    return problems


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# Mailbox Delegation Sync Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# =============================================================================
# Run Settings
# =============================================================================

# Security group whose members receive FullAccess
group: "sales-delegates@contoso.com"

# Target mailbox
mailbox: "sales@contoso.com"

# Convert the mailbox to a shared mailbox before reconciling
convert_to_shared: false

# Only reconcile member FullAccess (skip SendAs, send on behalf, conversion)
update_only: false

# Where membership is read from: exchange or graph
membership_source: exchange

# Output directory for run reports and log files
output: "./mbxsync_output"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO


# =============================================================================
# Exchange Online (app-only authentication)
# =============================================================================
# Requires an App Registration with Exchange.ManageAsApp and the
# "Exchange Recipient Administrator" role.
# Certificate password MUST be set via EXO_CERTIFICATE_PASSWORD.
#
exchange:
  # Tenant's initial domain
  organization: ${EXO_ORGANIZATION:-contoso.onmicrosoft.com}

  # App registration client ID
  app_id: ${EXO_APP_ID}

  # .pfx certificate (cross-platform)
  certificate_path: ~/.mbxsync/exo-app.pfx

  # Or a certificate installed in the store (Windows only)
  # certificate_thumbprint: "0123456789ABCDEF0123456789ABCDEF01234567"

  # PowerShell executable and per-call timeout in seconds
  # powershell: pwsh
  # timeout: 300


# =============================================================================
# Microsoft Graph (membership_source: graph)
# =============================================================================
# Requires GroupMember.Read.All (Application type).
# Client secret MUST be set via MS365_CLIENT_SECRET.
#
graph:
  # tenant_id: ${MS365_TENANT_ID}
  # client_id: ${MS365_CLIENT_ID}
'''
