"""
Configuration loading and management for LDAP DB Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import re
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class StartupConfigError(ConfigurationError):
    """Raised when the sync interval is malformed or not positive."""
    pass


DEFAULT_CONFIG_PATH = 'config.yaml'

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'μs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}

_DURATION_PART = re.compile(r'(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)')


def parse_duration(value: str) -> float:
    """
    Parse a duration string such as ``90s``, ``1h30m`` or ``1.5h``.

    Args:
        value: Duration string, optionally signed. ``"0"`` is accepted.

    Returns:
        Duration in seconds

    Raises:
        StartupConfigError: If the string is not a valid duration
    """
    text = str(value).strip()
    if not text:
        raise StartupConfigError("Invalid duration: empty string")

    sign = 1.0
    body = text
    if body[0] in '+-':
        if body[0] == '-':
            sign = -1.0
        body = body[1:]

    if body == '0':
        return 0.0
    if not body:
        raise StartupConfigError(f"Invalid duration: {text!r}")

    total = 0.0
    position = 0
    while position < len(body):
        match = _DURATION_PART.match(body, position)
        if not match:
            if re.match(r'\d+\.?\d*|\.\d+', body[position:]):
                raise StartupConfigError(f"Missing unit in duration: {text!r}")
            raise StartupConfigError(f"Invalid duration: {text!r}")
        number, unit = match.groups()
        total += float(number) * _DURATION_UNITS[unit]
        position = match.end()

    return sign * total


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings
    ENV_OVERRIDES = {
        'ldap.server_url': 'LDAP_SERVER_URL',
        'ldap.bind_dn': 'LDAP_BIND_DN',
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'ldap.user_base_dn': 'LDAP_USER_BASE_DN',
        'database.url': 'DATABASE_URL',
        'sync.interval': 'SYNC_INTERVAL',
    }

    # Presence of this variable enables debug logging, whatever its value
    ENV_DEBUG = 'SYNC_DEBUG'

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.explicit_path = bool(config_path or os.getenv('CONFIG_PATH'))
        self.config_path = config_path or os.getenv('CONFIG_PATH', DEFAULT_CONFIG_PATH)
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
            StartupConfigError: If the sync interval is invalid
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
            logger.debug(f"Read configuration file {self.config_path}")
        except FileNotFoundError:
            if self.explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using environment only")
            self.config = {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration file must contain a mapping")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()
        self._parse_interval()

        logger.debug("Configuration loaded successfully")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        if self.ENV_DEBUG in os.environ:
            self._set_nested_value(self.config, 'sync.debug', True)

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'bind_dn': None,
            'bind_password': None,
            'user_filter': '(objectClass=person)',
            'id_attribute': 'uid',
            'attribute_map': {
                'uid': 'social_uid',
                'cn': 'name',
                'mail': 'email',
            },
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        database_defaults = {
            'table': 'users',
            'id_column': 'social_uid',
            'where': None,
        }
        database_config = self.config.setdefault('database', {})
        for key, value in database_defaults.items():
            database_config.setdefault(key, value)

        sync_defaults = {
            'interval': None,
            'debug': False,
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

        logging_defaults = {
            'log_dir': None,
            'rotation': 'daily',
            'retention_days': 7,
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config['ldap']
        for field in ['server_url', 'user_base_dn']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        if ldap_config.get('bind_dn') and not ldap_config.get('bind_password'):
            errors.append("LDAP bind_password is required when bind_dn is set")

        database_config = self.config['database']
        for field in ['url', 'table', 'id_column']:
            if not database_config.get(field):
                errors.append(f"Missing required database field: {field}")

        attribute_map = ldap_config.get('attribute_map')
        if not isinstance(attribute_map, dict) or not attribute_map:
            errors.append("ldap.attribute_map must be a non-empty mapping")
        else:
            for ldap_attr, column in attribute_map.items():
                if not isinstance(column, str) or not column:
                    errors.append(f"Invalid column for LDAP attribute {ldap_attr}: {column!r}")
            id_attribute = ldap_config.get('id_attribute')
            id_column = database_config.get('id_column')
            if attribute_map.get(id_attribute) != id_column:
                errors.append(
                    f"ldap.attribute_map must map id attribute {id_attribute!r} "
                    f"to id column {id_column!r}"
                )

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _parse_interval(self):
        """Convert sync.interval into seconds, or None for a single run."""
        sync_config = self.config['sync']
        raw_interval = sync_config.get('interval')
        sync_config['interval_raw'] = raw_interval

        if raw_interval is None:
            sync_config['interval'] = None
            return

        try:
            seconds = parse_duration(raw_interval)
        except StartupConfigError as e:
            raise StartupConfigError(f"Cannot parse sync interval {raw_interval!r}: {e}")

        if seconds <= 0:
            raise StartupConfigError(f"Sync interval must be positive, got {raw_interval!r}")

        sync_config['interval'] = seconds


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
