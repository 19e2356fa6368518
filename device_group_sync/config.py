"""
Configuration loading and management for Device Group Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


SUPPORTED_PLATFORMS = ('iOS', 'iPadOS', 'Windows')
SUPPORTED_ADD_MODES = ('Users', 'Devices', 'Both')


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.client_secret': 'GRAPH_CLIENT_SECRET',
        'directory.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    # Required settings per directory backend module
    REQUIRED_DIRECTORY_FIELDS = {
        'graph': ['tenant_id', 'client_id', 'client_secret'],
        'ldap_directory': ['server_url', 'bind_dn', 'bind_password', 'base_dn'],
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        directory = self.config.get('directory') or {}
        module = directory.get('module', 'graph')
        required = self.REQUIRED_DIRECTORY_FIELDS.get(module)
        if required is None:
            errors.append(f"Unknown directory module: {module}")
        else:
            for field in required:
                if not directory.get(field):
                    errors.append(f"Missing required directory field: {field}")

        sync = self.config.get('sync') or {}
        errors.extend(validate_sync_settings(sync))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory = self.config.setdefault('directory', {})
        directory.setdefault('module', 'graph')
        if directory['module'] == 'graph':
            directory.setdefault('base_url', 'https://graph.microsoft.com/v1.0')
            directory.setdefault('token_url',
                                 f"https://login.microsoftonline.com/{directory.get('tenant_id')}/oauth2/v2.0/token")
            directory.setdefault('scope', 'https://graph.microsoft.com/.default')
            directory.setdefault('verify_ssl', True)
            directory.setdefault('page_size', 999)

        sync_defaults = {
            'source_groups': [],
            'filters': {},
            'target_group': None,
            'add_mode': 'Users',
            'clear_first': True,
            'dry_run': False,
            'limit': 0,
            'batch_size': 15,
            'fail_on_member_errors': False
        }
        sync = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def validate_sync_settings(sync: Dict[str, Any]) -> list:
    """
    Validate the sync section, which may also be assembled from CLI flags.

    Returns:
        List of error messages (empty when valid)
    """
    from device_group_sync.versions import Operator

    errors = []

    source_groups = sync.get('source_groups', [])
    if source_groups is not None and not isinstance(source_groups, list):
        errors.append("sync.source_groups must be a list of group names")

    filters = sync.get('filters') or {}
    if not isinstance(filters, dict):
        errors.append("sync.filters must be a mapping of platform to filter settings")
        filters = {}
    for platform, settings in filters.items():
        if platform not in SUPPORTED_PLATFORMS:
            errors.append(f"Unsupported filter platform: {platform}")
            continue
        if not isinstance(settings, dict) or not settings.get('min_version'):
            errors.append(f"Missing min_version for sync.filters.{platform}")
            continue
        operator = settings.get('operator', 'lt')
        if not Operator.is_valid(operator):
            errors.append(f"Invalid operator '{operator}' for sync.filters.{platform}")

    add_mode = sync.get('add_mode', 'Users')
    if str(add_mode).lower() not in [mode.lower() for mode in SUPPORTED_ADD_MODES]:
        errors.append(f"Invalid sync.add_mode '{add_mode}' (expected one of {', '.join(SUPPORTED_ADD_MODES)})")

    batch_size = sync.get('batch_size', 15)
    if not isinstance(batch_size, int) or batch_size < 1:
        errors.append("sync.batch_size must be a positive integer")

    limit = sync.get('limit', 0)
    if limit is not None and (not isinstance(limit, int) or limit < 0):
        errors.append("sync.limit must be a non-negative integer")

    return errors


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
