"""
Configuration loading and management for the Tiime CardDAV gateway.

This module handles loading configuration from an optional YAML file and
environment variables, with validation and defaults. Single-tenant
deployments are configured entirely from the environment.
"""

import os
import re
import yaml
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'

MODE_MULTI = 'multi'
MODE_SINGLE = 'single'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of gateway configuration."""

    ENV_OVERRIDES = {
        'service_account.email': 'TIIME_EMAIL',
        'service_account.password': 'TIIME_PASSWORD',
        'service_account.company_id': 'TIIME_COMPANY_ID',
        'server.host': 'CARDDAV_HOST',
        'server.port': 'CARDDAV_PORT',
        'logging.level': 'LOG_LEVEL',
    }

    DEFAULTS = {
        'server': {
            'host': '0.0.0.0',
            'port': 1234,
            'realm': 'Tiime',
        },
        'tiime': {
            'timeout': 30,
            'verify_ssl': True,
            'page_size': 100,
            'token_refresh_margin': 60,
        },
        'renewal': {
            'enabled': True,
            'interval_seconds': 600,
        },
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO',
        },
        'error_handling': {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var
                or 'config.yaml'; only an explicitly named file must exist.
        """
        self.explicit_path = config_path or os.getenv('CONFIG_PATH')
        self.config_path = self.explicit_path or DEFAULT_CONFIG_PATH
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If an explicit config file is missing or
                validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
            logger.info(f"Configuration file loaded from {self.config_path}")
        except FileNotFoundError:
            if self.explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using environment only")
            self.config = {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.debug(f"Configuration ready, mode={self.config['server']['mode']}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
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
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for section, defaults in self.DEFAULTS.items():
            section_config = self.config.setdefault(section, {})
            if not isinstance(section_config, dict):
                raise ConfigurationError(f"Configuration section '{section}' must be a mapping")
            for key, value in defaults.items():
                section_config.setdefault(key, value)

        service_account = self.config.setdefault('service_account', {})
        default_mode = MODE_SINGLE if service_account.get('company_id') not in (None, '') else MODE_MULTI
        self.config['server'].setdefault('mode', default_mode)

    def _validate(self):
        """Validate configuration fields, collecting every error."""
        errors = []
        server = self.config['server']

        port = _as_int(server.get('port'))
        if port is None or not 0 < port < 65536:
            errors.append(f"Invalid server port: {server.get('port')}")
        else:
            server['port'] = port

        if not server.get('realm') or '"' in str(server['realm']):
            errors.append(f"Invalid authentication realm: {server.get('realm')!r}")

        mode = server.get('mode')
        if mode not in (MODE_MULTI, MODE_SINGLE):
            errors.append(f"Invalid server mode '{mode}', expected '{MODE_MULTI}' or '{MODE_SINGLE}'")

        if mode == MODE_SINGLE:
            service_account = self.config['service_account']
            for field, env_var in (('email', 'TIIME_EMAIL'), ('password', 'TIIME_PASSWORD')):
                if not service_account.get(field):
                    errors.append(f"Missing required service account field: {field} (set {env_var})")
            company_id = service_account.get('company_id')
            if company_id in (None, ''):
                errors.append("Missing required service account field: company_id (set TIIME_COMPANY_ID)")
            elif _as_int(company_id) is None or _as_int(company_id) < 0:
                errors.append(f"Invalid company id: {company_id!r}")
            else:
                service_account['company_id'] = _as_int(company_id)

        tiime = self.config['tiime']
        page_size = _as_int(tiime.get('page_size'))
        if page_size is None or page_size <= 0:
            errors.append(f"Invalid tiime.page_size: {tiime.get('page_size')}")

        renewal = self.config['renewal']
        interval = renewal.get('interval_seconds')
        if renewal.get('enabled') and (not isinstance(interval, (int, float)) or interval <= 0):
            errors.append(f"Invalid renewal.interval_seconds: {interval}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))


def _as_int(value: Any) -> Optional[int]:
    """Convert an int or a string of ASCII digits (optionally signed) to int."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r'-?[0-9]+', value.strip()):
        return int(value.strip())
    return None


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
