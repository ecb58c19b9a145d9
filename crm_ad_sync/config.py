"""
Configuration loading and management for CRM AD Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


AUTH_METHODS = ('basic', 'bearer', 'token', 'oauth2', 'mtls', 'mutual_tls', 'none')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'crm.server_url': 'CRM_SERVER_URL',
        'crm.auth.username': 'CRM_USERNAME',
        'crm.auth.password': 'CRM_PASSWORD',
        'crm.auth.token': 'CRM_TOKEN',
        'crm.auth.client_secret': 'CRM_CLIENT_SECRET',
        'notifications.smtp_password': 'SMTP_PASSWORD',
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
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        crm_config = self.config.get('crm') or {}
        server_url = crm_config.get('server_url')
        if not server_url:
            errors.append("Missing required CRM field: server_url")
        elif urlparse(str(server_url)).scheme not in ('http', 'https') or not urlparse(str(server_url)).netloc:
            errors.append(f"CRM server_url must be an http(s) URL: {server_url}")

        timeout = crm_config.get('timeout')
        if timeout is not None:
            try:
                if float(timeout) <= 0:
                    errors.append("CRM timeout must be a positive number of seconds")
            except (TypeError, ValueError):
                errors.append(f"CRM timeout must be numeric: {timeout}")

        auth = crm_config.get('auth') or {}
        method = str(auth.get('method', '')).lower()
        if not method:
            errors.append("Missing auth method for crm.auth")
        elif method not in AUTH_METHODS:
            errors.append(f"Unknown auth method for crm.auth: {method}")
        elif method == 'basic':
            for field in ('username', 'password'):
                if not auth.get(field):
                    errors.append(f"Missing crm.auth.{field} for basic authentication")
        elif method in ('bearer', 'token'):
            if not auth.get('token'):
                errors.append("Missing crm.auth.token for bearer authentication")
        elif method == 'oauth2':
            for field in ('client_id', 'client_secret', 'token_url'):
                if not auth.get(field):
                    errors.append(f"Missing crm.auth.{field} for oauth2 authentication")
        elif method in ('mtls', 'mutual_tls'):
            if not crm_config.get('keystore_file'):
                errors.append("Missing crm.keystore_file for mutual TLS authentication")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

        if method == 'none':
            logger.warning("CRM authentication disabled; requests are sent without credentials")

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # CRM defaults
        crm_defaults = {
            'api_version': 'v8.2',
            'directory_endpoint': '/AppWebServices/UserManager.asmx',
            'timeout': 30,
            'verify_ssl': True
        }
        crm_config = self._section('crm')
        for key, value in crm_defaults.items():
            crm_config.setdefault(key, value)
        crm_config['server_url'] = str(crm_config['server_url']).rstrip('/')

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self._section('notifications')
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)

    def _section(self, name: str) -> Dict[str, Any]:
        """Return a top-level section, replacing an empty YAML value with a dict."""
        if not isinstance(self.config.get(name), dict):
            self.config[name] = {}
        return self.config[name]


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
