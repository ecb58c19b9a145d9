#!/usr/bin/env python3
"""
Unit tests for configuration module.

This module provides unit tests for the configuration loading,
validation, and environment variable override functionality.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from crm_ad_sync.config import ConfigLoader, ConfigurationError, load_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'crm': {
                'server_url': 'https://crm.example.com/Contoso/',
                'auth': {
                    'method': 'basic',
                    'username': 'CONTOSO\\svc-sync',
                    'password': 'password'
                }
            },
            'logging': {
                'level': 'DEBUG',
                'log_dir': 'logs'
            },
            'notifications': {
                'enable_email': True,
                'smtp_server': 'smtp.example.com',
                'email_from': 'sync@example.com',
                'email_to': ['admin@example.com']
            }
        }
        self.temp_dir = tempfile.mkdtemp()
        self.addCleanup(self._remove_temp_dir)

    def _remove_temp_dir(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, name='config.yaml'):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            if isinstance(config_data, str):
                f.write(config_data)
            else:
                yaml.dump(config_data, f)
        return path

    def test_load_valid_config(self):
        """Test loading a valid configuration with defaults applied."""
        config = load_config(self._write_config(self.valid_config))

        self.assertEqual(config['crm']['server_url'], 'https://crm.example.com/Contoso')
        self.assertEqual(config['crm']['api_version'], 'v8.2')
        self.assertEqual(config['crm']['directory_endpoint'], '/AppWebServices/UserManager.asmx')
        self.assertEqual(config['crm']['timeout'], 30)
        self.assertTrue(config['crm']['verify_ssl'])
        self.assertEqual(config['logging']['level'], 'DEBUG')
        self.assertEqual(config['logging']['retention_days'], 7)
        self.assertEqual(config['notifications']['smtp_port'], 587)
        self.assertTrue(config['notifications']['enable_email'])

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(os.path.join(self.temp_dir, 'missing.yaml'))
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        path = self._write_config("crm: [unclosed\n")
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(path)
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_empty_file(self):
        path = self._write_config("")
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(path)
        self.assertIn('server_url', str(ctx.exception))

    def test_non_mapping_root(self):
        path = self._write_config("- a\n- b\n")
        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_invalid_server_url(self):
        self.valid_config['crm']['server_url'] = 'crm.example.com'
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self._write_config(self.valid_config))
        self.assertIn('http(s) URL', str(ctx.exception))

    def test_all_errors_are_reported(self):
        self.valid_config['crm'] = {'timeout': -1, 'auth': {'method': 'oauth2'}}
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self._write_config(self.valid_config))

        message = str(ctx.exception)
        self.assertIn('server_url', message)
        self.assertIn('timeout', message)
        self.assertIn('client_id', message)
        self.assertIn('client_secret', message)
        self.assertIn('token_url', message)

    def test_unknown_auth_method(self):
        self.valid_config['crm']['auth'] = {'method': 'kerberos'}
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self._write_config(self.valid_config))
        self.assertIn('kerberos', str(ctx.exception))

    def test_missing_auth_method(self):
        del self.valid_config['crm']['auth']
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self._write_config(self.valid_config))
        self.assertIn('auth method', str(ctx.exception))

    def test_bearer_requires_token(self):
        self.valid_config['crm']['auth'] = {'method': 'bearer'}
        with self.assertRaises(ConfigurationError):
            load_config(self._write_config(self.valid_config))

    def test_mtls_requires_keystore(self):
        self.valid_config['crm']['auth'] = {'method': 'mtls'}
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self._write_config(self.valid_config))
        self.assertIn('keystore_file', str(ctx.exception))

    def test_no_auth_is_allowed_with_warning(self):
        self.valid_config['crm']['auth'] = {'method': 'none'}
        with self.assertLogs('crm_ad_sync.config', level='WARNING'):
            config = load_config(self._write_config(self.valid_config))
        self.assertEqual(config['crm']['auth']['method'], 'none')

    def test_empty_sections_get_defaults(self):
        path = self._write_config(
            "crm:\n  server_url: http://crm.local\n  auth:\n    method: none\nlogging:\nnotifications:\n"
        )
        config = load_config(path)
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertFalse(config['notifications']['enable_email'])

    @patch.dict(os.environ, {'CRM_PASSWORD': 'env_password', 'SMTP_PASSWORD': 'env_smtp'})
    def test_environment_overrides(self):
        """Test environment variable overrides for secrets."""
        self.valid_config['crm']['auth']['password'] = 'file_password'
        config = load_config(self._write_config(self.valid_config))

        self.assertEqual(config['crm']['auth']['password'], 'env_password')
        self.assertEqual(config['notifications']['smtp_password'], 'env_smtp')

    @patch.dict(os.environ, {'CRM_PASSWORD': 'env_password'})
    def test_environment_satisfies_validation(self):
        del self.valid_config['crm']['auth']['password']
        config = load_config(self._write_config(self.valid_config))
        self.assertEqual(config['crm']['auth']['password'], 'env_password')

    @patch.dict(os.environ, {'CRM_SERVER_URL': 'https://other.example.com'})
    def test_server_url_override(self):
        config = load_config(self._write_config(self.valid_config))
        self.assertEqual(config['crm']['server_url'], 'https://other.example.com')

    def test_config_path_from_environment(self):
        path = self._write_config(self.valid_config, 'from_env.yaml')
        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, path)


if __name__ == '__main__':
    unittest.main()
