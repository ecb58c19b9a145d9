#!/usr/bin/env python3
"""
Unit tests for the CRM HTTP client.

Tests authentication header setup, the OAuth2 client credentials flow,
request/response handling and connection management with fake connections.
"""

import os
import sys
import ssl
import json
import base64
import unittest
from unittest.mock import patch

# Add parent directory to path to import crm_ad_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from crm_ad_sync.http_client import (
    CrmHttpClient,
    CrmAPIError,
    CrmAuthenticationError,
    ODATA_HEADERS,
)
from fakes import FakeConnection, FakeResponse


class TestAuthenticationSetup(unittest.TestCase):
    """Test cases for credential configuration."""

    def _config(self, auth, server_url='http://crm.test/Contoso'):
        return {'server_url': server_url, 'auth': auth}

    def test_basic_auth_header(self):
        client = CrmHttpClient(self._config({'method': 'basic', 'username': 'CONTOSO\\svc', 'password': 'pw'}))

        expected = base64.b64encode(b'CONTOSO\\svc:pw').decode()
        self.assertEqual(client.auth_headers['Authorization'], f'Basic {expected}')
        self.assertTrue(client.authenticate())

    def test_bearer_auth_header(self):
        client = CrmHttpClient(self._config({'method': 'bearer', 'token': 'tok123'}))
        self.assertEqual(client.auth_headers['Authorization'], 'Bearer tok123')

    def test_token_alias(self):
        client = CrmHttpClient(self._config({'method': 'token', 'token': 'tok123'}))
        self.assertEqual(client.auth_headers['Authorization'], 'Bearer tok123')

    def test_no_auth(self):
        client = CrmHttpClient(self._config({'method': 'none'}))
        self.assertEqual(client.auth_headers, {})
        self.assertTrue(client.authenticate())

    def test_unknown_method_fails_authentication(self):
        client = CrmHttpClient(self._config({'method': 'kerberos'}))
        self.assertFalse(client.authenticate())

    def test_https_context_verifies_by_default(self):
        client = CrmHttpClient(self._config({'method': 'none'}, 'https://crm.test'))
        self.assertEqual(client.ssl_context.verify_mode, ssl.CERT_REQUIRED)

    def test_https_context_without_verification(self):
        config = self._config({'method': 'none'}, 'https://crm.test')
        config['verify_ssl'] = False
        client = CrmHttpClient(config)
        self.assertEqual(client.ssl_context.verify_mode, ssl.CERT_NONE)
        self.assertFalse(client.ssl_context.check_hostname)

    def test_missing_truststore_raises(self):
        config = self._config({'method': 'none'}, 'https://crm.test')
        config['truststore_file'] = '/nonexistent/ca.pem'
        with self.assertRaises(CrmAPIError):
            CrmHttpClient(config)


class TestOAuth2(unittest.TestCase):
    """Test cases for the OAuth2 client credentials flow."""

    def setUp(self):
        self.config = {
            'server_url': 'http://crm.test/Contoso',
            'auth': {
                'method': 'oauth2',
                'client_id': 'client',
                'client_secret': 'secret',
                'token_url': 'http://login.test/adfs/oauth2/token',
                'scope': 'http://crm.test/',
            },
        }

    def test_token_is_fetched_on_authenticate(self):
        connection = FakeConnection(lambda method, path, body: FakeResponse(
            200, json.dumps({'access_token': 'tok', 'expires_in': 3600})))

        with patch('crm_ad_sync.http_client.HTTPConnection', connection):
            client = CrmHttpClient(self.config)
            self.assertTrue(client.authenticate())

        self.assertEqual(client.auth_headers['Authorization'], 'Bearer tok')
        request = connection.requests[0]
        self.assertEqual(request['method'], 'POST')
        self.assertEqual(request['path'], '/adfs/oauth2/token')
        self.assertIn('grant_type=client_credentials', request['body'])
        self.assertIn('client_id=client', request['body'])
        self.assertEqual(connection.opened[0][0], 'login.test')

    def test_valid_token_is_reused(self):
        connection = FakeConnection(lambda method, path, body: FakeResponse(
            200, json.dumps({'access_token': 'tok', 'expires_in': 3600})))

        with patch('crm_ad_sync.http_client.HTTPConnection', connection):
            client = CrmHttpClient(self.config)
            client.authenticate()
            client.authenticate()

        self.assertEqual(len(connection.requests), 1)

    def test_token_failure(self):
        connection = FakeConnection(lambda method, path, body: FakeResponse(400, '{"error":"invalid_client"}'))

        with patch('crm_ad_sync.http_client.HTTPConnection', connection):
            client = CrmHttpClient(self.config)
            self.assertFalse(client.authenticate())

        self.assertNotIn('Authorization', client.auth_headers)

    def test_401_refreshes_token_once(self):
        responses = [
            FakeResponse(200, json.dumps({'access_token': 'old'})),
            FakeResponse(401, ''),
            FakeResponse(200, json.dumps({'access_token': 'new'})),
            FakeResponse(200, json.dumps({'value': []})),
        ]
        connection = FakeConnection(lambda method, path, body: responses.pop(0))

        with patch('crm_ad_sync.http_client.HTTPConnection', connection):
            client = CrmHttpClient(self.config)
            client.authenticate()
            result = client.request('GET', '/api/data/v8.2/systemusers')

        self.assertEqual(result, {'value': []})
        self.assertEqual(connection.requests[1]['headers']['Authorization'], 'Bearer old')
        self.assertEqual(connection.requests[3]['headers']['Authorization'], 'Bearer new')


class TestRequests(unittest.TestCase):
    """Test cases for send/request."""

    def setUp(self):
        self.config = {
            'server_url': 'http://crm.test/Contoso/',
            'auth': {'method': 'bearer', 'token': 'tok'},
            'timeout': 12,
        }

    def _client(self, handler):
        connection = FakeConnection(handler)
        patcher = patch('crm_ad_sync.http_client.HTTPConnection', connection)
        patcher.start()
        self.addCleanup(patcher.stop)
        return CrmHttpClient(self.config), connection

    def test_request_uses_odata_headers_and_base_path(self):
        client, connection = self._client(lambda method, path, body: FakeResponse(200, '{"UserId": "abc"}'))

        result = client.request('GET', '/api/data/v8.2/WhoAmI')

        self.assertEqual(result, {'UserId': 'abc'})
        request = connection.requests[0]
        self.assertEqual(request['path'], '/Contoso/api/data/v8.2/WhoAmI')
        for key, value in ODATA_HEADERS.items():
            self.assertEqual(request['headers'][key], value)
        self.assertEqual(request['headers']['Authorization'], 'Bearer tok')
        self.assertEqual(connection.opened[0], ('crm.test', {'timeout': 12.0}))

    def test_request_serializes_dict_body(self):
        client, connection = self._client(lambda method, path, body: FakeResponse(204, ''))

        self.assertEqual(client.request('PATCH', '/x', body={'a': 1, 'b': 'c'}), {})
        self.assertEqual(connection.requests[0]['body'], '{"a":1,"b":"c"}')

    def test_http_error_carries_status(self):
        client, _ = self._client(lambda method, path, body: FakeResponse(503, '', 'Service Unavailable'))

        with self.assertRaises(CrmAPIError) as ctx:
            client.request('GET', '/x')
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertIn('503', str(ctx.exception))

    def test_401_raises_authentication_error(self):
        client, _ = self._client(lambda method, path, body: FakeResponse(401, ''))

        with self.assertRaises(CrmAuthenticationError):
            client.request('GET', '/x')

    def test_send_returns_raw_response(self):
        client, _ = self._client(lambda method, path, body: FakeResponse(412, 'nope'))

        self.assertEqual(client.send('PATCH', '/x', '{}'), (412, 'Precondition Failed', 'nope'))

    def test_connection_is_reused(self):
        client, connection = self._client(lambda method, path, body: FakeResponse(200, '{}'))

        client.request('GET', '/a')
        client.request('GET', '/b')

        self.assertEqual(len(connection.opened), 1)
        self.assertEqual(len(connection.requests), 2)

    def test_connection_error_drops_connection(self):
        client, connection = self._client(lambda method, path, body: ConnectionResetError("reset"))

        with self.assertRaises(CrmAPIError):
            client.send('GET', '/a')

        self.assertIsNone(client.connection)
        self.assertEqual(connection.closed, 1)

    def test_context_manager_closes_connection(self):
        handler = lambda method, path, body: FakeResponse(200, '{}')
        connection = FakeConnection(handler)
        with patch('crm_ad_sync.http_client.HTTPConnection', connection):
            with CrmHttpClient(self.config) as client:
                client.request('GET', '/a')

        self.assertEqual(connection.closed, 1)
        self.assertIsNone(client.connection)


if __name__ == '__main__':
    unittest.main()
