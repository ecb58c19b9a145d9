"""
HTTP client for the on-premise CRM server.

This module provides the connection, SSL and authentication handling shared by
the Web API (OData) calls and the legacy SOAP user manager service. All requests
go to the single configured CRM server and carry explicitly configured
credentials.
"""

import json
import ssl
import time
import base64
import logging
import tempfile
from typing import Dict, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

logger = logging.getLogger(__name__)


ODATA_HEADERS = {
    'Accept': 'application/json',
    'Content-Type': 'application/json; charset=utf-8',
    'OData-MaxVersion': '4.0',
    'OData-Version': '4.0',
}


class CrmAPIError(Exception):
    """Raised when a request to the CRM server fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CrmAuthenticationError(CrmAPIError):
    """Raised when authentication to the CRM server fails."""
    pass


class CrmHttpClient:
    """
    Client for the CRM server's HTTP endpoints.

    Holds one persistent connection to the configured server. The server URL may
    include the organization path (``https://crm.example.com/Contoso``); request
    paths are appended to it.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize CRM client.

        Args:
            config: ``crm`` configuration section
        """
        self.config = config
        self.server_url = config['server_url'].rstrip('/')
        self.api_version = config.get('api_version', 'v8.2')
        self.directory_endpoint = config.get('directory_endpoint', '/AppWebServices/UserManager.asmx')
        self.auth_config = config.get('auth') or {}
        self.auth_method = str(self.auth_config.get('method', '')).lower()
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = float(config.get('timeout', 30))

        self.parsed_url = urlparse(self.server_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None

        self.auth_headers = {}
        self._token_expires_at = None

        self._setup_ssl_context()
        self._setup_authentication()

    @property
    def api_path(self) -> str:
        """Path prefix of the Web API, e.g. ``/api/data/v8.2``."""
        return f"/api/data/{self.api_version}"

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl.create_default_context()
            self.ssl_context.check_hostname = False
            self.ssl_context.verify_mode = ssl.CERT_NONE
            logger.warning(f"SSL verification disabled for {self.host}")
        else:
            self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file and self.verify_ssl:
            self._load_truststore(truststore_file)

        keystore_file = self.config.get('keystore_file')
        if keystore_file:
            self._load_client_cert(keystore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates (PEM or PKCS12)."""
        truststore_type = str(self.config.get('truststore_type', 'PEM')).upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
                    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise CrmAPIError(f"Unsupported truststore type: {truststore_type}")

        except CrmAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise CrmAPIError(f"Truststore loading failed: {e}")

    def _load_client_cert(self, keystore_file: str):
        """Load client certificate for mutual TLS (PEM or PKCS12)."""
        keystore_type = str(self.config.get('keystore_type', 'PEM')).upper()
        keystore_password = self.config.get('keystore_password')

        try:
            if keystore_type == 'PEM':
                self.ssl_context.load_cert_chain(keystore_file, password=keystore_password)
                logger.info(f"Loaded PEM client certificate: {keystore_file}")

            elif keystore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(keystore_file, 'rb') as f:
                    p12_data = f.read()

                private_key, certificate, _ = pkcs12.load_key_and_certificates(
                    p12_data, keystore_password.encode() if keystore_password else None
                )
                if not (private_key and certificate):
                    raise CrmAPIError(f"No key and certificate found in {keystore_file}")

                # ssl only loads cert chains from files
                with tempfile.NamedTemporaryFile(mode='wb', suffix='.pem') as pem_file:
                    pem_file.write(certificate.public_bytes(serialization.Encoding.PEM))
                    pem_file.write(private_key.private_bytes(
                        encoding=serialization.Encoding.PEM,
                        format=serialization.PrivateFormat.PKCS8,
                        encryption_algorithm=serialization.NoEncryption()
                    ))
                    pem_file.flush()
                    self.ssl_context.load_cert_chain(pem_file.name)
                logger.info(f"Loaded PKCS12 client certificate: {keystore_file}")

            else:
                raise CrmAPIError(f"Unsupported keystore type: {keystore_type}")

        except CrmAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load client certificate {keystore_file}: {e}")
            raise CrmAPIError(f"Client certificate loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_method

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.host}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.host}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.host}")
            else:
                logger.error(f"Token auth configured but missing token for {self.host}")

        elif auth_method == 'oauth2':
            # Token is obtained in authenticate()
            logger.debug(f"OAuth2 authentication configured for {self.host}")

        elif auth_method in ('mtls', 'mutual_tls'):
            logger.debug(f"Mutual TLS authentication configured for {self.host}")

        elif auth_method in ('', 'none'):
            logger.debug(f"No authentication configured for {self.host}")

        else:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.host}")

    def _oauth2_get_token(self) -> bool:
        """
        Retrieve OAuth2 access token using client credentials flow.

        Returns:
            True if token was successfully obtained
        """
        client_id = self.auth_config.get('client_id')
        client_secret = self.auth_config.get('client_secret')
        token_url = self.auth_config.get('token_url')
        scope = self.auth_config.get('scope', '')

        if not all([client_id, client_secret, token_url]):
            logger.error(f"OAuth2 configuration incomplete for {self.host}")
            return False

        parsed_token_url = urlparse(token_url)
        if parsed_token_url.scheme == 'https':
            token_conn = HTTPSConnection(parsed_token_url.netloc, context=self.ssl_context, timeout=self.timeout)
        else:
            token_conn = HTTPConnection(parsed_token_url.netloc, timeout=self.timeout)

        token_data = {
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret
        }
        if scope:
            token_data['scope'] = scope

        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            logger.debug(f"Requesting OAuth2 token for {self.host}")
            token_conn.request('POST', parsed_token_url.path or '/', urlencode(token_data), token_headers)

            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')

            if response.status != 200:
                logger.error(f"OAuth2 token request failed for {self.host}: {response.status} {response.reason}")
                return False

            token_response = json.loads(response_data)
            access_token = token_response.get('access_token')
            if not access_token:
                logger.error(f"OAuth2 response missing access_token for {self.host}")
                return False

            self.auth_headers['Authorization'] = f"Bearer {access_token}"
            expires_in = token_response.get('expires_in')
            if expires_in:
                # Refresh a minute early
                self._token_expires_at = time.time() + int(expires_in) - 60
            logger.info(f"Successfully obtained OAuth2 token for {self.host}")
            return True

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in OAuth2 token response for {self.host}: {e}")
            return False
        except (HTTPException, OSError) as e:
            logger.error(f"OAuth2 token request error for {self.host}: {e}")
            return False
        finally:
            token_conn.close()

    def _is_oauth2_token_valid(self) -> bool:
        """Check if OAuth2 token is still valid."""
        if 'Authorization' not in self.auth_headers:
            return False
        if self._token_expires_at is None:
            return True
        return time.time() < self._token_expires_at

    def authenticate(self) -> bool:
        """
        Perform any authentication that needs a round trip (OAuth2 token retrieval).

        Returns:
            True if the client holds usable credentials
        """
        if self.auth_method == 'oauth2':
            if self._is_oauth2_token_valid():
                logger.debug(f"OAuth2 token still valid for {self.host}")
                return True
            return self._oauth2_get_token()

        if self.auth_method in ('basic', 'token', 'bearer', 'mtls', 'mutual_tls', '', 'none'):
            return True

        logger.warning(f"Unknown authentication method '{self.auth_method}' for {self.host}")
        return False

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def send(self, method: str, path: str, body: Optional[Union[str, bytes]] = None,
             headers: Optional[Dict[str, str]] = None) -> Tuple[int, str, str]:
        """
        Send a request and return the raw response without judging its status.

        Args:
            method: HTTP method
            path: Path relative to the server URL (may include a query string)
            body: Already serialized request body
            headers: Request headers

        Returns:
            Tuple of (status, reason, response body text)

        Raises:
            CrmAPIError: If the server cannot be reached
        """
        full_path = self.base_path + '/' + path.lstrip('/')
        if isinstance(body, str):
            body = body.encode('utf-8')

        max_auth_retries = 1 if self.auth_method == 'oauth2' else 0
        for auth_attempt in range(max_auth_retries + 1):
            request_headers = dict(headers or {})
            request_headers.update(self.auth_headers)

            conn = self._get_connection()
            try:
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, body, request_headers)

                response = conn.getresponse()
                response_data = response.read().decode('utf-8', errors='replace')
            except (HTTPException, OSError) as e:
                # Drop the broken connection so the next request reconnects
                self.close_connection()
                raise CrmAPIError(f"Connection error to {self.host}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt < max_auth_retries:
                logger.info(f"401 received, refreshing OAuth2 token for {self.host}")
                self.auth_headers.pop('Authorization', None)
                if self._oauth2_get_token():
                    continue

            return response.status, response.reason, response_data

        raise CrmAuthenticationError(f"Authentication failed for {self.host}", status_code=401)

    def request(self, method: str, path: str, body: Optional[Union[str, bytes]] = None,
                headers: Optional[Dict[str, str]] = None) -> Any:
        """
        Make a Web API request and return the decoded JSON body.

        Args:
            method: HTTP method (GET, POST, PATCH, ...)
            path: Path relative to the server URL
            body: Request body; dictionaries are serialized as JSON
            headers: Additional headers, merged over the OData defaults

        Returns:
            Parsed JSON response, or an empty dict for an empty body

        Raises:
            CrmAuthenticationError: On HTTP 401
            CrmAPIError: On any other HTTP error or undecodable response
        """
        request_headers = dict(ODATA_HEADERS)
        if headers:
            request_headers.update(headers)
        if isinstance(body, dict):
            body = json.dumps(body, separators=(',', ':'))

        status, reason, data = self.send(method, path, body, request_headers)

        if status == 401:
            raise CrmAuthenticationError(f"Authentication failed for {self.host}", status_code=status)
        if status >= 400:
            raise CrmAPIError(f"HTTP {status}: {reason}", status_code=status)

        try:
            return json.loads(data) if data else {}
        except json.JSONDecodeError as e:
            raise CrmAPIError(f"Invalid JSON response from {self.host}: {e}")

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.host}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
