"""
Microsoft Graph directory backend.

Talks to Entra ID and Intune through the Graph REST API using http.client,
authenticating with the OAuth2 client credentials flow.
"""

import json
import ssl
import time
import logging
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from device_group_sync.directories.base import (
    DirectoryBase,
    DirectoryError,
    DirectoryAuthenticationError,
    DirectoryQueryError,
    MemberAlreadyExistsError,
)
from device_group_sync.models import (
    DirectoryPrincipal,
    ManagedDevice,
    OperatingSystem,
    PrincipalKind,
    UserRecord,
)
from device_group_sync.retry import (
    MaxRetriesExceeded,
    retry_call,
    is_retryable_error,
    create_retry_callback,
)

logger = logging.getLogger(__name__)

ODATA_KINDS = {
    '#microsoft.graph.user': PrincipalKind.USER,
    '#microsoft.graph.device': PrincipalKind.DEVICE,
    '#microsoft.graph.group': PrincipalKind.GROUP,
}

MANAGED_DEVICE_FIELDS = 'id,deviceName,operatingSystem,osVersion,userId,azureADDeviceId'

# Graph platform names used in server-side managedDevices filters
GRAPH_PLATFORM_NAMES = {
    OperatingSystem.IOS: 'iOS',
    OperatingSystem.IPADOS: 'iPadOS',
    OperatingSystem.WINDOWS: 'Windows',
}


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData $filter expression."""
    return "'" + str(value).replace("'", "''") + "'"


def parse_member(member: Dict[str, Any]) -> Optional[DirectoryPrincipal]:
    """Translate a Graph directoryObject into a principal, or None for unsupported types."""
    kind = ODATA_KINDS.get(member.get('@odata.type', ''))
    if kind is None:
        logger.debug(f"Ignoring member {member.get('id')} of unsupported type {member.get('@odata.type')}")
        return None
    return DirectoryPrincipal(
        id=member['id'],
        display_name=member.get('displayName') or 'Unknown',
        kind=kind
    )


def parse_managed_device(record: Dict[str, Any]) -> ManagedDevice:
    """Translate a Graph managedDevice into a ManagedDevice."""
    return ManagedDevice(
        id=record['id'],
        device_name=record.get('deviceName') or '',
        operating_system=OperatingSystem.parse(record.get('operatingSystem')),
        os_version=record.get('osVersion') or '',
        owner_user_id=record.get('userId') or None,
        directory_device_id=record.get('azureADDeviceId') or None
    )


class GraphDirectory(DirectoryBase):
    """
    Microsoft Graph directory backend.

    Requests are retried on throttling (429), server errors and network
    failures; a 401 triggers a single token refresh.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Graph client.

        Args:
            config: Directory configuration dictionary
        """
        super().__init__(config)
        self.tenant_id = config['tenant_id']
        self.client_id = config['client_id']
        self.client_secret = config['client_secret']
        self.base_url = config.get('base_url', 'https://graph.microsoft.com/v1.0').rstrip('/')
        self.token_url = config.get(
            'token_url', f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token")
        self.scope = config.get('scope', 'https://graph.microsoft.com/.default')
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.page_size = config.get('page_size', 999)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}
        self._token_expires_at = 0.0

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates (PEM or PKCS12), e.g. for a TLS-inspecting proxy."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
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
                raise DirectoryError(f"Unsupported truststore type: {truststore_type}")

        except DirectoryError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise DirectoryError(f"Truststore loading failed: {e}")

    # Session handling

    def connect(self) -> None:
        """
        Obtain an access token using the client credentials flow.

        Raises:
            DirectoryAuthenticationError: If no token could be obtained
        """
        try:
            retry_call(
                self._fetch_token,
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                backoff=2.0,
                should_retry=is_retryable_error,
                on_retry=create_retry_callback("Graph token request")
            )
        except MaxRetriesExceeded as e:
            raise DirectoryAuthenticationError(f"Failed to authenticate to {self.name}: {e.last_exception}")
        except DirectoryAuthenticationError:
            raise
        except Exception as e:
            raise DirectoryAuthenticationError(f"Failed to authenticate to {self.name}: {e}")

    def _fetch_token(self) -> None:
        parsed_token_url = urlparse(self.token_url)
        if parsed_token_url.scheme == 'https':
            token_conn = HTTPSConnection(parsed_token_url.netloc, context=self.ssl_context, timeout=self.timeout)
        else:
            token_conn = HTTPConnection(parsed_token_url.netloc, timeout=self.timeout)

        token_body = urlencode({
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'scope': self.scope
        })
        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', token_body, token_headers)
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')
        finally:
            token_conn.close()

        if response.status != 200:
            raise DirectoryAuthenticationError(
                f"Token request failed: {response.status} {response.reason} {_error_message(response_data)}",
                status_code=response.status
            )

        try:
            token_response = json.loads(response_data)
        except json.JSONDecodeError as e:
            raise DirectoryAuthenticationError(f"Invalid JSON in token response: {e}")

        access_token = token_response.get('access_token')
        if not access_token:
            raise DirectoryAuthenticationError("Token response missing access_token")

        self.auth_headers['Authorization'] = f"Bearer {access_token}"
        expires_in = int(token_response.get('expires_in', 3600))
        self._token_expires_at = time.time() + expires_in - 60
        logger.info(f"Successfully obtained OAuth2 token for {self.name}")

    def _is_token_valid(self) -> bool:
        return bool(self.auth_headers) and time.time() < self._token_expires_at

    def disconnect(self) -> None:
        """Close HTTP connection and forget the token."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None
        self.auth_headers = {}
        self._token_expires_at = 0.0

    # HTTP plumbing

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def _build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Build a request path; absolute URLs (nextLink) are used as-is."""
        if path.startswith('http://') or path.startswith('https://'):
            parsed = urlparse(path)
            return parsed.path + (f"?{parsed.query}" if parsed.query else '')

        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params, quote_via=quote, safe="$,'()")
        return full_path

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                body: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make a Graph request with retries on transient failures.

        Args:
            method: HTTP method
            path: Path relative to base_url, or an absolute nextLink URL
            params: Query parameters
            body: JSON request body

        Returns:
            Parsed JSON response (empty dict for 204)

        Raises:
            DirectoryError: If the request fails
        """
        full_path = self._build_path(path, params)
        try:
            return retry_call(
                self._send,
                args=(method, full_path, body),
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                backoff=2.0,
                should_retry=is_retryable_error,
                on_retry=create_retry_callback(f"Graph {method} {full_path}")
            )
        except MaxRetriesExceeded as e:
            last = e.last_exception
            raise DirectoryQueryError(f"{method} {full_path} failed after {e.attempts} attempts: {last}",
                                      status_code=getattr(last, 'status_code', None))
        except (OSError, HTTPException) as e:
            raise DirectoryQueryError(f"{method} {full_path} failed: {type(e).__name__}: {e}")

    def _send(self, method: str, full_path: str, body: Optional[Dict] = None) -> Dict[str, Any]:
        """Perform a single request, refreshing the token once on 401."""
        if not self._is_token_valid():
            self._fetch_token()

        request_body = json.dumps(body) if body is not None else None

        for auth_attempt in range(2):
            request_headers = dict(self.auth_headers)
            request_headers['Accept'] = 'application/json'
            if request_body is not None:
                request_headers['Content-Type'] = 'application/json'

            try:
                conn = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, request_body, request_headers)
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (OSError, HTTPException):
                # Drop the broken connection so the retry opens a fresh one
                self.connection = None
                raise

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt == 0:
                logger.info(f"401 received, refreshing OAuth2 token for {self.name}")
                self._fetch_token()
                continue

            if response.status >= 400:
                message = _error_message(response_data) or response.reason
                if response.status == 401:
                    raise DirectoryAuthenticationError(f"Authentication failed for {self.name}: {message}",
                                                       status_code=401)
                if response.status == 400 and 'already exist' in message.lower():
                    raise MemberAlreadyExistsError(message, status_code=400)
                raise DirectoryError(f"HTTP {response.status}: {message}", status_code=response.status)

            if not response_data:
                return {}
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise DirectoryQueryError(f"Invalid JSON response from {self.name}: {e}")

        raise DirectoryAuthenticationError(f"Authentication failed for {self.name}", status_code=401)

    def _get_paged(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Collect every item across @odata.nextLink pages."""
        items = []
        response = self.request('GET', path, params=params)
        items.extend(response.get('value', []))
        page_count = 1

        next_link = response.get('@odata.nextLink')
        while next_link:
            response = self.request('GET', next_link)
            items.extend(response.get('value', []))
            page_count += 1
            next_link = response.get('@odata.nextLink')

        logger.debug(f"Retrieved {len(items)} items from {path} across {page_count} pages")
        return items

    # Directory reads

    def get_group_by_name(self, name: str) -> Optional[str]:
        groups = self._get_paged('groups', {
            '$filter': f"displayName eq {odata_quote(name)}",
            '$select': 'id,displayName'
        })
        if not groups:
            return None
        if len(groups) > 1:
            logger.warning(f"{len(groups)} groups are named '{name}', using {groups[0]['id']}")
        return groups[0]['id']

    def get_group_members(self, group_id: str) -> List[DirectoryPrincipal]:
        members = self._get_paged(f'groups/{group_id}/members', {
            '$select': 'id,displayName',
            '$top': self.page_size
        })
        principals = []
        for member in members:
            principal = parse_member(member)
            if principal is not None:
                principals.append(principal)
        return principals

    def list_managed_devices(self, operating_system: Optional[OperatingSystem] = None,
                             os_version: Optional[str] = None,
                             version_operator: Optional[str] = None) -> List[ManagedDevice]:
        params = {'$select': MANAGED_DEVICE_FIELDS}

        clauses = []
        if operating_system is not None and operating_system in GRAPH_PLATFORM_NAMES:
            clauses.append(f"operatingSystem eq {odata_quote(GRAPH_PLATFORM_NAMES[operating_system])}")
        if os_version and version_operator in ('eq', 'ne'):
            clauses.append(f"osVersion {version_operator} {odata_quote(os_version)}")
        if clauses:
            params['$filter'] = ' and '.join(clauses)

        records = self._get_paged('deviceManagement/managedDevices', params)
        logger.info(f"Retrieved {len(records)} managed devices"
                    + (f" matching {params['$filter']}" if clauses else ''))
        return [parse_managed_device(record) for record in records]

    def get_users_by_ids(self, ids: List[str]) -> List[UserRecord]:
        if not ids:
            return []
        users = self._get_paged('users', {
            '$filter': ' or '.join(f"id eq {odata_quote(user_id)}" for user_id in ids),
            '$select': 'id,displayName,userPrincipalName,mail'
        })
        return [
            UserRecord(
                id=user['id'],
                display_name=user.get('displayName') or 'Unknown',
                user_principal_name=user.get('userPrincipalName') or '',
                mail=user.get('mail') or ''
            )
            for user in users
        ]

    def get_device_principals_by_ids(self, ids: List[str]) -> Dict[str, DirectoryPrincipal]:
        if not ids:
            return {}
        devices = self._get_paged('devices', {
            '$filter': ' or '.join(f"deviceId eq {odata_quote(device_id)}" for device_id in ids),
            '$select': 'id,displayName,deviceId'
        })
        return {
            device['deviceId']: DirectoryPrincipal(
                id=device['id'],
                display_name=device.get('displayName') or 'Unknown',
                kind=PrincipalKind.DEVICE
            )
            for device in devices
            if device.get('deviceId')
        }

    def get_device_by_name(self, name: str) -> Optional[ManagedDevice]:
        records = self._get_paged('deviceManagement/managedDevices', {
            '$filter': f"deviceName eq {odata_quote(name)}",
            '$select': MANAGED_DEVICE_FIELDS
        })
        if not records:
            return None
        if len(records) > 1:
            logger.warning(f"{len(records)} managed devices are named '{name}', using {records[0]['id']}")
        return parse_managed_device(records[0])

    # Directory writes

    def add_group_member(self, group_id: str, principal_id: str) -> None:
        self.request('POST', f'groups/{group_id}/members/$ref', body={
            '@odata.id': f"{self.base_url}/directoryObjects/{principal_id}"
        })

    def remove_group_member(self, group_id: str, principal_id: str) -> None:
        self.request('DELETE', f'groups/{group_id}/members/{principal_id}/$ref')


def _error_message(response_data: str) -> str:
    """Extract the error message from a Graph or token endpoint error body."""
    if not response_data:
        return ''
    try:
        payload = json.loads(response_data)
    except json.JSONDecodeError:
        return response_data[:200]
    error = payload.get('error')
    if isinstance(error, dict):
        return error.get('message') or error.get('code') or ''
    return payload.get('error_description') or str(error or '')
