"""
LDAP / Active Directory backend.

Groups, users and computer objects are read with ldap3. Principal ids are
distinguished names; a computer's owner is taken from its managedBy attribute
and its version from operatingSystemVersion.
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls, MODIFY_ADD, MODIFY_DELETE
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

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

logger = logging.getLogger(__name__)

PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'

# entryAlreadyExists, attributeOrValueExists
ALREADY_EXISTS_RESULT_CODES = (68, 20)

COMPUTER_ATTRIBUTES = ['cn', 'operatingSystem', 'operatingSystemVersion', 'managedBy']
USER_ATTRIBUTES = ['cn', 'displayName', 'userPrincipalName', 'mail']

PLATFORM_PREFIXES = {
    OperatingSystem.IOS: 'iOS',
    OperatingSystem.IPADOS: 'iPadOS',
    OperatingSystem.WINDOWS: 'Windows',
}


def principal_kind(object_classes: List[str]) -> Optional[PrincipalKind]:
    """Classify an entry by objectClass. AD computers also carry 'user', so check them first."""
    classes = {value.lower() for value in object_classes}
    if 'computer' in classes:
        return PrincipalKind.DEVICE
    if 'group' in classes or 'groupofnames' in classes:
        return PrincipalKind.GROUP
    if classes & {'user', 'person', 'inetorgperson'}:
        return PrincipalKind.USER
    return None


def _value(entry, attribute: str, default: str = '') -> str:
    if attribute in entry and entry[attribute].value:
        return str(entry[attribute].value)
    return default


class LDAPDirectory(DirectoryBase):
    """
    Active Directory backend over ldap3.

    Supports LDAPS and StartTLS, paged searches and member add/remove on the
    group's member attribute.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP backend with configuration.

        Args:
            config: Directory configuration dictionary
        """
        super().__init__(config)
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config['base_dn']

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> None:
        """
        Establish connection to LDAP server with retry logic.

        Raises:
            DirectoryAuthenticationError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise DirectoryAuthenticationError(f"Failed to create LDAP server: {e}")

        attempts = max(1, self.max_retries)
        last_exception = None
        for attempt in range(attempts):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPException(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{attempts} failed: {e}")
                self._unbind_quietly()
                if attempt < attempts - 1:
                    time.sleep(self.retry_wait)

        raise DirectoryAuthenticationError(
            f"Failed to connect to LDAP after {attempts} attempts: {last_exception}")

    def _create_tls_config(self) -> Optional[Tls]:
        """Create TLS configuration for LDAPS or StartTLS."""
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")
        return Tls(**tls_config)

    def _unbind_quietly(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while unbinding: {e}")
            self.connection = None

    def disconnect(self) -> None:
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    # Searches

    def _search(self, search_base: str, search_filter: str, attributes: List[str],
                scope=SUBTREE) -> list:
        """Run a search, following paged-results cookies, and return all entries."""
        if not self._connected:
            raise DirectoryQueryError("Not connected to LDAP server")

        entries = []
        cookie = None
        try:
            while True:
                kwargs = {
                    'search_base': search_base,
                    'search_filter': search_filter,
                    'search_scope': scope,
                    'attributes': attributes,
                }
                if scope == SUBTREE:
                    kwargs['paged_size'] = self.page_size
                    if cookie:
                        kwargs['paged_cookie'] = cookie

                if not self.connection.search(**kwargs):
                    # noSuchObject on a BASE search is a miss, not a failure
                    if self.connection.result.get('result') == 32:
                        return entries
                    if self.connection.result.get('result') not in (0, None):
                        raise DirectoryQueryError(f"Search failed: {self.connection.result}")

                entries.extend(self.connection.entries)

                controls = self.connection.result.get('controls') or {}
                cookie = controls.get(PAGED_RESULTS_CONTROL, {}).get('value', {}).get('cookie')
                if not cookie:
                    return entries
        except LDAPException as e:
            raise DirectoryQueryError(f"LDAP search failed: {e}")

    def get_group_by_name(self, name: str) -> Optional[str]:
        entries = self._search(
            self.base_dn,
            f"(&(objectClass=group)(cn={escape_filter_chars(name)}))",
            ['cn']
        )
        if not entries:
            return None
        if len(entries) > 1:
            logger.warning(f"{len(entries)} groups are named '{name}', using {entries[0].entry_dn}")
        return str(entries[0].entry_dn)

    def get_group_members(self, group_id: str) -> List[DirectoryPrincipal]:
        entries = self._search(group_id, '(objectClass=*)', ['member'], scope=BASE)
        if not entries:
            raise DirectoryQueryError(f"Group not found: {group_id}")

        group_entry = entries[0]
        member_dns = group_entry['member'].values if 'member' in group_entry else []

        principals = []
        for member_dn in member_dns:
            member_entries = self._search(member_dn, '(objectClass=*)',
                                          ['objectClass', 'cn', 'displayName'], scope=BASE)
            if not member_entries:
                logger.warning(f"Member {member_dn} of {group_id} could not be read")
                continue

            entry = member_entries[0]
            kind = principal_kind(entry['objectClass'].values if 'objectClass' in entry else [])
            if kind is None:
                logger.debug(f"Ignoring member {member_dn} with unsupported objectClass")
                continue

            principals.append(DirectoryPrincipal(
                id=str(entry.entry_dn),
                display_name=_value(entry, 'displayName') or _value(entry, 'cn', 'Unknown'),
                kind=kind
            ))

        return principals

    def _to_managed_device(self, entry) -> ManagedDevice:
        dn = str(entry.entry_dn)
        return ManagedDevice(
            id=dn,
            device_name=_value(entry, 'cn'),
            operating_system=OperatingSystem.parse(_value(entry, 'operatingSystem')),
            os_version=_value(entry, 'operatingSystemVersion'),
            owner_user_id=_value(entry, 'managedBy') or None,
            directory_device_id=dn
        )

    def list_managed_devices(self, operating_system: Optional[OperatingSystem] = None,
                             os_version: Optional[str] = None,
                             version_operator: Optional[str] = None) -> List[ManagedDevice]:
        clauses = ['(objectClass=computer)']
        if operating_system is not None and operating_system in PLATFORM_PREFIXES:
            clauses.append(f"(operatingSystem={escape_filter_chars(PLATFORM_PREFIXES[operating_system])}*)")
        if os_version and version_operator == 'eq':
            clauses.append(f"(operatingSystemVersion={escape_filter_chars(os_version)})")
        elif os_version and version_operator == 'ne':
            clauses.append(f"(!(operatingSystemVersion={escape_filter_chars(os_version)}))")

        search_filter = f"(&{''.join(clauses)})"
        entries = self._search(self.base_dn, search_filter, COMPUTER_ATTRIBUTES)
        logger.info(f"Retrieved {len(entries)} computer objects matching {search_filter}")
        return [self._to_managed_device(entry) for entry in entries]

    def get_users_by_ids(self, ids: List[str]) -> List[UserRecord]:
        if not ids:
            return []
        clauses = ''.join(f"(distinguishedName={escape_filter_chars(dn)})" for dn in ids)
        entries = self._search(self.base_dn, f"(&(objectClass=person)(|{clauses}))", USER_ATTRIBUTES)
        return [
            UserRecord(
                id=str(entry.entry_dn),
                display_name=_value(entry, 'displayName') or _value(entry, 'cn', 'Unknown'),
                user_principal_name=_value(entry, 'userPrincipalName'),
                mail=_value(entry, 'mail')
            )
            for entry in entries
        ]

    def get_device_principals_by_ids(self, ids: List[str]) -> Dict[str, DirectoryPrincipal]:
        if not ids:
            return {}
        clauses = ''.join(f"(distinguishedName={escape_filter_chars(dn)})" for dn in ids)
        entries = self._search(self.base_dn, f"(&(objectClass=computer)(|{clauses}))", ['cn'])
        return {
            str(entry.entry_dn): DirectoryPrincipal(
                id=str(entry.entry_dn),
                display_name=_value(entry, 'cn', 'Unknown'),
                kind=PrincipalKind.DEVICE
            )
            for entry in entries
        }

    def get_device_by_name(self, name: str) -> Optional[ManagedDevice]:
        entries = self._search(
            self.base_dn,
            f"(&(objectClass=computer)(cn={escape_filter_chars(name)}))",
            COMPUTER_ATTRIBUTES
        )
        if not entries:
            return None
        if len(entries) > 1:
            logger.warning(f"{len(entries)} computers are named '{name}', using {entries[0].entry_dn}")
        return self._to_managed_device(entries[0])

    # Writes

    def _modify_member(self, group_id: str, principal_id: str, operation) -> None:
        if not self._connected:
            raise DirectoryError("Not connected to LDAP server")
        try:
            success = self.connection.modify(group_id, {'member': [(operation, [principal_id])]})
        except LDAPException as e:
            raise DirectoryError(f"LDAP modify failed: {e}")

        if success:
            return

        result = self.connection.result or {}
        code = result.get('result')
        message = result.get('message') or result.get('description') or 'unknown error'
        if operation == MODIFY_ADD and code in ALREADY_EXISTS_RESULT_CODES:
            raise MemberAlreadyExistsError(f"{principal_id} is already a member of {group_id}")
        raise DirectoryError(f"LDAP modify of {group_id} failed ({code}): {message}")

    def add_group_member(self, group_id: str, principal_id: str) -> None:
        self._modify_member(group_id, principal_id, MODIFY_ADD)

    def remove_group_member(self, group_id: str, principal_id: str) -> None:
        self._modify_member(group_id, principal_id, MODIFY_DELETE)
