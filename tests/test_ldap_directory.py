#!/usr/bin/env python3
"""
Test suite for the LDAP / Active Directory backend.

ldap3's Server and Connection are mocked; a small in-memory tree answers
searches by base DN and filter.
"""

import os
import sys
import ssl
from unittest.mock import Mock, patch

import pytest
from ldap3 import MODIFY_ADD, MODIFY_DELETE

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from device_group_sync.directories.base import (
    DirectoryAuthenticationError,
    DirectoryError,
    DirectoryQueryError,
    MemberAlreadyExistsError,
)
from device_group_sync.directories.ldap_directory import LDAPDirectory, principal_kind, PAGED_RESULTS_CONTROL
from device_group_sync.models import OperatingSystem, PrincipalKind

BASE_DN = 'DC=example,DC=com'
SALES_DN = 'CN=Sales,OU=Groups,DC=example,DC=com'
ALICE_DN = 'CN=Alice,OU=Users,DC=example,DC=com'
NESTED_DN = 'CN=Team,OU=Groups,DC=example,DC=com'
LAPTOP_DN = 'CN=LAPTOP-01,OU=Computers,DC=example,DC=com'


class Attribute:
    def __init__(self, values):
        self.values = values if isinstance(values, list) else [values]
        self.value = self.values[0] if len(self.values) == 1 else self.values


class Entry:
    """Minimal stand-in for an ldap3 Entry."""

    def __init__(self, dn, **attributes):
        self.entry_dn = dn
        self._attributes = {name: Attribute(value) for name, value in attributes.items()}

    def __contains__(self, name):
        return name in self._attributes

    def __getitem__(self, name):
        return self._attributes[name]


def ldap_config(**overrides):
    config = {
        'server_url': 'ldaps://dc.example.com:636',
        'bind_dn': 'CN=svc-sync,OU=Service,DC=example,DC=com',
        'bind_password': 'password123',
        'base_dn': BASE_DN,
        'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0}
    }
    config.update(overrides)
    return config


@pytest.fixture
def connection():
    conn = Mock()
    conn.open.return_value = True
    conn.bind.return_value = True
    conn.entries = []
    conn.result = {'result': 0}
    with patch('device_group_sync.directories.ldap_directory.Server'), \
            patch('device_group_sync.directories.ldap_directory.Connection', return_value=conn):
        yield conn


@pytest.fixture
def directory(connection):
    ldap_directory = LDAPDirectory(ldap_config())
    ldap_directory.connect()
    return ldap_directory


def answer_searches(conn, tree):
    """Route searches to entries by (search_base, search_filter)."""
    def search(search_base, search_filter, search_scope, attributes, **kwargs):
        key = (search_base, search_filter)
        if key not in tree:
            conn.entries = []
            conn.result = {'result': 32, 'description': 'noSuchObject'}
            return False
        conn.entries = tree[key]
        conn.result = {'result': 0}
        return True
    conn.search.side_effect = search


def test_principal_kind_prefers_computer():
    assert principal_kind(['top', 'person', 'user', 'computer']) is PrincipalKind.DEVICE
    assert principal_kind(['top', 'group']) is PrincipalKind.GROUP
    assert principal_kind(['top', 'person', 'organizationalPerson', 'user']) is PrincipalKind.USER
    assert principal_kind(['top', 'contact']) is None


def test_initialization_detects_ldaps():
    ldap_directory = LDAPDirectory(ldap_config())

    assert ldap_directory.use_ssl is True
    assert ldap_directory.max_retries == 2

    tls = ldap_directory._create_tls_config()
    assert tls.validate == ssl.CERT_REQUIRED


def test_plain_ldap_without_tls():
    ldap_directory = LDAPDirectory(ldap_config(server_url='ldap://dc.example.com'))

    assert ldap_directory.use_ssl is False
    assert ldap_directory._create_tls_config() is None


def test_connect_binds(directory, connection):
    connection.bind.assert_called_once()
    assert directory._connected is True


def test_connect_failure_after_retries(connection):
    connection.bind.return_value = False
    connection.result = {'result': 49, 'description': 'invalidCredentials'}
    ldap_directory = LDAPDirectory(ldap_config())

    with pytest.raises(DirectoryAuthenticationError, match='after 2 attempts'):
        ldap_directory.connect()
    assert connection.bind.call_count == 2


def test_get_group_by_name(directory, connection):
    answer_searches(connection, {
        (BASE_DN, '(&(objectClass=group)(cn=Sales))'): [Entry(SALES_DN, cn='Sales')]
    })

    assert directory.get_group_by_name('Sales') == SALES_DN
    assert directory.get_group_by_name('Marketing') is None


def test_group_name_is_escaped(directory, connection):
    answer_searches(connection, {})

    directory.get_group_by_name('R&D (EU)*')

    search_filter = connection.search.call_args[1]['search_filter']
    assert search_filter == '(&(objectClass=group)(cn=R&D \\28EU\\29\\2a))'


def test_get_group_members_classifies_entries(directory, connection):
    answer_searches(connection, {
        (SALES_DN, '(objectClass=*)'): [Entry(SALES_DN, member=[ALICE_DN, NESTED_DN, LAPTOP_DN])],
        (ALICE_DN, '(objectClass=*)'): [Entry(ALICE_DN, objectClass=['top', 'person', 'user'],
                                              cn='Alice', displayName='Alice Smith')],
        (NESTED_DN, '(objectClass=*)'): [Entry(NESTED_DN, objectClass=['top', 'group'], cn='Team')],
        (LAPTOP_DN, '(objectClass=*)'): [Entry(LAPTOP_DN, objectClass=['top', 'user', 'computer'],
                                               cn='LAPTOP-01')],
    })

    members = directory.get_group_members(SALES_DN)

    assert [(m.id, m.display_name, m.kind) for m in members] == [
        (ALICE_DN, 'Alice Smith', PrincipalKind.USER),
        (NESTED_DN, 'Team', PrincipalKind.GROUP),
        (LAPTOP_DN, 'LAPTOP-01', PrincipalKind.DEVICE),
    ]


def test_get_group_members_missing_group(directory, connection):
    answer_searches(connection, {})

    with pytest.raises(DirectoryQueryError):
        directory.get_group_members(SALES_DN)


def test_list_managed_devices_filter(directory, connection):
    search_filter = '(&(objectClass=computer)(operatingSystem=Windows*)(operatingSystemVersion=10.0 \\2822621\\29))'
    answer_searches(connection, {
        (BASE_DN, search_filter): [Entry(LAPTOP_DN, cn='LAPTOP-01', operatingSystem='Windows 11 Enterprise',
                                         operatingSystemVersion='10.0 (22621)', managedBy=ALICE_DN)]
    })

    devices = directory.list_managed_devices(OperatingSystem.WINDOWS, '10.0 (22621)', 'eq')

    assert len(devices) == 1
    device = devices[0]
    assert device.operating_system is OperatingSystem.WINDOWS
    assert device.owner_user_id == ALICE_DN
    assert device.directory_device_id == LAPTOP_DN


def test_search_follows_paged_cookie(directory, connection):
    pages = [
        ([Entry(LAPTOP_DN, cn='LAPTOP-01')], b'cookie-1'),
        ([Entry('CN=LAPTOP-02,' + BASE_DN, cn='LAPTOP-02')], None),
    ]

    def search(**kwargs):
        entries, cookie = pages.pop(0)
        connection.entries = entries
        connection.result = {'result': 0, 'controls': {PAGED_RESULTS_CONTROL: {'value': {'cookie': cookie}}}}
        return True
    connection.search.side_effect = search

    devices = directory.list_managed_devices()

    assert [d.device_name for d in devices] == ['LAPTOP-01', 'LAPTOP-02']
    assert connection.search.call_args_list[1][1]['paged_cookie'] == b'cookie-1'


def test_search_failure(directory, connection):
    connection.search.return_value = False
    connection.result = {'result': 1, 'description': 'operationsError'}

    with pytest.raises(DirectoryQueryError):
        directory.get_device_by_name('LAPTOP-01')


def test_get_users_by_ids(directory, connection):
    answer_searches(connection, {
        (BASE_DN, f'(&(objectClass=person)(|(distinguishedName={ALICE_DN})))'): [
            Entry(ALICE_DN, cn='Alice', userPrincipalName='alice@example.com', mail='alice@example.com')
        ]
    })

    users = directory.get_users_by_ids([ALICE_DN])

    assert users[0].id == ALICE_DN
    assert users[0].display_name == 'Alice'
    assert users[0].user_principal_name == 'alice@example.com'


def test_add_group_member(directory, connection):
    connection.modify.return_value = True

    directory.add_group_member(SALES_DN, ALICE_DN)

    connection.modify.assert_called_once_with(SALES_DN, {'member': [(MODIFY_ADD, [ALICE_DN])]})


def test_add_existing_member(directory, connection):
    connection.modify.return_value = False
    connection.result = {'result': 68, 'description': 'entryAlreadyExists'}

    with pytest.raises(MemberAlreadyExistsError):
        directory.add_group_member(SALES_DN, ALICE_DN)


def test_remove_group_member_failure(directory, connection):
    connection.modify.return_value = False
    connection.result = {'result': 50, 'description': 'insufficientAccessRights'}

    with pytest.raises(DirectoryError, match='insufficientAccessRights'):
        directory.remove_group_member(SALES_DN, ALICE_DN)
    connection.modify.assert_called_once_with(SALES_DN, {'member': [(MODIFY_DELETE, [ALICE_DN])]})


def test_disconnect_unbinds(directory, connection):
    directory.disconnect()
    directory.disconnect()

    connection.unbind.assert_called_once()
