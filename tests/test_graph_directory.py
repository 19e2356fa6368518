#!/usr/bin/env python3
"""
Test suite for the Microsoft Graph directory backend.

HTTP traffic is mocked at the http.client level; each test queues the
responses the backend should see, in order.
"""

import os
import sys
import json
import ssl
import time
from http.client import IncompleteRead
from unittest.mock import Mock

import pytest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from device_group_sync.directories.base import (
    DirectoryAuthenticationError,
    DirectoryError,
    DirectoryQueryError,
    MemberAlreadyExistsError,
)
from device_group_sync.directories.graph import GraphDirectory, odata_quote, parse_member, parse_managed_device
from device_group_sync.identity import BatchIdentityLookup
from device_group_sync.models import DirectoryPrincipal, OperatingSystem, PrincipalKind, SyncPlan
from device_group_sync.synchronizer import GroupSynchronizer, MemberOutcome


def graph_config(**overrides):
    config = {
        'name': 'Graph',
        'tenant_id': 'tenant-1',
        'client_id': 'client-1',
        'client_secret': 'secret-1',
        'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0}
    }
    config.update(overrides)
    return config


def response(status, body=None, reason='OK'):
    data = json.dumps(body).encode('utf-8') if body is not None else b''
    return Mock(status=status, reason=reason, read=Mock(return_value=data))


def token_response(token='token-1'):
    return response(200, {'access_token': token, 'expires_in': 3600})


@pytest.fixture
def connection(mocker):
    conn = Mock()
    mocker.patch('device_group_sync.directories.graph.HTTPSConnection', return_value=conn)
    return conn


@pytest.fixture
def directory(connection):
    graph = GraphDirectory(graph_config())
    graph.auth_headers = {'Authorization': 'Bearer token-0'}
    graph._token_expires_at = time.time() + 3600
    return graph


def request_paths(conn):
    return [c[0][1] for c in conn.request.call_args_list]


def test_odata_quote_escapes_single_quotes():
    assert odata_quote("O'Brien's iPhone") == "'O''Brien''s iPhone'"


def test_parse_member_kinds():
    assert parse_member({'@odata.type': '#microsoft.graph.user', 'id': 'u1', 'displayName': 'A'}).kind \
        is PrincipalKind.USER
    assert parse_member({'@odata.type': '#microsoft.graph.group', 'id': 'g1'}).kind is PrincipalKind.GROUP
    assert parse_member({'@odata.type': '#microsoft.graph.servicePrincipal', 'id': 's1'}) is None


def test_parse_managed_device():
    device = parse_managed_device({
        'id': 'md-1', 'deviceName': 'iPhone12', 'operatingSystem': 'iOS', 'osVersion': '17.5.1',
        'userId': 'user-1', 'azureADDeviceId': 'aad-1'
    })

    assert device.operating_system is OperatingSystem.IOS
    assert device.owner_user_id == 'user-1'
    assert device.directory_device_id == 'aad-1'


def test_parse_managed_device_without_owner():
    device = parse_managed_device({'id': 'md-2', 'deviceName': 'KIOSK', 'operatingSystem': 'Windows',
                                   'osVersion': '10.0.19045', 'userId': ''})

    assert device.owner_user_id is None


def test_connect_obtains_token(connection):
    connection.getresponse.return_value = token_response('abc')
    graph = GraphDirectory(graph_config())

    graph.connect()

    assert graph.auth_headers['Authorization'] == 'Bearer abc'
    method, path, body, headers = connection.request.call_args[0]
    assert method == 'POST'
    assert path == '/tenant-1/oauth2/v2.0/token'
    assert 'grant_type=client_credentials' in body


def test_connect_rejected_credentials(connection):
    connection.getresponse.return_value = response(
        401, {'error': 'invalid_client', 'error_description': 'Invalid client secret'}, 'Unauthorized')
    graph = GraphDirectory(graph_config())

    with pytest.raises(DirectoryAuthenticationError, match='Invalid client secret'):
        graph.connect()
    assert connection.request.call_count == 1


def test_connect_retries_server_errors(connection):
    connection.getresponse.side_effect = [response(503, reason='Service Unavailable'), token_response()]
    graph = GraphDirectory(graph_config())

    graph.connect()

    assert connection.request.call_count == 2


def test_group_members_follow_next_link(directory, connection):
    connection.getresponse.side_effect = [
        response(200, {
            'value': [
                {'@odata.type': '#microsoft.graph.user', 'id': 'u1', 'displayName': 'Alice'},
                {'@odata.type': '#microsoft.graph.group', 'id': 'g2', 'displayName': 'Nested'},
            ],
            '@odata.nextLink': 'https://graph.microsoft.com/v1.0/groups/g1/members?$skiptoken=abc'
        }),
        response(200, {'value': [
            {'@odata.type': '#microsoft.graph.device', 'id': 'd1', 'displayName': 'LAPTOP-01'},
            {'@odata.type': '#microsoft.graph.orgContact', 'id': 'c1', 'displayName': 'Vendor'},
        ]}),
    ]

    members = directory.get_group_members('g1')

    assert [(m.id, m.kind) for m in members] == [
        ('u1', PrincipalKind.USER), ('g2', PrincipalKind.GROUP), ('d1', PrincipalKind.DEVICE)]
    assert request_paths(connection)[1] == '/v1.0/groups/g1/members?$skiptoken=abc'


def test_get_group_by_name(directory, connection):
    connection.getresponse.return_value = response(200, {'value': [{'id': 'g-sales', 'displayName': 'Sales'}]})

    assert directory.get_group_by_name('Sales') == 'g-sales'
    assert "$filter=displayName%20eq%20'Sales'" in request_paths(connection)[0]


def test_get_group_by_name_missing(directory, connection):
    connection.getresponse.return_value = response(200, {'value': []})

    assert directory.get_group_by_name('Nope') is None


def test_token_refreshed_once_on_401(directory, connection):
    connection.getresponse.side_effect = [
        response(401, {'error': {'code': 'InvalidAuthenticationToken', 'message': 'Token expired'}}),
        token_response('fresh'),
        response(200, {'value': [{'id': 'g1'}]}),
    ]

    assert directory.get_group_by_name('Sales') == 'g1'
    assert directory.auth_headers['Authorization'] == 'Bearer fresh'


def test_repeated_401_is_authentication_error(directory, connection):
    connection.getresponse.side_effect = [
        response(401, {'error': {'message': 'Token expired'}}),
        token_response('fresh'),
        response(401, {'error': {'message': 'Insufficient privileges'}}),
    ]

    with pytest.raises(DirectoryAuthenticationError):
        directory.get_group_by_name('Sales')


def test_throttling_is_retried(directory, connection):
    connection.getresponse.side_effect = [
        response(429, {'error': {'message': 'Too many requests'}}, 'Too Many Requests'),
        response(200, {'value': [{'id': 'g1'}]}),
    ]

    assert directory.get_group_by_name('Sales') == 'g1'
    assert connection.request.call_count == 2


def test_persistent_server_error(directory, connection):
    connection.getresponse.return_value = response(500, {'error': {'message': 'Internal'}})

    with pytest.raises(DirectoryQueryError) as exc_info:
        directory.get_group_by_name('Sales')

    assert exc_info.value.status_code == 500
    assert connection.request.call_count == 3


def test_not_found_is_not_retried(directory, connection):
    connection.getresponse.return_value = response(404, {'error': {'message': 'Resource not found'}})

    with pytest.raises(DirectoryError) as exc_info:
        directory.get_group_members('missing')

    assert exc_info.value.status_code == 404
    assert connection.request.call_count == 1


def test_list_managed_devices_server_side_filter(directory, connection):
    connection.getresponse.return_value = response(200, {'value': [
        {'id': 'md-1', 'deviceName': 'iPhone12', 'operatingSystem': 'iOS', 'osVersion': '17.5.1', 'userId': 'u1'}
    ]})

    devices = directory.list_managed_devices(OperatingSystem.IOS, '17.5.1', 'eq')

    assert [d.device_name for d in devices] == ['iPhone12']
    path = request_paths(connection)[0]
    assert path.startswith('/v1.0/deviceManagement/managedDevices?')
    assert "operatingSystem%20eq%20'iOS'%20and%20osVersion%20eq%20'17.5.1'" in path


def test_list_managed_devices_ignores_ordering_operators(directory, connection):
    connection.getresponse.return_value = response(200, {'value': []})

    directory.list_managed_devices(OperatingSystem.WINDOWS, '10.0.22621', 'lt')

    path = request_paths(connection)[0]
    assert "operatingSystem%20eq%20'Windows'" in path
    assert 'osVersion%20' not in path


def test_get_users_by_ids_uses_or_filter(directory, connection):
    connection.getresponse.return_value = response(200, {'value': [
        {'id': 'u1', 'displayName': 'Alice', 'userPrincipalName': 'alice@example.com'},
    ]})

    users = directory.get_users_by_ids(['u1', 'u2'])

    assert [u.user_principal_name for u in users] == ['alice@example.com']
    assert "id%20eq%20'u1'%20or%20id%20eq%20'u2'" in request_paths(connection)[0]


def test_get_device_principals_keyed_by_device_id(directory, connection):
    connection.getresponse.return_value = response(200, {'value': [
        {'id': 'obj-1', 'displayName': 'iPhone12', 'deviceId': 'aad-1'},
    ]})

    principals = directory.get_device_principals_by_ids(['aad-1'])

    assert principals['aad-1'].id == 'obj-1'
    assert principals['aad-1'].kind is PrincipalKind.DEVICE


def test_add_group_member_posts_reference(directory, connection):
    connection.getresponse.return_value = response(204)

    directory.add_group_member('g1', 'u1')

    method, path, body, headers = connection.request.call_args[0]
    assert (method, path) == ('POST', '/v1.0/groups/g1/members/$ref')
    assert json.loads(body) == {'@odata.id': 'https://graph.microsoft.com/v1.0/directoryObjects/u1'}
    assert headers['Content-Type'] == 'application/json'


def test_add_existing_member(directory, connection):
    connection.getresponse.return_value = response(400, {'error': {
        'code': 'Request_BadRequest',
        'message': "One or more added object references already exist for the following modified properties: "
                   "'members'."
    }})

    with pytest.raises(MemberAlreadyExistsError):
        directory.add_group_member('g1', 'u1')
    assert connection.request.call_count == 1


def test_remove_group_member(directory, connection):
    connection.getresponse.return_value = response(204)

    directory.remove_group_member('g1', 'u1')

    assert connection.request.call_args[0][:2] == ('DELETE', '/v1.0/groups/g1/members/u1/$ref')


def test_disconnect_forgets_token(directory, connection):
    directory._get_connection()

    directory.disconnect()

    connection.close.assert_called_once()
    assert directory.auth_headers == {}
    assert directory.connection is None


@pytest.mark.parametrize('error', [ssl.SSLError('bad record mac'), IncompleteRead(b'')])
def test_transport_error_becomes_directory_error(directory, connection, error):
    connection.getresponse.side_effect = error

    with pytest.raises(DirectoryQueryError):
        directory.get_group_members('g1')

    assert directory.connection is None


def test_transport_error_fails_only_that_member(directory, connection):
    alice = DirectoryPrincipal('u1', 'Alice', PrincipalKind.USER)
    bob = DirectoryPrincipal('u2', 'Bob', PrincipalKind.USER)
    connection.getresponse.side_effect = [IncompleteRead(b''), response(204)]
    plan = SyncPlan('g1', to_add={alice, bob})

    report = GroupSynchronizer(directory).apply(plan)

    assert report.count(MemberOutcome.FAILED) == 1
    assert report.count(MemberOutcome.ADDED) == 1


def test_transport_error_skips_only_that_batch(directory, connection):
    ids = [f"u{i:02d}" for i in range(37)]
    connection.getresponse.side_effect = [
        ssl.SSLError('bad record mac'),
        response(200, {'value': [{'id': 'u15', 'displayName': 'P', 'userPrincipalName': 'p@example.com'}]}),
        response(200, {'value': [{'id': 'u30', 'displayName': 'Q', 'userPrincipalName': 'q@example.com'}]}),
    ]
    lookup = BatchIdentityLookup(directory)

    users = lookup.resolve_users(ids)

    assert sorted(users) == ['u15', 'u30']
    assert lookup.failed_batches == 1
    assert connection.request.call_count == 3
