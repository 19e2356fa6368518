"""
Resolution of source groups into matched devices and desired target members.

For each source group the resolver expands nested membership, maps device
members to their inventory records and user members to the devices they own,
and keeps the devices that pass the platform version filters. Without source
groups the whole inventory is searched (org-wide mode).
"""

import logging
from typing import Dict, List, Optional, Sequence, Set

from device_group_sync.device_filter import DeviceFilter
from device_group_sync.directories.base import DirectoryBase, DirectoryError
from device_group_sync.expander import GroupExpander, MembershipCache
from device_group_sync.identity import BatchIdentityLookup
from device_group_sync.models import (
    AddMode,
    DirectoryPrincipal,
    ManagedDevice,
    MatchedDevice,
    PrincipalKind,
    UserRecord,
)
from device_group_sync.versions import Operator

logger = logging.getLogger(__name__)


class RunCache:
    """
    Caches that live for exactly one sync run.

    Every entry is written once and read many times. Never share an instance
    between runs.
    """

    def __init__(self):
        self.memberships = MembershipCache()
        self.inventory: Optional[List[ManagedDevice]] = None
        self.users: Dict[str, UserRecord] = {}
        self.devices: Dict[str, DirectoryPrincipal] = {}


class Resolver:
    """Builds the set of matched devices from source groups or the whole inventory."""

    def __init__(self, directory: DirectoryBase, device_filter: DeviceFilter,
                 run_cache: Optional[RunCache] = None, limit: Optional[int] = None):
        self.directory = directory
        self.device_filter = device_filter
        self.run_cache = run_cache if run_cache is not None else RunCache()
        self.limit = limit or None
        self.expander = GroupExpander(directory, self.run_cache.memberships)
        self.group_stats: Dict[str, Dict[str, int]] = {}
        self.warnings: List[str] = []

    def resolve(self, source_group_names: Sequence[str]) -> List[MatchedDevice]:
        """
        Resolve matched devices.

        Args:
            source_group_names: Groups to search, in order; empty for org-wide mode

        Returns:
            Matched devices deduplicated by device name, in discovery order
        """
        matches: Dict[str, MatchedDevice] = {}

        if not source_group_names:
            logger.info("No source groups given, searching the whole device inventory")
            self._resolve_org_wide(matches)
        else:
            for group_name in source_group_names:
                self._resolve_group(group_name, matches)

        result = list(matches.values())
        if self.limit and len(result) > self.limit:
            logger.info(f"Limiting {len(result)} matched devices to the first {self.limit}")
            result = result[:self.limit]

        logger.info(f"Resolved {len(result)} matching devices")
        return result

    def _warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)

    def _collect(self, device: ManagedDevice, matches: Dict[str, MatchedDevice], source: str) -> bool:
        if not device.device_name:
            self._warn(f"Device {device.id} found via {source} has no name, skipping")
            return False
        if not self.device_filter.matches(device):
            return False
        if device.device_name in matches:
            logger.debug(f"{device.device_name} already matched, found again via {source}")
        else:
            matches[device.device_name] = MatchedDevice.from_device(device)
            logger.info(f"Matched {device.device_name} ({device.operating_system.value} {device.os_version}) "
                        f"via {source}")
        return True

    def _resolve_org_wide(self, matches: Dict[str, MatchedDevice]):
        if self.device_filter.discovery_all:
            queries = [{}]
        else:
            queries = []
            for platform, platform_filter in self.device_filter.filters.items():
                query = {'operating_system': platform}
                # Only equality filters can be evaluated by the directory
                if platform_filter.operator in (Operator.EQ, Operator.NE):
                    query['os_version'] = platform_filter.min_version
                    query['version_operator'] = platform_filter.operator.value
                queries.append(query)

        for query in queries:
            devices = self.directory.list_managed_devices(**query)
            for device in devices:
                self._collect(device, matches, 'inventory')

    def _resolve_group(self, group_name: str, matches: Dict[str, MatchedDevice]):
        stats = {'devices': 0, 'users': 0, 'matched': 0}
        self.group_stats[group_name] = stats

        try:
            group_id = self.directory.get_group_by_name(group_name)
        except DirectoryError as e:
            self._warn(f"Could not look up source group '{group_name}': {e}")
            return
        if not group_id:
            self._warn(f"Source group '{group_name}' not found, skipping")
            return

        try:
            members = self.expander.expand(group_id, visited=set())
        except DirectoryError as e:
            self._warn(f"Could not expand source group '{group_name}': {e}")
            return

        device_members = [m for m in members if m.kind is PrincipalKind.DEVICE]
        user_members = [m for m in members if m.kind is PrincipalKind.USER]
        stats['devices'] = len(device_members)
        stats['users'] = len(user_members)
        logger.info(f"Group '{group_name}': {len(device_members)} devices, {len(user_members)} users")

        if not device_members and not user_members:
            self._warn(f"Source group '{group_name}' has no user or device members")
            return

        for member in device_members:
            try:
                device = self.directory.get_device_by_name(member.display_name)
            except DirectoryError as e:
                self._warn(f"Lookup of device '{member.display_name}' failed: {e}")
                continue
            if device is None:
                self._warn(f"Device '{member.display_name}' from group '{group_name}' not found in inventory")
                continue
            if self._collect(device, matches, f"group '{group_name}'"):
                stats['matched'] += 1

        if user_members:
            user_ids = {m.id for m in user_members}
            for device in self._inventory():
                if device.owner_user_id in user_ids and self._collect(device, matches, f"owner in '{group_name}'"):
                    stats['matched'] += 1

    def _inventory(self) -> List[ManagedDevice]:
        if self.run_cache.inventory is None:
            logger.info("Fetching full device inventory")
            self.run_cache.inventory = self.directory.list_managed_devices()
        return self.run_cache.inventory


def build_desired_members(matches: Sequence[MatchedDevice], add_mode: AddMode,
                          identity_lookup: BatchIdentityLookup) -> Set[DirectoryPrincipal]:
    """
    Turn matched devices into the principals that should be in the target group.

    Users are added even when their record cannot be resolved (shown as
    "Unknown"); devices without a resolvable directory object are skipped.
    """
    desired: Set[DirectoryPrincipal] = set()

    if add_mode in (AddMode.USERS, AddMode.BOTH):
        owner_ids = []
        for match in matches:
            if match.owner_user_id:
                owner_ids.append(match.owner_user_id)
            else:
                logger.info(f"Device {match.name} has no owner, no user to add")

        records = identity_lookup.resolve_users(owner_ids)
        for owner_id in set(owner_ids):
            record = records.get(owner_id)
            if record is None:
                logger.warning(f"User {owner_id} could not be resolved")
            desired.add(DirectoryPrincipal(
                id=owner_id,
                display_name=record.display_name if record else 'Unknown',
                kind=PrincipalKind.USER
            ))

    if add_mode in (AddMode.DEVICES, AddMode.BOTH):
        device_ids = [m.directory_device_id for m in matches if m.directory_device_id]
        principals = identity_lookup.resolve_devices(device_ids)
        for match in matches:
            principal = principals.get(match.directory_device_id) if match.directory_device_id else None
            if principal is None:
                logger.warning(f"Device {match.name} has no directory object, cannot add it")
                continue
            desired.add(principal)

    logger.info(f"Desired target membership: {len(desired)} principals ({add_mode.value})")
    return desired
