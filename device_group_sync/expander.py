"""
Nested group expansion.

Expansion is an explicit stack walk over the group graph with a caller-owned
visited set, so cycles and diamond-shaped nesting terminate without recursion.
"""

import logging
from typing import Dict, List, Optional, Set

from device_group_sync.directories.base import DirectoryBase
from device_group_sync.models import DirectoryPrincipal, PrincipalKind

logger = logging.getLogger(__name__)


class MembershipCache:
    """
    Direct-member lists fetched during one run, keyed by group id.

    Sharing one cache across root groups avoids re-fetching subgroups that
    several roots have in common. Create a new cache for every run.
    """

    def __init__(self):
        self._members: Dict[str, List[DirectoryPrincipal]] = {}
        self.fetches = 0

    def get_members(self, directory: DirectoryBase, group_id: str) -> List[DirectoryPrincipal]:
        if group_id not in self._members:
            self._members[group_id] = directory.get_group_members(group_id)
            self.fetches += 1
        return self._members[group_id]

    def __contains__(self, group_id: str) -> bool:
        return group_id in self._members


class GroupExpander:
    """Resolves the transitive user and device members of a group."""

    def __init__(self, directory: DirectoryBase, cache: Optional[MembershipCache] = None):
        self.directory = directory
        self.cache = cache if cache is not None else MembershipCache()

    def expand(self, group_id: str, visited: Optional[Set[str]] = None) -> List[DirectoryPrincipal]:
        """
        Flatten a group into its user and device members.

        Args:
            group_id: Root group id
            visited: Group ids already traversed; the root is added to it.
                Pass a fresh set per root group.

        Returns:
            Deduplicated users and devices in first-seen order. Groups are
            never returned.
        """
        if visited is None:
            visited = set()

        visited.add(group_id)
        stack = [group_id]
        leaves: Dict[str, DirectoryPrincipal] = {}

        while stack:
            current = stack.pop()
            members = self.cache.get_members(self.directory, current)
            logger.debug(f"Group {current} has {len(members)} direct members")

            nested = []
            for member in members:
                if member.kind is PrincipalKind.GROUP:
                    if member.id in visited:
                        logger.info(f"Skipping already expanded group {member} nested in {current}")
                        continue
                    visited.add(member.id)
                    nested.append(member.id)
                elif member.id not in leaves:
                    leaves[member.id] = member

            # Reversed so nested groups are walked in listing order
            stack.extend(reversed(nested))

        logger.info(f"Expanded group {group_id} into {len(leaves)} members")
        return list(leaves.values())
