"""
Batched identity resolution.

Directory APIs cap the number of clauses in a single filter, so ids are
deduplicated and resolved in fixed-size batches. A failed batch is logged and
skipped; its ids are simply absent from the result.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from device_group_sync.directories.base import DirectoryBase, DirectoryError
from device_group_sync.models import DirectoryPrincipal, UserRecord

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 15


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchIdentityLookup:
    """Resolves user and device ids to directory records in bounded batches."""

    def __init__(self, directory: DirectoryBase, batch_size: int = DEFAULT_BATCH_SIZE,
                 users: Optional[Dict[str, UserRecord]] = None,
                 devices: Optional[Dict[str, DirectoryPrincipal]] = None):
        """
        Args:
            directory: Directory backend
            batch_size: Maximum ids per lookup
            users: Run-scoped cache of resolved users, shared with the caller
            devices: Run-scoped cache of resolved device principals
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.directory = directory
        self.batch_size = batch_size
        self.users = users if users is not None else {}
        self.devices = devices if devices is not None else {}
        self.batches_issued = 0
        self.failed_batches = 0

    def resolve_users(self, ids: Iterable[str]) -> Dict[str, UserRecord]:
        """
        Resolve user ids to user records.

        Returns:
            Mapping of id to record for every id that could be resolved
        """
        def lookup(batch):
            return {user.id: user for user in self.directory.get_users_by_ids(batch)}

        return self._resolve(ids, self.users, lookup, 'user')

    def resolve_devices(self, ids: Iterable[str]) -> Dict[str, DirectoryPrincipal]:
        """
        Resolve directory device ids to device principals.

        Returns:
            Mapping of requested id to principal for every id that could be resolved
        """
        return self._resolve(ids, self.devices, self.directory.get_device_principals_by_ids, 'device')

    def _resolve(self, ids: Iterable[str], cache: Dict, lookup: Callable[[List[str]], Dict],
                 label: str) -> Dict:
        unique_ids = sorted({i for i in ids if i})
        pending = [i for i in unique_ids if i not in cache]

        batches = chunked(pending, self.batch_size)
        if batches:
            logger.info(f"Resolving {len(pending)} {label} ids in {len(batches)} batches of up to {self.batch_size}")

        for index, batch in enumerate(batches, 1):
            self.batches_issued += 1
            try:
                found = lookup(batch)
            except DirectoryError as e:
                self.failed_batches += 1
                logger.error(f"{label.capitalize()} lookup batch {index}/{len(batches)} failed: {e}")
                continue

            for key, record in found.items():
                if key in batch:
                    cache[key] = record

            missing = len(batch) - sum(1 for key in batch if key in found)
            if missing:
                logger.warning(f"{missing} of {len(batch)} {label} ids in batch {index} were not found")

        return {i: cache[i] for i in unique_ids if i in cache}
