"""
Base directory interface and error taxonomy.

This module defines the abstract base class that every directory backend must
implement. The sync engine only talks to the directory through these methods;
authentication, transport and pagination stay inside the backend.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional

from device_group_sync.models import DirectoryPrincipal, ManagedDevice, OperatingSystem, UserRecord

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """Base exception for directory errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DirectoryAuthenticationError(DirectoryError):
    """Raised when the directory session cannot be established."""
    pass


class DirectoryQueryError(DirectoryError):
    """Raised when a directory read fails."""
    pass


class MemberAlreadyExistsError(DirectoryError):
    """Raised when adding a principal that is already a member of the group."""
    pass


class DirectoryBase(ABC):
    """
    Abstract base class for directory backends.

    Backends must translate directory responses into the models in
    device_group_sync.models, deciding each member's PrincipalKind once.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory backend.

        Args:
            config: Directory configuration dictionary
        """
        self.config = config
        self.name = config.get('name', self.__class__.__name__)

    @abstractmethod
    def connect(self) -> None:
        """
        Establish the directory session.

        Raises:
            DirectoryAuthenticationError: If authentication fails
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Tear down the directory session. Must be safe to call repeatedly."""
        pass

    @abstractmethod
    def get_group_by_name(self, name: str) -> Optional[str]:
        """
        Look up a group id by display name.

        Returns:
            Group id, or None if no group has this name
        """
        pass

    @abstractmethod
    def get_group_members(self, group_id: str) -> List[DirectoryPrincipal]:
        """Return the direct members of a group."""
        pass

    @abstractmethod
    def list_managed_devices(self, operating_system: Optional[OperatingSystem] = None,
                             os_version: Optional[str] = None,
                             version_operator: Optional[str] = None) -> List[ManagedDevice]:
        """
        List managed devices, optionally filtered server-side.

        Args:
            operating_system: Only devices on this platform
            os_version: Exact version to filter on (requires version_operator)
            version_operator: 'eq' or 'ne'; other operators are filtered client-side
        """
        pass

    @abstractmethod
    def get_users_by_ids(self, ids: List[str]) -> List[UserRecord]:
        """Resolve one batch of user ids. Unknown ids are omitted."""
        pass

    @abstractmethod
    def get_device_principals_by_ids(self, ids: List[str]) -> Dict[str, DirectoryPrincipal]:
        """
        Resolve one batch of directory device ids into device principals.

        Returns:
            Mapping of requested id to principal; the principal id is the one
            accepted by add_group_member. Unknown ids are omitted.
        """
        pass

    @abstractmethod
    def get_device_by_name(self, name: str) -> Optional[ManagedDevice]:
        """Look up a managed device by name. Returns None on a miss."""
        pass

    @abstractmethod
    def add_group_member(self, group_id: str, principal_id: str) -> None:
        """
        Add a principal to a group.

        Raises:
            MemberAlreadyExistsError: If the principal is already a member
            DirectoryError: On any other failure
        """
        pass

    @abstractmethod
    def remove_group_member(self, group_id: str, principal_id: str) -> None:
        """
        Remove a principal from a group.

        Raises:
            DirectoryError: If removal fails
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
