"""
Data model shared by the resolution and synchronization engine.

Directory backends translate their raw responses into these types, so the rest
of the pipeline never inspects directory-specific type tags.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Set


class PrincipalKind(Enum):
    """Closed set of directory object kinds the engine understands."""
    USER = 'User'
    DEVICE = 'Device'
    GROUP = 'Group'


class OperatingSystem(Enum):
    """Device platforms that can carry a version filter."""
    IOS = 'iOS'
    IPADOS = 'iPadOS'
    WINDOWS = 'Windows'
    OTHER = 'Other'

    @classmethod
    def parse(cls, value: Optional[str]) -> 'OperatingSystem':
        """
        Map a directory-reported OS name to a platform.

        Matching is case-insensitive and tolerant of edition suffixes, so
        "Windows 10 Enterprise" maps to WINDOWS. Unknown names map to OTHER.
        """
        if not value:
            return cls.OTHER
        text = value.strip().lower()
        if text == 'ipados':
            return cls.IPADOS
        if text == 'ios':
            return cls.IOS
        if text.startswith('windows'):
            return cls.WINDOWS
        return cls.OTHER


class AddMode(Enum):
    """What to put into the target group for each matched device."""
    USERS = 'Users'
    DEVICES = 'Devices'
    BOTH = 'Both'

    @classmethod
    def parse(cls, value: str) -> 'AddMode':
        for mode in cls:
            if mode.value.lower() == str(value).strip().lower():
                return mode
        raise ValueError(f"Unknown add mode '{value}' (expected Users, Devices or Both)")


@dataclass(frozen=True)
class DirectoryPrincipal:
    """A user, device or group addressable by an opaque id."""
    id: str
    display_name: str = field(compare=False)
    kind: PrincipalKind = field(compare=False)

    def __str__(self):
        return f"{self.display_name} ({self.kind.value} {self.id})"


@dataclass(frozen=True)
class ManagedDevice:
    """A device record from the device management inventory."""
    id: str
    device_name: str
    operating_system: OperatingSystem
    os_version: str
    owner_user_id: Optional[str] = None
    directory_device_id: Optional[str] = None


@dataclass(frozen=True)
class UserRecord:
    """A resolved directory user."""
    id: str
    display_name: str
    user_principal_name: str = ''
    mail: str = ''


@dataclass(frozen=True)
class MatchedDevice:
    """A device that satisfied the active filter. Identity is the device name."""
    name: str
    os: OperatingSystem = field(compare=False)
    version: str = field(compare=False)
    owner_user_id: Optional[str] = field(default=None, compare=False)
    directory_device_id: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_device(cls, device: ManagedDevice) -> 'MatchedDevice':
        return cls(
            name=device.device_name,
            os=device.operating_system,
            version=device.os_version,
            owner_user_id=device.owner_user_id,
            directory_device_id=device.directory_device_id
        )


@dataclass
class SyncPlan:
    """Membership changes computed once per run for the target group."""
    target_group_id: str
    to_remove: Set[DirectoryPrincipal] = field(default_factory=set)
    to_add: Set[DirectoryPrincipal] = field(default_factory=set)
    already_present: Set[DirectoryPrincipal] = field(default_factory=set)
