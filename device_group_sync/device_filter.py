"""
Per-platform OS version filtering of managed devices.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from device_group_sync.config import ConfigurationError
from device_group_sync.models import ManagedDevice, OperatingSystem
from device_group_sync.versions import Operator, compare_versions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformFilter:
    min_version: str
    operator: Operator = Operator.LT


class DeviceFilter:
    """
    Decides whether a device satisfies the configured platform filters.

    With no filters every device matches. Once any platform is filtered, only
    filtered platforms are eligible.
    """

    def __init__(self, filters: Optional[Mapping[OperatingSystem, PlatformFilter]] = None):
        self.filters = dict(filters or {})

    @property
    def discovery_all(self) -> bool:
        return not self.filters

    def matches(self, device: ManagedDevice) -> bool:
        if not self.filters:
            return True

        platform_filter = self.filters.get(device.operating_system)
        if platform_filter is None:
            logger.debug(f"Excluding {device.device_name}: no filter for {device.operating_system.value}")
            return False

        result = compare_versions(device.os_version, platform_filter.min_version, platform_filter.operator)
        logger.debug(f"{device.device_name} {device.operating_system.value} {device.os_version} "
                     f"{platform_filter.operator.value} {platform_filter.min_version}: {result}")
        return result


def build_filters(raw_filters: Optional[Dict[str, Any]]) -> Dict[OperatingSystem, PlatformFilter]:
    """
    Build platform filters from the sync.filters config section.

    Example:
        {'iOS': {'min_version': '18.0', 'operator': 'lt'}}

    Raises:
        ConfigurationError: On an unknown platform or operator
    """
    filters = {}
    for platform_name, settings in (raw_filters or {}).items():
        platform = OperatingSystem.parse(platform_name)
        if platform is OperatingSystem.OTHER:
            raise ConfigurationError(f"Unsupported filter platform: {platform_name}")
        if not settings or not settings.get('min_version'):
            raise ConfigurationError(f"Missing min_version for {platform_name} filter")
        filters[platform] = PlatformFilter(
            min_version=str(settings['min_version']),
            operator=Operator.parse(settings.get('operator', 'lt'))
        )
    return filters
