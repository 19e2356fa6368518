"""
Version parsing and comparison for OS version filters.

Versions are compared as tuples of integers after zero-padding, so the same
algorithm serves iOS/iPadOS semantic versions ("17.5.1") and Windows build
numbers ("10.0.22621.3007"). A version that cannot be parsed is incomparable:
comparisons involving it are logged and evaluate to False.
"""

import re
import logging
from enum import Enum
from typing import Tuple, Union

from device_group_sync.config import ConfigurationError

logger = logging.getLogger(__name__)

# Active Directory reports Windows versions as "10.0 (22621)"
_AD_BUILD_PATTERN = re.compile(r'^(\d+(?:\.\d+)*)\s*\((\d+)\)$', re.ASCII)
_DIGITS = re.compile(r'[0-9]+')


class IncomparableVersionError(ValueError):
    """Raised when a version string is not a dot-separated list of integers."""
    pass


class InvalidOperatorError(ConfigurationError):
    """Raised for an unknown comparison operator."""
    pass


class Operator(Enum):
    EQ = 'eq'
    NE = 'ne'
    LT = 'lt'
    LE = 'le'
    GT = 'gt'
    GE = 'ge'

    @classmethod
    def parse(cls, value: Union[str, 'Operator']) -> 'Operator':
        """
        Resolve an operator name or symbol.

        Raises:
            InvalidOperatorError: If the operator is not recognized
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        text = _SYMBOLS.get(text, text)
        for op in cls:
            if op.value == text:
                return op
        raise InvalidOperatorError(f"Invalid comparison operator: {value!r}")

    @classmethod
    def is_valid(cls, value) -> bool:
        try:
            cls.parse(value)
            return True
        except InvalidOperatorError:
            return False


_SYMBOLS = {
    '==': 'eq',
    '!=': 'ne',
    '<': 'lt',
    '<=': 'le',
    '>': 'gt',
    '>=': 'ge',
}


def normalize_version(version: str) -> str:
    """
    Normalize a version string before parsing.

    "18" becomes "18.0" so single-integer build numbers compare consistently
    with dotted versions, and "10.0 (22621)" becomes "10.0.22621".
    """
    text = str(version).strip()
    match = _AD_BUILD_PATTERN.match(text)
    if match:
        text = f"{match.group(1)}.{match.group(2)}"
    if '.' not in text:
        text = f"{text}.0"
    return text


def parse_version(version: str) -> Tuple[int, ...]:
    """
    Parse a version string into a tuple of integer components.

    Raises:
        IncomparableVersionError: If any component is not a non-negative integer
    """
    if version is None:
        raise IncomparableVersionError("Version is missing")

    normalized = normalize_version(version)
    components = []
    for part in normalized.split('.'):
        if not _DIGITS.fullmatch(part):
            raise IncomparableVersionError(f"Version '{version}' has non-numeric component '{part}'")
        components.append(int(part))
    return tuple(components)


def _pad(left: Tuple[int, ...], right: Tuple[int, ...]) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
    width = max(len(left), len(right))
    return (left + (0,) * (width - len(left)),
            right + (0,) * (width - len(right)))


def compare_versions(current: str, target: str, operator: Union[str, Operator]) -> bool:
    """
    Evaluate `current <operator> target`.

    Args:
        current: Version reported by the device
        target: Version from the filter configuration
        operator: One of eq, ne, lt, le, gt, ge (or the matching symbol)

    Returns:
        Result of the comparison; False if either version is unparsable

    Raises:
        InvalidOperatorError: If the operator is not recognized
    """
    op = Operator.parse(operator)

    try:
        left, right = _pad(parse_version(current), parse_version(target))
    except IncomparableVersionError as e:
        logger.warning(f"Cannot compare version '{current}' with '{target}': {e}")
        return False

    if op is Operator.EQ:
        return left == right
    if op is Operator.NE:
        return left != right
    if op is Operator.LT:
        return left < right
    if op is Operator.LE:
        return left <= right
    if op is Operator.GT:
        return left > right
    return left >= right
