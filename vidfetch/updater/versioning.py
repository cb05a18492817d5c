"""
Version string handling for date-based release tags such as `2024.01.10`.
"""

import re

_VERSION_REGEX = re.compile(r"^\d+(\.\d+)*$")


def normalize_version(version: str) -> str:
    """
    Strips surrounding whitespace, a leading `v` and leading zeros from every
    component, so `v2024.01.10` and `2024.1.10` normalize to the same string.

    Raises:
        ValueError: If the version is not a dotted sequence of numbers.
    """
    cleaned = version.strip()
    if cleaned[:1] in ("v", "V"):
        cleaned = cleaned[1:]
    if not _VERSION_REGEX.match(cleaned):
        raise ValueError(f"Unrecognized version string: '{version}'")
    return ".".join(str(int(part)) for part in cleaned.split("."))


def _version_key(version: str) -> tuple[int, ...]:
    parts = [int(part) for part in normalize_version(version).split(".")]
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def compare_versions(left: str, right: str) -> int:
    """Returns -1, 0 or 1 as `left` is older than, equal to or newer than `right`."""
    a, b = _version_key(left), _version_key(right)
    return (a > b) - (a < b)


def is_newer(candidate: str, current: str) -> bool:
    return compare_versions(candidate, current) > 0
