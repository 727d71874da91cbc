"""
Version comparison for marketplace packages.

Versions of the form ``[v]MAJOR.MINOR.PATCH[-pre|+build]`` compare
numerically, with a release sorting after any pre-release of the same
MAJOR.MINOR.PATCH. Anything else falls back to plain string comparison.
"""

import functools
import re

_SEMVER3 = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)([-+].+)?$")


def parse_semver3(version: str) -> tuple[int, int, int, str] | None:
    """
    Parse a three-part version.

    Args:
        version: Version string

    Returns:
        (major, minor, patch, suffix) or None if the string does not conform
    """
    match = _SEMVER3.match(str(version or "").strip())
    if not match:
        return None
    major, minor, patch, suffix = match.groups()
    return int(major), int(minor), int(patch), suffix or ""


def _cmp(a: str, b: str) -> int:
    return (a > b) - (a < b)


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two version strings.

    Args:
        v1: First version
        v2: Second version

    Returns:
        Negative if v1 < v2, 0 if equal, positive if v1 > v2
    """
    p1 = parse_semver3(v1)
    p2 = parse_semver3(v2)
    if p1 is None or p2 is None:
        return _cmp(v1, v2)

    for a, b in zip(p1[:3], p2[:3], strict=True):
        if a != b:
            return a - b

    s1, s2 = p1[3], p2[3]
    # A release sorts after its pre-releases
    if not s1 and s2:
        return 1
    if s1 and not s2:
        return -1
    return _cmp(s1, s2)


version_key = functools.cmp_to_key(compare_versions)


def sort_versions(versions: list[str]) -> list[str]:
    """Return versions sorted from oldest to newest."""
    return sorted(versions, key=version_key)
