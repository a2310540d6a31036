"""Helpers for npm version strings and constraints."""

import re
from typing import Optional

VERSION_PATTERN = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z.-]+))?")
RANGE_PREFIXES = ("^", "~")


def extract_version(spec: Optional[str]) -> Optional[str]:
    """Return the first concrete version in a constraint or range, e.g. ">=4.17.21" -> "4.17.21"."""
    if not spec:
        return None
    match = VERSION_PATTERN.search(spec)
    return match.group(0) if match else None


def parse_version(spec: Optional[str]) -> Optional[tuple[int, int, int]]:
    version = extract_version(spec)
    if version is None:
        return None
    match = VERSION_PATTERN.match(version)
    return tuple(int(part or 0) for part in match.groups()[:3])


def constraint_prefix(constraint: Optional[str]) -> str:
    """The caret/tilde operator of a constraint, or '' for exact and other forms."""
    if constraint and constraint[:1] in RANGE_PREFIXES:
        return constraint[0]
    return ""


def target_constraint(current: Optional[str], version: str) -> str:
    """Write version in the same style as the current constraint ("^1.0.0" + 2.0.0 -> "^2.0.0")."""
    return f"{constraint_prefix(current)}{version}"


def version_delta(current: Optional[str], target: Optional[str]) -> str:
    """
    Classify the semantic version change between two constraints.

    Returns: "major", "minor", "patch", "equal", or "unknown"
    """
    current_parts = parse_version(current)
    target_parts = parse_version(target)
    if current_parts is None or target_parts is None:
        return "unknown"

    if current_parts == target_parts:
        return "equal"
    elif target_parts[0] > current_parts[0]:
        return "major"
    elif target_parts[0] < current_parts[0]:
        return "unknown"
    elif target_parts[1] > current_parts[1]:
        return "minor"
    elif target_parts[1] < current_parts[1]:
        return "unknown"
    elif target_parts[2] > current_parts[2]:
        return "patch"
    else:
        return "unknown"  # target is older than current
