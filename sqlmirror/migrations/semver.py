"""
Semantic version helpers (SemVer 2.0.0).

Versions stay plain strings everywhere; these helpers validate them, provide
a precedence sort key and compute the next major version for new migrations.
"""

import re
from typing import Optional, Tuple, Union

from sqlmirror.errors import InvalidVersion

# https://semver.org/#is-there-a-suggested-regular-expression-regex-to-check-a-semver-string
SEMVER_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<build>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

INITIAL_VERSION = "1.0.0"


def is_valid(version: Optional[str]) -> bool:
    return isinstance(version, str) and SEMVER_PATTERN.match(version) is not None


def validate(version: Optional[str]) -> str:
    """Return the version unchanged, or raise InvalidVersion."""
    if not is_valid(version):
        raise InvalidVersion(f"Invalid version: {version!r}", details={"version": version})
    return version


def _prerelease_key(prerelease: Optional[str]) -> Tuple[Tuple[int, Union[int, str]], ...]:
    # A release sorts above any of its pre-releases
    if prerelease is None:
        return ((2, 0),)
    # Numeric identifiers sort below alphanumeric ones
    return tuple(
        (0, int(identifier)) if identifier.isdigit() else (1, identifier)
        for identifier in prerelease.split(".")
    )


def sort_key(version: str) -> Tuple:
    """Precedence key; build metadata is ignored as SemVer requires."""
    match = SEMVER_PATTERN.match(version)
    if match is None:
        raise InvalidVersion(f"Invalid version: {version!r}", details={"version": version})
    return (
        int(match.group("major")),
        int(match.group("minor")),
        int(match.group("patch")),
        _prerelease_key(match.group("prerelease")),
    )


def compare(left: str, right: str) -> int:
    left_key, right_key = sort_key(left), sort_key(right)
    return (left_key > right_key) - (left_key < right_key)


def next_major(version: Optional[str]) -> str:
    """
    Next major version after ``version`` (``1.0.0`` when there is none).

    A pre-release of a major (e.g. 2.0.0-rc.1) bumps to that major itself.
    """
    if version is None:
        return INITIAL_VERSION
    match = SEMVER_PATTERN.match(validate(version))
    major, minor, patch = (int(match.group(part)) for part in ("major", "minor", "patch"))
    if match.group("prerelease") and minor == 0 and patch == 0:
        return f"{major}.0.0"
    return f"{major + 1}.0.0"
