"""
Migration Naming Codec.

A migration's identity (type, semantic version, name) is encoded in its
filename::

    <version><marker>__<snake_case_name><ext>

    1.0.0U__add_users.sql   up
    1.0.0D__add_users.sql   down
    1.0.0C__add_users.py    config module

``parse(serialize(m)) == m`` holds for identities whose name is already
snake_case. Names needing transliteration ("Add Users", "addUsers") are
stored as "add_users" and come back in that form; the codec does not try to
recover the original spelling.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import PurePath
from typing import Union

from sqlmirror.errors import InvalidMigrationType, InvalidVersion
from sqlmirror.migrations import semver

SEPARATOR = "__"


class MigrationType(Enum):
    UP = "up"
    DOWN = "down"
    CONFIG = "config"

    @property
    def marker(self) -> str:
        return _MARKERS[self]

    @property
    def ext(self) -> str:
        return ".py" if self is MigrationType.CONFIG else ".sql"

    @classmethod
    def coerce(cls, value: Union["MigrationType", str]) -> "MigrationType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidMigrationType(
                f"Invalid migration type: {value!r}",
                details={"type": value, "known": [t.value for t in cls]},
            ) from None


_MARKERS = {
    MigrationType.UP: "U",
    MigrationType.DOWN: "D",
    MigrationType.CONFIG: "C",
}
_TYPES_BY_MARKER = {marker: migration_type for migration_type, marker in _MARKERS.items()}


@dataclass(frozen=True)
class MigrationIdentity:
    type: MigrationType
    version: str
    name: str
    ext: str

    @property
    def filename(self) -> str:
        # The name is used as stored; serialize() is for human names
        return f"{self.version}{self.type.marker}{SEPARATOR}{self.name}{self.ext}"

    @property
    def display_name(self) -> str:
        """Human-readable name for logs."""
        return f"{self.version} {self.name}"

    def sibling(self, migration_type: Union[MigrationType, str]) -> "MigrationIdentity":
        """Same version and name, different type (up -> down, up -> config, ...)."""
        migration_type = MigrationType.coerce(migration_type)
        return replace(self, type=migration_type, ext=migration_type.ext)


_CASE_BOUNDARIES = (
    re.compile(r"([a-z0-9])([A-Z])"),
    re.compile(r"([A-Z])([A-Z][a-z])"),
)
_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]+")


def to_snake_case(value: str) -> str:
    """Transliterate a human name: 'Add Users', 'addUsers', 'add-users' -> 'add_users'."""
    for boundary in _CASE_BOUNDARIES:
        value = boundary.sub(r"\1 \2", value)
    words = _NON_ALPHANUMERIC.sub(" ", value).split()
    return "_".join(word.lower() for word in words)


def serialize(migration_type: Union[MigrationType, str], version: str, name: str) -> str:
    """
    Build the filename for a migration.

    Raises:
        InvalidMigrationType: Unknown type
        InvalidVersion: Version is not a valid semantic version
    """
    migration_type = MigrationType.coerce(migration_type)
    semver.validate(version)
    return f"{version}{migration_type.marker}{SEPARATOR}{to_snake_case(name)}{migration_type.ext}"


def parse(filename: Union[str, PurePath]) -> MigrationIdentity:
    """
    Decode a migration filename (directories are ignored).

    Raises:
        InvalidMigrationType: Missing separator, unknown marker or an
            extension that does not belong to the marker's type
        InvalidVersion: Version segment is not a valid semantic version
    """
    basename = PurePath(filename).name
    if SEPARATOR not in basename:
        raise InvalidMigrationType(
            f"Malformed migration filename {basename!r}: missing '{SEPARATOR}' separator",
            details={"filename": basename},
        )

    full_version, name_with_ext = basename.split(SEPARATOR, 1)
    version, marker = full_version[:-1], full_version[-1:]

    migration_type = _TYPES_BY_MARKER.get(marker)
    if migration_type is None:
        raise InvalidMigrationType(
            f"Invalid migration type marker {marker!r} in {basename!r}",
            details={"filename": basename, "marker": marker},
        )

    if not semver.is_valid(version):
        raise InvalidVersion(
            f"Invalid version {version!r} in {basename!r}",
            details={"filename": basename, "version": version},
        )

    name, dot, _ = name_with_ext.partition(".")
    ext = PurePath(basename).suffix if dot else ""
    if ext != migration_type.ext:
        raise InvalidMigrationType(
            f"Migration {basename!r} of type '{migration_type.value}' must end with {migration_type.ext}",
            details={"filename": basename, "ext": ext},
        )

    return MigrationIdentity(type=migration_type, version=version, name=name, ext=ext)
