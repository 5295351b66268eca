"""
Firmware versions and package descriptors.

Versions are 4-part numeric (major.minor.build.revision) and ordered
numerically, so 1.10.0.0 sorts after 1.9.9.9.
"""

import re
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import Iterable, Optional, Tuple, Union

_VERSION_RE = re.compile(r"^\s*v?(\d+(?:\.\d+){0,3})(?:[-+].*)?\s*$")


@total_ordering
class FirmwareVersion:
    """
    Numeric 4-part version.

    Missing parts default to 0 and a trailing pre-release/build suffix
    ("-preview.12", "+sha") is ignored for ordering.

    Example:
        >>> FirmwareVersion.parse("1.10") > FirmwareVersion.parse("1.9.9.9")
        True
    """

    __slots__ = ("parts", "text")

    def __init__(self, major: int = 0, minor: int = 0, build: int = 0, revision: int = 0, text: Optional[str] = None):
        for part in (major, minor, build, revision):
            if part < 0:
                raise ValueError(f"Version parts can't be negative: {major}.{minor}.{build}.{revision}")
        self.parts: Tuple[int, int, int, int] = (major, minor, build, revision)
        self.text = text or ".".join(str(p) for p in self.parts)

    @classmethod
    def parse(cls, value: Union[str, "FirmwareVersion"]) -> "FirmwareVersion":
        """Parse a version string. Raises ValueError on anything else."""
        if isinstance(value, FirmwareVersion):
            return value
        if value is None:
            raise ValueError("Version is required")
        match = _VERSION_RE.match(str(value))
        if not match:
            raise ValueError(f"Invalid version: {value!r}")
        numbers = [int(p) for p in match.group(1).split(".")]
        numbers += [0] * (4 - len(numbers))
        return cls(*numbers, text=str(value).strip())

    @classmethod
    def try_parse(cls, value: Optional[str]) -> Optional["FirmwareVersion"]:
        try:
            return cls.parse(value)
        except ValueError:
            return None

    @property
    def major(self) -> int:
        return self.parts[0]

    @property
    def minor(self) -> int:
        return self.parts[1]

    @property
    def build(self) -> int:
        return self.parts[2]

    @property
    def revision(self) -> int:
        return self.parts[3]

    def __eq__(self, other) -> bool:
        if isinstance(other, str):
            other = FirmwareVersion.try_parse(other)
        if not isinstance(other, FirmwareVersion):
            return NotImplemented
        return self.parts == other.parts

    def __lt__(self, other) -> bool:
        if isinstance(other, str):
            other = FirmwareVersion.parse(other)
        if not isinstance(other, FirmwareVersion):
            return NotImplemented
        return self.parts < other.parts

    def __hash__(self) -> int:
        return hash(self.parts)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"FirmwareVersion({self.text!r})"


def latest(versions: Iterable[Union[str, FirmwareVersion]]) -> Optional[FirmwareVersion]:
    """Return the numerically greatest version, or None for an empty input."""
    parsed = [FirmwareVersion.parse(v) for v in versions]
    return max(parsed) if parsed else None


class PackageChannel(Enum):
    """Repository channel a package comes from. Selections are exclusive."""
    STABLE = "stable"
    PREVIEW = "preview"
    COMMUNITY = "community"

    @property
    def is_preview(self) -> bool:
        return self is PackageChannel.PREVIEW

    @classmethod
    def from_preview(cls, preview: bool) -> "PackageChannel":
        return cls.PREVIEW if preview else cls.STABLE


@dataclass(frozen=True)
class FirmwarePackageDescriptor:
    """
    Identity of one firmware package.

    Cache lookups compare (name, version) only; platform and channel are
    carried along for filtering.
    """
    name: str
    version: str
    platform: str = ""
    channel: PackageChannel = PackageChannel.STABLE

    def __post_init__(self):
        if not self.name:
            raise ValueError("Package name is required")
        FirmwareVersion.parse(self.version)

    @property
    def parsed_version(self) -> FirmwareVersion:
        return FirmwareVersion.parse(self.version)

    @property
    def cache_key(self) -> Tuple[str, FirmwareVersion]:
        return (self.name, self.parsed_version)

    @property
    def is_preview(self) -> bool:
        return self.channel.is_preview

    @property
    def file_stem(self) -> str:
        """'<name>-<version>' plus '-preview' for preview packages."""
        suffix = "-preview" if self.is_preview else ""
        return f"{self.name}-{self.version}{suffix}"

    def same_package(self, other: "FirmwarePackageDescriptor") -> bool:
        return self.cache_key == other.cache_key

    def __str__(self) -> str:
        return f"{self.name} {self.version}"
