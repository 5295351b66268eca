"""
Firmware archive.

An archive is a flat, user-controlled directory of firmware packages for
environments without repository access. Per package it holds the content
(`<name>-<version>.zip`, or a `<name>-<version>` directory for virtual
device runtimes) and a JSON sidecar next to it:

    {"Name": "ESP32_S3", "Version": "1.12.0.4", "Platform": "esp32", "IsPreview": false}

The directory is the index; nothing else is persisted. Listing and prune
decisions are pure functions over a snapshot of sidecars, and every file
mutation goes through FirmwareArchiveManager._apply_prune().
"""

import json
import logging
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from nano_firmware_flasher.core.errors import FlasherError
from nano_firmware_flasher.core.messages import ExitCode
from nano_firmware_flasher.core.output import NullSink, OutputSink, VerbosityLevel
from nano_firmware_flasher.models.registry import (
    VIRTUAL_DEVICE_RUNTIME_FILE,
    SupportedPlatform,
    is_virtual_device_target,
)

from .repository import RepositoryClient
from .versions import FirmwarePackageDescriptor, FirmwareVersion, PackageChannel

logger = logging.getLogger(__name__)

INFOFILE_EXTENSION = ".json"

PlatformFilter = Optional[Union[SupportedPlatform, str]]


@dataclass(frozen=True)
class ArchiveEntry:
    """One sidecar found in the archive."""
    sidecar: str
    name: str
    version: str
    platform: str = ""
    is_preview: bool = False

    @property
    def package_name(self) -> str:
        """File or directory name of the package content."""
        return self.sidecar[: -len(INFOFILE_EXTENSION)]

    @property
    def parsed_version(self) -> Optional[FirmwareVersion]:
        return FirmwareVersion.try_parse(self.version)

    @property
    def descriptor(self) -> FirmwarePackageDescriptor:
        return FirmwarePackageDescriptor(
            name=self.name,
            version=self.version,
            platform=self.platform,
            channel=PackageChannel.from_preview(self.is_preview),
        )

    def to_json(self) -> str:
        return json.dumps({
            "Name": self.name,
            "Version": self.version,
            "Platform": self.platform,
            "IsPreview": self.is_preview,
        })


def package_file_names(name: str, version: str, preview: bool) -> Tuple[str, str]:
    """(content name, sidecar name) for a package in the archive."""
    stem = f"{name}-{version}{'-preview' if preview else ''}"
    content = stem if is_virtual_device_target(name) else f"{stem}.zip"
    return content, content + INFOFILE_EXTENSION


def _platform_matches(entry_platform: str, platform: PlatformFilter) -> bool:
    if platform is None or platform == "":
        return True
    return str(platform).lower() == (entry_platform or "").lower()


# Pure decisions over a snapshot

def filter_entries(entries: Iterable[ArchiveEntry], preview: bool, platform: PlatformFilter = None) -> List[ArchiveEntry]:
    """Entries of the requested channel and platform, all versions."""
    return [
        e for e in entries
        if e.is_preview == preview and _platform_matches(e.platform, platform)
    ]


def latest_entry(entries: Iterable[ArchiveEntry], preview: bool, target: str) -> Optional[ArchiveEntry]:
    """Numerically newest entry of a target, or None."""
    best = None
    for entry in entries:
        if entry.name != target or entry.is_preview != preview:
            continue
        version = entry.parsed_version
        if version is None:
            continue
        if best is None or best.parsed_version < version:
            best = entry
    return best


def find_entry(entries: Iterable[ArchiveEntry], name: str, version: str, preview: bool) -> Optional[ArchiveEntry]:
    wanted = FirmwareVersion.try_parse(version)
    for entry in entries:
        if entry.name == name and entry.is_preview == preview and entry.parsed_version == wanted:
            return entry
    return None


def plan_prune(
    snapshot: Iterable[ArchiveEntry],
    kept: ArchiveEntry,
    keep_all_versions: bool = False,
) -> List[ArchiveEntry]:
    """
    Entries to delete after `kept` was successfully added.

    Only entries from `snapshot` (taken before the download started) are
    candidates, and only those of the same target name and channel.
    Entries of other targets are never selected.
    """
    if keep_all_versions:
        return []
    return [
        e for e in snapshot
        if e.name == kept.name
        and e.is_preview == kept.is_preview
        and e.sidecar != kept.sidecar
    ]


def select_remote_targets(
    packages: Iterable[FirmwarePackageDescriptor],
    target_name: Optional[str] = None,
    version: Optional[str] = None,
) -> Dict[str, FirmwarePackageDescriptor]:
    """Newest matching package per target name."""
    wanted = FirmwareVersion.parse(version) if version else None
    selected: Dict[str, FirmwarePackageDescriptor] = {}
    for package in packages:
        if target_name is not None and package.name != target_name:
            continue
        if wanted is not None and package.parsed_version != wanted:
            continue
        current = selected.get(package.name)
        if current is None or current.parsed_version < package.parsed_version:
            selected[package.name] = package
    return selected


def scan_archive(archive_path: Union[str, Path]) -> List[ArchiveEntry]:
    """
    Read every sidecar in the archive directory.

    Unreadable or malformed sidecars are skipped with a warning. A missing
    directory is an empty archive.
    """
    archive_path = Path(archive_path)
    if not archive_path.is_dir():
        return []

    entries = []
    for path in sorted(archive_path.glob(f"*{INFOFILE_EXTENSION}")):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            entries.append(ArchiveEntry(
                sidecar=path.name,
                name=data["Name"],
                version=data["Version"],
                platform=data.get("Platform") or "",
                is_preview=bool(data.get("IsPreview", False)),
            ))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable archive entry {path.name}: {e}")
    return entries


@dataclass
class TargetOutcome:
    """Result of adding one target to the archive."""
    name: str
    version: str
    exit_code: ExitCode = ExitCode.OK
    added: bool = False
    pruned: Tuple[str, ...] = ()
    error: str = ""


class FirmwareArchiveManager:
    """
    Manages an offline firmware archive directory.

    Args:
        archive_path: Archive directory; created on the first add
        client: Repository client used to fetch packages
        sink: Receiver of user-facing progress lines
    """

    def __init__(
        self,
        archive_path: Union[str, Path],
        client: Optional[RepositoryClient] = None,
        sink: Optional[OutputSink] = None,
    ):
        self.archive_path = Path(archive_path).expanduser().absolute()
        self.client = client
        self.sink = sink or NullSink()

    def scan(self) -> List[ArchiveEntry]:
        return scan_archive(self.archive_path)

    def get_target_list(
        self,
        preview: bool = False,
        platform: PlatformFilter = None,
        verbosity: VerbosityLevel = VerbosityLevel.NORMAL,
    ) -> List[FirmwarePackageDescriptor]:
        """All packages (every version) present in the archive for the channel/platform."""
        if verbosity > VerbosityLevel.NORMAL:
            label = f"{platform} " if platform else ""
            self.sink.write_line(f"Listing {label}targets from firmware archive '{self.archive_path}'...")
        return [e.descriptor for e in filter_entries(self.scan(), preview, platform)]

    def get_latest_version(self, preview: bool, target: str) -> Optional[FirmwarePackageDescriptor]:
        """Newest archived version of a target, or None when there is none."""
        if not target:
            return None
        entry = latest_entry(self.scan(), preview, target)
        return entry.descriptor if entry else None

    def package_path(self, descriptor: FirmwarePackageDescriptor) -> Path:
        content, _ = package_file_names(descriptor.name, descriptor.version, descriptor.is_preview)
        return self.archive_path / content

    def download_firmware_from_repository(
        self,
        preview: bool = False,
        platform: PlatformFilter = None,
        target_name: Optional[str] = None,
        version: Optional[str] = None,
        keep_all_versions: bool = False,
        verbosity: VerbosityLevel = VerbosityLevel.NORMAL,
        max_workers: int = 1,
    ) -> ExitCode:
        """
        Add packages from the repository to the archive.

        Adds a single target (pinned version or latest) or, without a target
        name, the latest version of every target of the platform. Each
        target is added then pruned on its own; a failing target keeps its
        old versions and does not stop or undo the others.

        Returns:
            ExitCode.OK, E9005 when nothing matched, otherwise the exit code
            of the last failing target.
        """
        if self.client is None:
            raise ValueError("A repository client is required to add packages to the archive")

        try:
            remote = self._find_remote_targets(preview, platform, target_name, version, verbosity)
        except FlasherError as e:
            self.sink.write_line(e.message, "red")
            return e.exit_code

        if not remote:
            if verbosity > VerbosityLevel.QUIET:
                self.sink.write_line("Couldn't find any matching target in the repository.", "red")
            return ExitCode.E9005

        # prune candidates are limited to what exists right now
        snapshot = self.scan()

        packages = [remote[name] for name in sorted(remote)]
        if max_workers > 1 and len(packages) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                outcomes = list(pool.map(
                    lambda p: self._add_target(p, platform, snapshot, keep_all_versions, verbosity),
                    packages,
                ))
        else:
            outcomes = [
                self._add_target(p, platform, snapshot, keep_all_versions, verbosity)
                for p in packages
            ]

        result = ExitCode.OK
        for outcome in outcomes:
            if outcome.exit_code != ExitCode.OK:
                result = outcome.exit_code
        return result

    def _find_remote_targets(
        self,
        preview: bool,
        platform: PlatformFilter,
        target_name: Optional[str],
        version: Optional[str],
        verbosity: VerbosityLevel,
    ) -> Dict[str, FirmwarePackageDescriptor]:
        if target_name:
            package = self.client.find_package(target_name, version, preview)
            descriptor = package.descriptor
            if platform and not descriptor.platform:
                descriptor = FirmwarePackageDescriptor(
                    descriptor.name, descriptor.version, str(platform), descriptor.channel
                )
            return {descriptor.name: descriptor}

        sources = [False] if preview else [False, True]
        listed: List[FirmwarePackageDescriptor] = []
        for community in sources:
            if verbosity > VerbosityLevel.NORMAL:
                label = "community" if community else ("preview" if preview else "stable")
                self.sink.write_line(f"Listing {platform or 'all'} targets from the {label} repository...")
            listed.extend(self.client.list_packages(community=community, preview=preview, platform=platform))
        return select_remote_targets(listed, None, version)

    def _add_target(
        self,
        package: FirmwarePackageDescriptor,
        platform: PlatformFilter,
        snapshot: Sequence[ArchiveEntry],
        keep_all_versions: bool,
        verbosity: VerbosityLevel,
    ) -> TargetOutcome:
        outcome = TargetOutcome(name=package.name, version=package.version)
        preview = package.is_preview
        content_name, sidecar_name = package_file_names(package.name, package.version, preview)
        content_path = self.archive_path / content_name

        existing = find_entry(snapshot, package.name, package.version, preview)
        if existing is not None and (self.archive_path / existing.package_name).exists():
            logger.debug(f"{package} already in the archive")
            kept = existing
        else:
            try:
                self.archive_path.mkdir(parents=True, exist_ok=True)
                if is_virtual_device_target(package.name):
                    content_path.mkdir(exist_ok=True)
                    self.client.download(package, content_path / VIRTUAL_DEVICE_RUNTIME_FILE)
                else:
                    self.client.download(package, content_path)

                kept = ArchiveEntry(
                    sidecar=sidecar_name,
                    name=package.name,
                    version=package.version,
                    platform=package.platform or (str(platform) if platform else ""),
                    is_preview=preview,
                )
                (self.archive_path / sidecar_name).write_text(kept.to_json(), encoding="utf-8")
            except (FlasherError, OSError) as e:
                outcome.exit_code = e.exit_code if isinstance(e, FlasherError) else ExitCode.E9006
                outcome.error = str(e)
                logger.error(f"Could not add {package} to the archive: {e}")
                if verbosity >= VerbosityLevel.NORMAL:
                    self.sink.write_line(f"Could not download target {package.name} {package.version}", "red")
                return outcome

            outcome.added = True
            if verbosity > VerbosityLevel.NORMAL:
                self.sink.write_line(f"Added target {package.name} {package.version} to the archive")

        to_delete = plan_prune(snapshot, kept, keep_all_versions)
        outcome.pruned = tuple(self._apply_prune(to_delete))
        return outcome

    def _apply_prune(self, entries: Iterable[ArchiveEntry]) -> List[str]:
        """
        Delete package content and sidecars. Failures are reported as
        warnings and never raised.
        """
        deleted = []
        for entry in entries:
            content = self.archive_path / entry.package_name
            try:
                if content.is_dir():
                    shutil.rmtree(content)
                elif content.exists():
                    content.unlink()
            except OSError as e:
                self.sink.write_line(f"Could not delete firmware package '{content.name}': {e}", "yellow")
                continue

            sidecar = self.archive_path / entry.sidecar
            try:
                if sidecar.exists():
                    sidecar.unlink()
            except OSError as e:
                self.sink.write_line(f"Could not delete info file '{sidecar.name}': {e}", "yellow")
                continue

            logger.info(f"Removed {entry.name} {entry.version} from the archive")
            deleted.append(entry.sidecar)
        return deleted
