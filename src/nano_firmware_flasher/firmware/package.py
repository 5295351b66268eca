"""
Firmware package resolver.

Turns (target, version or latest, channel) into an extracted package in the
local cache, plus the flash address bindings of its images.

Cache layout:

    <cache>/README.txt
    <cache>/<target>/<target>-<version>[-preview].zip
    <cache>/<target>/.extracted            # stem of the zip extracted last
    <cache>/<target>/nanoCLR.bin ...       # contents of that zip

Virtual device runtimes are a single DLL kept in
<cache>/<target>/<target>-<version>[-preview]/.
"""

import logging
import shutil
import time
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from nano_firmware_flasher.core.errors import (
    CacheUnavailableError,
    DownloadFailedError,
    ExtractionFailedError,
    PackageNotFoundError,
)
from nano_firmware_flasher.core.messages import ExitCode
from nano_firmware_flasher.core.output import NullSink, OutputSink, VerbosityLevel
from nano_firmware_flasher.models.registry import (
    VIRTUAL_DEVICE_RUNTIME_FILE,
    SupportedPlatform,
    get_chip_family,
    is_virtual_device_target,
    platform_from_string,
)
from nano_firmware_flasher.protocol.transport import DeviceInfo

from .archive import FirmwareArchiveManager, package_file_names
from .partitions import (
    BOOTLOADER_HEX_FILE,
    RUNTIME_BIN_FILE,
    RUNTIME_HEX_FILE,
    PartitionLayout,
    check_flash_size,
    compute_partition_layout,
    effective_flash_size,
    find_start_address_in_hex_file,
)
from .repository import RepositoryClient
from .versions import FirmwarePackageDescriptor, FirmwareVersion, PackageChannel

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PATH = Path.home() / ".nanoFramework" / "fw_cache"
README_FILE = "README.txt"
README_CONTENT = "This folder contains nanoFramework firmware files. Can safely be removed."
EXTRACTED_MARKER = ".extracted"
# other package zips of a target are removed once older than this
STALE_PACKAGE_AGE = 30 * 24 * 3600

# image files left over from a previous extraction
_IMAGE_SUFFIXES = (".bin", ".hex", ".s19", ".dfu", ".csv")

ESP32_RUNTIME_ADDRESS = 0x10000


@dataclass
class CachedFirmwareArtifact:
    """
    A package present and extracted in the cache.

    Attributes:
        descriptor: Package identity
        location: Directory holding the extracted images
        package_file: The archive (or DLL) as downloaded
        bindings: {flash address: image file}
        retrieved_at: When the package file was fetched
        from_cache: True when nothing had to be downloaded
        layout: Partition layout, ESP32 packages with a known flash size
        runtime_file: Runtime image to write through the bootloader
        runtime_start_address: Address the package's runtime is linked at
        bootloader_start_address: Address the package's bootloader is linked at
    """
    descriptor: FirmwarePackageDescriptor
    location: Path
    package_file: Path
    bindings: Dict[int, Path] = field(default_factory=dict)
    retrieved_at: datetime = field(default_factory=datetime.now)
    from_cache: bool = False
    layout: Optional[PartitionLayout] = None
    runtime_file: Optional[Path] = None
    runtime_start_address: Optional[int] = None
    bootloader_start_address: Optional[int] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def version(self) -> str:
        return self.descriptor.version


class FirmwarePackageResolver:
    """
    Resolves, downloads and extracts firmware packages.

    Args:
        cache_path: Cache root (default ~/.nanoFramework/fw_cache)
        client: Repository client; required unless every resolve comes
            from the cache or an archive
        sink: Receiver of user-facing progress lines
        verbosity: Amount of progress output
    """

    def __init__(
        self,
        cache_path: Optional[Union[str, Path]] = None,
        client: Optional[RepositoryClient] = None,
        sink: Optional[OutputSink] = None,
        verbosity: VerbosityLevel = VerbosityLevel.NORMAL,
    ):
        self.cache_path = Path(cache_path).expanduser() if cache_path else DEFAULT_CACHE_PATH
        self.client = client
        self.sink = sink or NullSink()
        self.verbosity = verbosity

    def _say(self, level: VerbosityLevel, text: str, style: Optional[str] = None) -> None:
        if self.verbosity >= level:
            self.sink.write_line(text, style)

    # Cache locations

    def target_directory(self, target_name: str) -> Path:
        """Create (if needed) and return the cache directory of a target."""
        try:
            self.cache_path.mkdir(parents=True, exist_ok=True)
            readme = self.cache_path / README_FILE
            if not readme.exists():
                readme.write_text(README_CONTENT, encoding="utf-8")
            target_dir = self.cache_path / target_name
            target_dir.mkdir(exist_ok=True)
        except OSError as e:
            raise CacheUnavailableError(
                f"Can't create cache location {self.cache_path}: {e}",
                payload={"error_text": str(e)},
            )
        return target_dir

    @staticmethod
    def _package_path(target_dir: Path, name: str, version: str, preview: bool) -> Path:
        content, _ = package_file_names(name, version, preview)
        if is_virtual_device_target(name):
            return target_dir / content / VIRTUAL_DEVICE_RUNTIME_FILE
        return target_dir / content

    def cached_versions(self, target_name: str, preview: bool = False) -> List[FirmwareVersion]:
        """Versions of a target whose package file is in the cache, newest first."""
        target_dir = self.cache_path / target_name
        if not target_dir.is_dir():
            return []
        prefix = f"{target_name}-"
        versions = []
        for path in target_dir.iterdir():
            if not path.name.startswith(prefix):
                continue
            if is_virtual_device_target(target_name):
                if not (path / VIRTUAL_DEVICE_RUNTIME_FILE).is_file():
                    continue
                stem = path.name
            else:
                if path.suffix != ".zip":
                    continue
                stem = path.stem
            text = stem[len(prefix):]
            if text.endswith("-preview") != preview:
                continue
            version = FirmwareVersion.try_parse(text[: -len("-preview")] if preview else text)
            if version is not None:
                versions.append(version)
        return sorted(versions, reverse=True)

    @staticmethod
    def _is_extracted(target_dir: Path, package_file: Path) -> bool:
        marker = target_dir / EXTRACTED_MARKER
        try:
            return marker.read_text(encoding="utf-8").strip() == package_file.name
        except OSError:
            return False

    def is_cached(self, target_name: str, version: str, preview: bool = False) -> bool:
        """Package file present and (for zips) extracted."""
        target_dir = self.cache_path / target_name
        package_file = self._package_path(target_dir, target_name, version, preview)
        if not package_file.is_file():
            return False
        return is_virtual_device_target(target_name) or self._is_extracted(target_dir, package_file)

    # Resolution

    def resolve(
        self,
        target_name: str,
        version: Optional[str] = None,
        channel: PackageChannel = PackageChannel.STABLE,
        device_info: Optional[DeviceInfo] = None,
        partition_table_size: Optional[int] = None,
        archive_directory: Optional[Union[str, Path]] = None,
    ) -> CachedFirmwareArtifact:
        """
        Make a package available in the cache and bind its images to addresses.

        Args:
            target_name: Target the package is built for
            version: Exact version; None for the newest in the channel
            channel: STABLE, PREVIEW or COMMUNITY
            device_info: Connected device details; ESP32 flash size and chip
                type select the partition layout
            partition_table_size: ESP32 flash size override in MB
            archive_directory: Take the package from this archive only,
                never from the repository

        Raises:
            PackageNotFoundError, DownloadFailedError, ExtractionFailedError,
            CacheUnavailableError, UnsupportedFlashSizeError
        """
        if not target_name:
            raise ValueError("target_name is required")
        if version is not None:
            FirmwareVersion.parse(version)

        self._check_flash_size(target_name, device_info, partition_table_size)

        preview = channel.is_preview
        target_dir = self.target_directory(target_name)

        if archive_directory is not None:
            descriptor, package_file, from_cache = self._from_archive(
                target_dir, target_name, version, preview, Path(archive_directory)
            )
        elif version is not None and self._package_path(target_dir, target_name, version, preview).is_file():
            descriptor = FirmwarePackageDescriptor(target_name, version, "", channel)
            package_file = self._package_path(target_dir, target_name, version, preview)
            from_cache = True
            logger.info(f"Cache hit for {descriptor}")
        else:
            descriptor, package_file, from_cache = self._from_repository(
                target_dir, target_name, version, preview
            )

        location = package_file.parent
        if package_file.suffix == ".zip":
            location = target_dir
            if not self._is_extracted(target_dir, package_file):
                self._extract(target_dir, package_file)

        if not from_cache:
            self._remove_stale_packages(target_dir, package_file)

        artifact = CachedFirmwareArtifact(
            descriptor=descriptor,
            location=location,
            package_file=package_file,
            retrieved_at=datetime.fromtimestamp(package_file.stat().st_mtime),
            from_cache=from_cache,
        )
        self._bind_images(artifact, device_info, partition_table_size)
        return artifact

    def _check_flash_size(
        self,
        target_name: str,
        device_info: Optional[DeviceInfo],
        partition_table_size: Optional[int],
    ) -> None:
        """Reject an unsupported ESP32 flash size before any package is fetched."""
        if is_virtual_device_target(target_name):
            return
        if _target_platform(target_name, None, device_info) != SupportedPlatform.ESP32:
            return
        flash_size = device_info.flash_size if device_info else None
        if not flash_size and not partition_table_size:
            return
        family = get_chip_family((device_info.chip_type if device_info else None) or "ESP32")
        if family is not None and family.supported_flash_sizes:
            check_flash_size(family, effective_flash_size(flash_size, partition_table_size))

    def _from_archive(self, target_dir: Path, target_name: str, version: Optional[str], preview: bool, archive_directory: Path):
        archive = FirmwareArchiveManager(archive_directory)
        if version is None:
            latest = archive.get_latest_version(preview, target_name)
            if latest is None:
                raise PackageNotFoundError(
                    f"{target_name} is not present in the firmware archive '{archive_directory}'.",
                    exit_code=ExitCode.E9015,
                )
            descriptor = latest
        else:
            descriptor = FirmwarePackageDescriptor(
                target_name, version, "", PackageChannel.from_preview(preview)
            )

        source = archive.package_path(descriptor)
        if not source.exists():
            raise PackageNotFoundError(
                f"{descriptor} is not present in the firmware archive '{archive_directory}'.",
                exit_code=ExitCode.E9015,
            )

        package_file = self._package_path(target_dir, target_name, descriptor.version, preview)
        if package_file.exists():
            return descriptor, package_file, True
        try:
            if source.is_dir():
                shutil.copytree(source, package_file.parent)
            else:
                shutil.copy2(source, package_file)
        except OSError as e:
            raise CacheUnavailableError(f"Can't copy {source.name} into the cache: {e}", payload={"error_text": str(e)})
        logger.info(f"Copied {descriptor} from the archive")
        return descriptor, package_file, False

    def _from_repository(self, target_dir: Path, target_name: str, version: Optional[str], preview: bool):
        if self.client is None:
            raise DownloadFailedError(f"No repository configured to download {target_name}")

        try:
            self._say(VerbosityLevel.DETAILED, f"Looking up {target_name} {version or '(latest)'}...")
            remote = self.client.find_package(target_name, version, preview)
            descriptor = remote.descriptor
            package_file = self._package_path(target_dir, target_name, descriptor.version, preview)
            if package_file.is_file():
                logger.info(f"{descriptor} already downloaded")
                return descriptor, package_file, True

            package_file.parent.mkdir(parents=True, exist_ok=True)
            self._say(VerbosityLevel.NORMAL, f"Downloading firmware package {descriptor}...")
            self.client.download(remote, package_file)
            self._say(VerbosityLevel.NORMAL, "OK", "green")
            return descriptor, package_file, False
        except DownloadFailedError as e:
            cached = self.cached_versions(target_name, preview) if version is None else []
            if not cached:
                self._say(VerbosityLevel.MINIMAL, "Failure to download package and couldn't find one in the cache.", "red")
                raise
            fallback = str(cached[0])
            logger.warning(f"Download failed ({e.message}), using cached {target_name} {fallback}")
            if self.verbosity > VerbosityLevel.DETAILED:
                self.sink.write_line("Using cached firmware package", "yellow")
            descriptor = FirmwarePackageDescriptor(target_name, fallback, "", PackageChannel.from_preview(preview))
            return descriptor, self._package_path(target_dir, target_name, fallback, preview), True

    def _extract(self, target_dir: Path, package_file: Path) -> None:
        self._say(VerbosityLevel.NORMAL, f"Extracting {package_file.name}...")
        marker = target_dir / EXTRACTED_MARKER
        try:
            if marker.exists():
                marker.unlink()
            for leftover in target_dir.iterdir():
                if leftover.is_file() and leftover.suffix.lower() in _IMAGE_SUFFIXES:
                    leftover.unlink()
            with zipfile.ZipFile(package_file) as archive:
                archive.extractall(target_dir)
            marker.write_text(package_file.name, encoding="utf-8")
        except zipfile.BadZipFile as e:
            raise ExtractionFailedError(
                f"Can't extract {package_file.name}: {e}",
                payload={"error_text": str(e)},
            )
        except OSError as e:
            raise CacheUnavailableError(
                f"Can't extract {package_file.name} into {target_dir}: {e}",
                payload={"error_text": str(e)},
            )
        self._say(VerbosityLevel.NORMAL, "OK", "green")

    def _remove_stale_packages(self, target_dir: Path, keep: Path) -> None:
        cutoff = time.time() - STALE_PACKAGE_AGE
        for path in target_dir.iterdir():
            if path == keep or not path.is_file() or path.suffix != keep.suffix:
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    logger.info(f"Removed stale package {path.name}")
            except OSError as e:
                logger.warning(f"Could not remove stale package {path.name}: {e}")

    def _bind_images(
        self,
        artifact: CachedFirmwareArtifact,
        device_info: Optional[DeviceInfo],
        partition_table_size: Optional[int],
    ) -> None:
        location = artifact.location
        platform = _target_platform(artifact.name, artifact.descriptor.platform, device_info)

        if is_virtual_device_target(artifact.name):
            artifact.runtime_file = artifact.package_file
            return

        if platform == SupportedPlatform.ESP32:
            artifact.runtime_file = location / RUNTIME_BIN_FILE
            artifact.runtime_start_address = ESP32_RUNTIME_ADDRESS
            flash_size = device_info.flash_size if device_info else None
            if flash_size or partition_table_size:
                chip_type = (device_info.chip_type if device_info else None) or "ESP32"
                layout = compute_partition_layout(chip_type, flash_size, location, partition_table_size)
                artifact.layout = layout
                artifact.bindings = dict(layout.partitions)
                artifact.bootloader_start_address = get_chip_family(chip_type).bootloader_address
            else:
                artifact.bindings = {ESP32_RUNTIME_ADDRESS: artifact.runtime_file}
            return

        runtime_hex = location / RUNTIME_HEX_FILE
        booter_hex = location / BOOTLOADER_HEX_FILE
        if runtime_hex.is_file():
            artifact.runtime_start_address = find_start_address_in_hex_file(runtime_hex)
        if booter_hex.is_file():
            artifact.bootloader_start_address = find_start_address_in_hex_file(booter_hex)

        runtime_bin = location / RUNTIME_BIN_FILE
        artifact.runtime_file = runtime_bin if runtime_bin.is_file() else (runtime_hex if runtime_hex.is_file() else None)
        if artifact.runtime_file is not None and artifact.runtime_start_address is not None:
            artifact.bindings[artifact.runtime_start_address] = artifact.runtime_file
        if booter_hex.is_file() and artifact.bootloader_start_address is not None:
            artifact.bindings[artifact.bootloader_start_address] = booter_hex

    def clear_cache(self) -> ExitCode:
        """Remove the whole cache location."""
        if not self.cache_path.exists():
            return ExitCode.OK
        try:
            shutil.rmtree(self.cache_path)
        except OSError as e:
            raise CacheUnavailableError(
                f"Can't clear cache location {self.cache_path}: {e}",
                payload={"error_text": str(e)},
                exit_code=ExitCode.E9014,
            )
        logger.info(f"Cleared cache location {self.cache_path}")
        return ExitCode.OK


def _target_platform(
    target_name: str, package_platform: Optional[str], device_info: Optional[DeviceInfo]
) -> Optional[SupportedPlatform]:
    for value in (package_platform, device_info.platform if device_info else None):
        try:
            platform = platform_from_string(value)
        except ValueError:
            platform = None
        if platform is not None:
            return platform
    if target_name.upper().startswith("ESP32"):
        return SupportedPlatform.ESP32
    return None
