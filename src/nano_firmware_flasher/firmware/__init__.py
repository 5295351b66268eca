"""Firmware packages - versions, repository client, cache, archive and partition layouts."""

from .versions import (
    FirmwareVersion,
    PackageChannel,
    FirmwarePackageDescriptor,
    latest,
)
from .partitions import (
    PartitionLayout,
    compute_partition_layout,
    find_start_address_in_hex_file,
)
from .repository import RepositoryClient, RemotePackage
from .archive import ArchiveEntry, FirmwareArchiveManager
from .package import CachedFirmwareArtifact, FirmwarePackageResolver
from .flash_tool import VendorFlashTool, EspTool

__all__ = [
    "FirmwareVersion",
    "PackageChannel",
    "FirmwarePackageDescriptor",
    "latest",
    "PartitionLayout",
    "compute_partition_layout",
    "find_start_address_in_hex_file",
    "RepositoryClient",
    "RemotePackage",
    "ArchiveEntry",
    "FirmwareArchiveManager",
    "CachedFirmwareArtifact",
    "FirmwarePackageResolver",
    "VendorFlashTool",
    "EspTool",
]
