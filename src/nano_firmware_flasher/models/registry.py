"""
Chip family registry.

Provides a single source of truth for:
- Supported platforms (as tagged in the package repository)
- Chip family flash data (supported flash sizes, partition addresses)
- Bootloader load address per chip sub-variant

Usage:
    from nano_firmware_flasher.models import get_chip_family, platform_from_string

    family = get_chip_family("ESP32-C3")
    family.bootloader_address   # 0x0

Chip data is kept in tables so a new variant is a registration, not a code
change.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

MB = 0x100000


class SupportedPlatform(Enum):
    """Platform codes used to tag packages in the repository."""
    ESP32 = "esp32"
    STM32 = "stm32"
    TI_SIMPLELINK = "ti_simplelink"
    GG11 = "gg11"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ChipFamily:
    """Flash layout data for one chip sub-variant."""
    name: str
    platform: SupportedPlatform
    supported_flash_sizes: Tuple[int, ...] = ()
    bootloader_address: int = 0x1000
    runtime_address: int = 0x10000
    partition_table_address: int = 0x8000
    deployment_address: int = 0x1B0000
    notes: List[str] = field(default_factory=list, compare=False, hash=False)

    @property
    def supported_flash_sizes_text(self) -> List[str]:
        """Human readable supported sizes ("2MB", "4MB", ...)."""
        return [flash_size_to_string(size) for size in self.supported_flash_sizes]


def flash_size_to_string(size: int) -> str:
    """Format a flash size in bytes the way partition table files are named."""
    if size >= MB and size % MB == 0:
        return f"{size // MB}MB"
    return f"{size // 0x400}kB"


# ESP32 runtime images are built for these flash sizes
ESP32_FLASH_SIZES = (2 * MB, 4 * MB, 8 * MB, 16 * MB, 32 * MB, 64 * MB)

# Bootloader load address per ESP32 sub-variant; anything not listed loads at 0x1000
ESP32_BOOTLOADER_ADDRESSES: Dict[str, int] = {
    "ESP32-C3": 0x0,
    "ESP32-C6": 0x0,
    "ESP32-H2": 0x0,
    "ESP32-S3": 0x0,
    "ESP32-P4": 0x2000,
}

# Virtual device runtimes are shipped as a directory with the runtime DLL
VIRTUAL_DEVICE_TARGETS = ("WIN_DLL_nanoCLR", "WIN32_nanoCLR")
VIRTUAL_DEVICE_RUNTIME_FILE = "nanoFramework.nanoCLR.dll"

_REGISTRY: Dict[str, ChipFamily] = {}


def _register_family(family: ChipFamily) -> None:
    """Register a chip family in the global registry."""
    _REGISTRY[family.name.upper()] = family


def _init_registry() -> None:
    """Initialize the registry with known chip families."""
    for name in ("ESP32", "ESP32-S2", "ESP32-S3", "ESP32-C3", "ESP32-C6", "ESP32-H2", "ESP32-P4"):
        _register_family(ChipFamily(
            name=name,
            platform=SupportedPlatform.ESP32,
            supported_flash_sizes=ESP32_FLASH_SIZES,
            bootloader_address=ESP32_BOOTLOADER_ADDRESSES.get(name, 0x1000),
        ))

    # Runtime/bootloader addresses for these come from the HEX files in the package
    _register_family(ChipFamily(
        name="STM32",
        platform=SupportedPlatform.STM32,
        bootloader_address=0x08000000,
        runtime_address=0,
        partition_table_address=0,
        deployment_address=0,
        notes=["Runtime address read from nanoCLR.hex"],
    ))
    _register_family(ChipFamily(
        name="CC13X2",
        platform=SupportedPlatform.TI_SIMPLELINK,
        bootloader_address=0,
        runtime_address=0,
        partition_table_address=0,
        deployment_address=0,
        notes=["Flashed with TI Uniflash"],
    ))
    _register_family(ChipFamily(
        name="GGECKO_S1",
        platform=SupportedPlatform.GG11,
        bootloader_address=0,
        runtime_address=0,
        partition_table_address=0,
        deployment_address=0,
        notes=["Flashed with J-Link"],
    ))


_init_registry()


def get_chip_family(name: str) -> Optional[ChipFamily]:
    """
    Get a chip family by name (case-insensitive).

    Unknown ESP32 sub-variants resolve to the base ESP32 entry.
    """
    if not name:
        return None
    key = name.strip().upper()
    if key in _REGISTRY:
        return _REGISTRY[key]
    if key.startswith("ESP32"):
        return _REGISTRY["ESP32"]
    return None


def platform_from_string(value: Optional[str]) -> Optional[SupportedPlatform]:
    """
    Parse a platform code.

    Accepts repository platform codes ("esp32", "ti_simplelink") and the
    platform names devices report ("ESP32", "STM32", "TI_SL_CC1352", "GGECKO_S1").

    Raises:
        ValueError: If the value is not a known platform.
    """
    if value is None:
        return None
    text = value.strip().lower()
    if not text:
        return None
    for platform in SupportedPlatform:
        if text == platform.value:
            return platform
    if text.startswith("esp32"):
        return SupportedPlatform.ESP32
    if text.startswith("stm32"):
        return SupportedPlatform.STM32
    if text.startswith("ti") or text.startswith("cc13") or text.startswith("cc26"):
        return SupportedPlatform.TI_SIMPLELINK
    if text.startswith("ggecko") or text.startswith("gg11"):
        return SupportedPlatform.GG11
    valid = ", ".join(p.value for p in SupportedPlatform)
    raise ValueError(f"Unsupported platform '{value}'. Valid options are: {valid}")


def is_virtual_device_target(target_name: str) -> bool:
    """Check whether the target is a virtual device runtime."""
    return target_name in VIRTUAL_DEVICE_TARGETS
