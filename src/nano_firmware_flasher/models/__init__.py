"""
Chip family registry for nano firmware flasher.

Provides a unified layer for platform codes and chip flash data.
"""

from .registry import (
    ChipFamily,
    SupportedPlatform,
    ESP32_FLASH_SIZES,
    ESP32_BOOTLOADER_ADDRESSES,
    VIRTUAL_DEVICE_TARGETS,
    VIRTUAL_DEVICE_RUNTIME_FILE,
    flash_size_to_string,
    get_chip_family,
    platform_from_string,
    is_virtual_device_target,
)

__all__ = [
    "ChipFamily",
    "SupportedPlatform",
    "ESP32_FLASH_SIZES",
    "ESP32_BOOTLOADER_ADDRESSES",
    "VIRTUAL_DEVICE_TARGETS",
    "VIRTUAL_DEVICE_RUNTIME_FILE",
    "flash_size_to_string",
    "get_chip_family",
    "platform_from_string",
    "is_virtual_device_target",
]
