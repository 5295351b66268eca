"""
Centralized parsing helpers for addresses, flash sizes and platforms.

Both the CLI and library callers import these helpers rather than
re-implement them.
"""

from typing import Optional

from nano_firmware_flasher.models.registry import (
    MB,
    SupportedPlatform,
    platform_from_string,
)

# Partition table sizes that can override the reported ESP32 flash size
PARTITION_TABLE_SIZES = (2, 4, 8, 16)


def parse_address(value: Optional[str]) -> Optional[int]:
    """
    Parse a flash address from string, supporting multiple formats.

    Accepts:
        - Decimal: "65536"
        - Hex with 0x prefix: "0x10000" or "0X10000"
        - Hex with h suffix: "10000h" or "10000H"
        - None for "use the address reported by the device"

    Returns:
        Parsed integer address, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            address = int(value, 16)
        elif value.lower().endswith("h"):
            address = int(value[:-1], 16)
        else:
            address = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid address '{value}'. Use decimal (65536), hex (0x10000), or suffix (10000h)."
        )
    if address < 0:
        raise ValueError(f"Invalid address '{value}'. Addresses can't be negative.")
    return address


def parse_flash_size(value: Optional[str]) -> Optional[int]:
    """
    Parse a flash size into bytes.

    Accepts "4MB", "4mb", "512kB", "0x400000" or a plain byte count.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if value is None:
        return None
    text = value.strip().lower()
    if not text:
        return None
    try:
        if text.endswith("mb"):
            return int(text[:-2]) * MB
        if text.endswith("kb"):
            return int(text[:-2]) * 0x400
        return parse_address(text)
    except ValueError:
        raise ValueError(f"Invalid flash size '{value}'. Use e.g. 4MB, 512kB or 0x400000.")


def parse_partition_table_size(value: Optional[int]) -> Optional[int]:
    """
    Validate a partition table size override (in MB).

    Returns:
        The size in MB, or None when no override was given.

    Raises:
        ValueError: If the size is not one of PARTITION_TABLE_SIZES.
    """
    if value is None:
        return None
    if value not in PARTITION_TABLE_SIZES:
        valid = ", ".join(str(s) for s in PARTITION_TABLE_SIZES)
        raise ValueError(f"Invalid partition table size {value}. Valid options are: {valid}")
    return value


def parse_platform(value: Optional[str]) -> Optional[SupportedPlatform]:
    """Parse a platform code; None or empty means "any platform"."""
    return platform_from_string(value)
