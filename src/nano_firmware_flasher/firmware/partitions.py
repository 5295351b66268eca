"""
Flash partition layouts.

Maps the image files of an extracted package to absolute flash addresses
for a given chip family and flash size, and reads start addresses out of
the Intel HEX images shipped with STM32 / TI packages.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from nano_firmware_flasher.core.errors import ExtractionFailedError, UnsupportedFlashSizeError
from nano_firmware_flasher.models.registry import (
    MB,
    ChipFamily,
    flash_size_to_string,
    get_chip_family,
)

logger = logging.getLogger(__name__)

BOOTLOADER_FILE = "bootloader.bin"
RUNTIME_BIN_FILE = "nanoCLR.bin"
RUNTIME_HEX_FILE = "nanoCLR.hex"
BOOTLOADER_HEX_FILE = "nanoBooter.hex"


def partition_table_file_name(flash_size: int) -> str:
    """partitions_<size>.bin, size token lower-cased (0x400000 -> partitions_4mb.bin)."""
    return f"partitions_{flash_size_to_string(flash_size).lower()}.bin"


@dataclass
class PartitionLayout:
    """
    Flash address -> source file mapping for one chip and flash size.

    Attributes:
        chip_family: Name of the chip family the layout was built for
        flash_size: Flash size the layout targets, in bytes
        partitions: {address: file path}
        sizes: Optional known image sizes, used by the overlap check
    """
    chip_family: str
    flash_size: int
    partitions: Dict[int, Path] = field(default_factory=dict)
    sizes: Dict[int, int] = field(default_factory=dict)

    @property
    def addresses(self) -> List[int]:
        return sorted(self.partitions)

    def items(self) -> List[Tuple[int, Path]]:
        return sorted(self.partitions.items())

    def file_at(self, address: int) -> Optional[Path]:
        return self.partitions.get(address)

    def regions(self) -> List[Tuple[int, int]]:
        """
        (start, end) per partition, end exclusive.

        A partition without a known size extends to the next partition
        start, or to the end of flash for the last one.
        """
        addresses = self.addresses
        regions = []
        for index, start in enumerate(addresses):
            if start in self.sizes:
                end = start + self.sizes[start]
            elif index + 1 < len(addresses):
                end = addresses[index + 1]
            else:
                end = self.flash_size
            regions.append((start, end))
        return regions

    def validate(self) -> None:
        """
        Raises:
            ValueError: If two partitions overlap or one lies outside flash.
        """
        previous_end = 0
        previous_start = None
        for start, end in self.regions():
            if end > self.flash_size:
                raise ValueError(
                    f"Partition at 0x{start:X} ends at 0x{end:X}, beyond flash size 0x{self.flash_size:X}"
                )
            if previous_start is not None and start < previous_end:
                raise ValueError(
                    f"Partition at 0x{start:X} overlaps partition at 0x{previous_start:X}"
                )
            previous_start, previous_end = start, end

    def describe(self) -> List[str]:
        return [f"0x{address:08X}  {path.name}" for address, path in self.items()]


def effective_flash_size(flash_size: Optional[int], partition_table_size: Optional[int] = None) -> int:
    """The reported flash size, or the partition table override (in MB) when given."""
    if partition_table_size is not None:
        return partition_table_size * MB
    if flash_size is None:
        raise ValueError("A flash size or a partition table size is required")
    return flash_size


def compute_partition_layout(
    chip_type: str,
    flash_size: Optional[int],
    location: Union[str, Path],
    partition_table_size: Optional[int] = None,
) -> PartitionLayout:
    """
    Build the layout for an ESP32-family chip.

    Args:
        chip_type: Chip sub-variant as reported by the device ("ESP32-C3")
        flash_size: Reported flash size in bytes
        location: Directory the package was extracted to
        partition_table_size: Optional override of the flash size, in MB

    Raises:
        UnsupportedFlashSizeError: Flash size not in the family table. The
            payload lists the supported sizes; no partial layout is returned.
    """
    family = get_chip_family(chip_type)
    if family is None or not family.supported_flash_sizes:
        raise ValueError(f"No partition layout known for chip '{chip_type}'")

    size = effective_flash_size(flash_size, partition_table_size)
    check_flash_size(family, size)

    location = Path(location)
    layout = PartitionLayout(chip_family=family.name, flash_size=size)
    layout.partitions[family.bootloader_address] = location / BOOTLOADER_FILE
    layout.partitions[family.partition_table_address] = location / partition_table_file_name(size)
    layout.partitions[family.runtime_address] = location / RUNTIME_BIN_FILE
    layout.validate()

    logger.debug(f"Partition layout for {family.name} {flash_size_to_string(size)}: {layout.describe()}")
    return layout


def check_flash_size(family: ChipFamily, flash_size: int) -> None:
    if flash_size not in family.supported_flash_sizes:
        supported = family.supported_flash_sizes_text
        raise UnsupportedFlashSizeError(
            f"There is no firmware available for {family.name} with "
            f"{flash_size_to_string(flash_size)} flash size. "
            f"Only the following flash sizes are supported: {', '.join(supported)}",
            payload={"supported_flash_sizes": supported},
        )


def find_start_address_in_hex_file(hex_file: Union[str, Path]) -> int:
    """
    Read the start address of an Intel HEX image.

    The image either opens with an extended linear address record
    (":02000004HHHH..") whose offset is combined with the address of the
    following data record, or directly with a 16-byte data record.

    Raises:
        ExtractionFailedError: The file is missing or does not start with
            one of the expected records.
    """
    hex_file = Path(hex_file)
    try:
        with open(hex_file, "r", encoding="ascii") as f:
            first = f.readline().strip()
            second = f.readline().strip()
    except (OSError, UnicodeDecodeError) as e:
        raise ExtractionFailedError(f"Can't read {hex_file.name}: {e}", payload={"error_text": str(e)})

    try:
        if first.startswith(":02000004"):
            upper = int(first[9:13], 16)
            lower = int(second[3:7], 16)
            return (upper << 16) | lower
        if first.startswith(":10") and len(first) == 43:
            return int(first[3:7], 16)
    except ValueError:
        pass

    raise ExtractionFailedError(f"Can't find start address in {hex_file.name}")
