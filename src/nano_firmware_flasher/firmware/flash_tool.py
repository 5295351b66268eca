"""
Vendor flashing tool adapters.

A VendorFlashTool writes a computed PartitionLayout to a chip. Only the
esptool adapter ships here; it runs esptool as a subprocess and maps its
outcome to an ExitCode. Output parsing is limited to keeping the tail of
the tool's text for error reports.
"""

import logging
import shutil
import subprocess
from typing import List, Optional, Sequence

from nano_firmware_flasher.core.messages import ExitCode
from nano_firmware_flasher.models.registry import flash_size_to_string

from .partitions import PartitionLayout

logger = logging.getLogger(__name__)


class VendorFlashTool:
    """Writes a partition layout to a chip."""

    name = "vendor tool"

    def __init__(self) -> None:
        self.last_output = ""

    def flash(self, layout: PartitionLayout) -> ExitCode:
        raise NotImplementedError


class EspTool(VendorFlashTool):
    """
    esptool adapter.

    Args:
        port: Serial port the ESP32 is attached to
        chip: Chip type passed to --chip ("auto" lets esptool detect it)
        baud: Baud rate for the transfer
        executable: esptool command; found on PATH when omitted
        hard_reset: Reset the chip once the write completes
    """

    name = "esptool"

    def __init__(
        self,
        port: str,
        chip: str = "auto",
        baud: int = 921600,
        executable: Optional[Sequence[str]] = None,
        hard_reset: bool = True,
    ):
        super().__init__()
        self.port = port
        self.chip = chip
        self.baud = baud
        self.executable = list(executable) if executable else self._find_executable()
        self.hard_reset = hard_reset

    @staticmethod
    def _find_executable() -> List[str]:
        for candidate in ("esptool", "esptool.py"):
            path = shutil.which(candidate)
            if path:
                return [path]
        return ["esptool"]

    def build_command(self, layout: PartitionLayout) -> List[str]:
        chip = self.chip.lower().replace("-", "")
        command = list(self.executable) + [
            "--port", self.port,
            "--baud", str(self.baud),
            "--chip", chip,
            "--after", "hard_reset" if self.hard_reset else "no_reset",
            "write_flash",
            "--flash_size", flash_size_to_string(layout.flash_size),
        ]
        for address, path in layout.items():
            command += [f"0x{address:X}", str(path)]
        return command

    def flash(self, layout: PartitionLayout) -> ExitCode:
        """
        Run write_flash for every partition of the layout.

        Returns:
            ExitCode.OK, E4000 when esptool can't be started, E4003 when
            the write fails. The tool's text is kept in last_output.
        """
        missing = [str(path) for _, path in layout.items() if not path.is_file()]
        if missing:
            self.last_output = f"Missing image files: {', '.join(missing)}"
            logger.error(self.last_output)
            return ExitCode.E4003

        command = self.build_command(layout)
        logger.debug(f"Running command: {' '.join(command)}")
        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as e:
            self.last_output = str(e)
            logger.error(f"Error starting {self.name}: {e}")
            return ExitCode.E4000

        self.last_output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            logger.error(f"{self.name} exited with {result.returncode}")
            return ExitCode.E4003
        return ExitCode.OK
