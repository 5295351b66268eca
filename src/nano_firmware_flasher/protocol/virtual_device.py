"""
Virtual device session.

An in-memory stand-in for a nano device. It backs the virtual/debug target
and lets the bring-up controller and update orchestrator run without
hardware. Behaviour is scripted through constructor arguments:

- connect_failures: how many connect attempts fail before one succeeds
  (None: never connects)
- initializing_cycles: how many initialize-state probes answer True before
  the device reports steady state (None: never leaves initialization)
- firmware_kind: what is running after connect
- can_enter_bootloader: whether a software reboot to the bootloader works

Every request is appended to `calls` so tests can assert on the sequence.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from .transport import (
    DeviceInfo,
    FirmwareKind,
    RebootMode,
    TransportIOError,
    TransportNotConnected,
    TransportSession,
)

logger = logging.getLogger(__name__)


class VirtualDeviceSession(TransportSession):
    """Simulated device reachable through the TransportSession interface."""

    def __init__(
        self,
        endpoint: str = "virtual://0",
        device_info: Optional[DeviceInfo] = None,
        firmware_kind: FirmwareKind = FirmwareKind.RUNTIME,
        connect_failures: Optional[int] = 0,
        initializing_cycles: Optional[int] = 0,
        can_enter_bootloader: bool = True,
        write_succeeds: bool = True,
        runtime_start_address: int = 0x10000,
        deployment_start_address: int = 0x1B0000,
        probe_error: Optional[Exception] = None,
    ):
        super().__init__(endpoint=endpoint)
        self.device_info = device_info or DeviceInfo(
            target_name="VIRTUAL_DEVICE",
            platform="ESP32",
            runtime_version="1.0.0.0",
            bootloader_version="1.0.0.0",
            flash_size=0x400000,
            chip_type="ESP32",
        )
        self.firmware_kind = firmware_kind
        self.connect_failures = connect_failures
        self.initializing_cycles = initializing_cycles
        self.can_enter_bootloader = can_enter_bootloader
        self.write_succeeds = write_succeeds
        self.runtime_start_address = runtime_start_address
        self.deployment_start_address = deployment_start_address
        self.probe_error = probe_error

        self.connect_attempts = 0
        self.initialize_probes = 0
        self.flash: Dict[int, bytes] = {}
        self.calls: List[str] = []

    def _require_connection(self) -> None:
        if not self.connected:
            raise TransportNotConnected(f"{self.endpoint} is not connected")

    def connect(self, timeout: float = 5.0) -> bool:
        self.calls.append("connect")
        self.connect_attempts += 1
        if self.connect_failures is None or self.connect_attempts <= self.connect_failures:
            logger.debug(f"{self.endpoint}: connect attempt {self.connect_attempts} failed")
            return False
        self.connected = True
        return True

    def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.connected = False

    def ping(self) -> Optional[FirmwareKind]:
        self._require_connection()
        if self.probe_error is not None:
            raise self.probe_error
        return self.firmware_kind

    def is_initializing(self) -> bool:
        self._require_connection()
        if self.probe_error is not None:
            raise self.probe_error
        self.initialize_probes += 1
        if self.initializing_cycles is None:
            return True
        return self.initialize_probes <= self.initializing_cycles

    def get_device_info(self) -> DeviceInfo:
        self._require_connection()
        if self.probe_error is not None:
            raise self.probe_error
        return self.device_info

    def resume_execution(self) -> None:
        self._require_connection()
        self.calls.append("resume_execution")

    def execute_at_boot_vector(self) -> None:
        self._require_connection()
        self.calls.append("execute_at_boot_vector")
        self.firmware_kind = FirmwareKind.RUNTIME

    def reboot(self, mode: RebootMode = RebootMode.NORMAL) -> None:
        self._require_connection()
        self.calls.append(f"reboot:{mode.value}")
        if mode == RebootMode.ENTER_BOOTLOADER:
            self.firmware_kind = FirmwareKind.BOOTLOADER
        else:
            self.firmware_kind = FirmwareKind.RUNTIME

    def connect_to_bootloader(self) -> bool:
        self._require_connection()
        self.calls.append("connect_to_bootloader")
        if self.firmware_kind == FirmwareKind.BOOTLOADER:
            return True
        if not self.can_enter_bootloader:
            return False
        self.firmware_kind = FirmwareKind.BOOTLOADER
        return True

    def write_binary(self, path: str, address: int) -> bool:
        self._require_connection()
        self.calls.append(f"write:0x{address:X}")
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise TransportIOError(f"Can't read {path}: {e}")
        if not self.write_succeeds:
            return False
        self.flash[address] = data
        return True

    def get_deployment_start_address(self) -> int:
        self._require_connection()
        return self.deployment_start_address

    def get_runtime_start_address(self) -> int:
        self._require_connection()
        return self.runtime_start_address
