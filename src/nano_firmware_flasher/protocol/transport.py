"""
Transport session interface.

A TransportSession owns one physical connection (serial, JTAG, DFU) to a
single device and exposes the handful of queries and requests the bring-up
controller and the update orchestrator need:

- connect / disconnect
- which firmware is running (bootloader vs runtime) and whether the
  runtime is still initializing
- execute-at-boot-vector, reboot and resume requests
- raw binary write at a flash address

The wire-level debugging protocol behind these calls is provided by the
concrete session (see serial_session.py and virtual_device.py).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TransportError(Exception):
    """Base exception for transport layer errors"""
    pass


class TransportNotConnected(TransportError):
    """Operation requires an open connection"""
    pass


class TransportIOError(TransportError):
    """Error while talking to the device"""
    pass


class FirmwareKind(Enum):
    """Firmware currently executing on the device."""
    BOOTLOADER = "bootloader"
    RUNTIME = "runtime"
    UNKNOWN = "unknown"


class RebootMode(Enum):
    """Reboot flavours understood by the runtime."""
    NORMAL = "normal"
    RUNTIME_ONLY = "runtime_only"
    ENTER_BOOTLOADER = "enter_bootloader"


@dataclass
class DeviceInfo:
    """Details a device reports about itself once connected."""
    target_name: Optional[str] = None
    platform: Optional[str] = None
    runtime_version: Optional[str] = None
    bootloader_version: Optional[str] = None
    flash_size: Optional[int] = None
    chip_type: Optional[str] = None

    @property
    def valid(self) -> bool:
        return bool(self.target_name and self.platform)


class TransportSession:
    """
    Base class for a connection to a single device.

    Subclasses implement every method; the base only holds the endpoint
    identifier and connection flag.

    Example:
        session = SerialTransportSession(port="/dev/ttyUSB0", engine=engine)
        if session.connect(timeout=5.0):
            kind = session.ping()
            session.write_binary("nanoCLR.bin", 0x10000)
            session.disconnect()
    """

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        self.connected = False

    def connect(self, timeout: float = 5.0) -> bool:
        """Open the connection. Returns False when the device did not answer."""
        raise NotImplementedError

    def disconnect(self) -> None:
        """Close the connection."""
        raise NotImplementedError

    def ping(self) -> Optional[FirmwareKind]:
        """Report which firmware answered, or None when nothing did."""
        raise NotImplementedError

    def is_initializing(self) -> bool:
        """Runtime booted but has not yet reached steady state."""
        raise NotImplementedError

    def is_bootloader(self) -> bool:
        return self.ping() == FirmwareKind.BOOTLOADER

    def is_runtime(self) -> bool:
        return self.ping() == FirmwareKind.RUNTIME

    def get_device_info(self) -> DeviceInfo:
        raise NotImplementedError

    def resume_execution(self) -> None:
        raise NotImplementedError

    def execute_at_boot_vector(self) -> None:
        """Ask the bootloader to load the runtime image."""
        raise NotImplementedError

    def reboot(self, mode: RebootMode = RebootMode.NORMAL) -> None:
        raise NotImplementedError

    def connect_to_bootloader(self) -> bool:
        """Switch a running runtime to the bootloader. Returns True on success."""
        raise NotImplementedError

    def write_binary(self, path: str, address: int) -> bool:
        """Write a binary file at a flash address. Returns True when it verified."""
        raise NotImplementedError

    def get_deployment_start_address(self) -> int:
        raise NotImplementedError

    def get_runtime_start_address(self) -> int:
        raise NotImplementedError

    def __enter__(self) -> "TransportSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.connected:
            self.disconnect()
