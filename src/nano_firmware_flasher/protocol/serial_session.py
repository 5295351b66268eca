"""
Serial Transport Session

Handles the serial side of a connection to a device running the nano
bootloader or runtime:
- Serial port initialization and configuration
- Buffer housekeeping
- Delegation of debug protocol requests to a DebugEngine

The debug wire protocol itself lives in the DebugEngine implementation
handed to the session.
"""

import logging
from typing import List, Optional

try:
    import serial
    import serial.tools.list_ports
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from .transport import (
    DeviceInfo,
    FirmwareKind,
    RebootMode,
    TransportIOError,
    TransportNotConnected,
    TransportSession,
)

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 921600


class DebugEngine:
    """
    Debug protocol engine that talks to the device over an open port.

    Implementations speak the device's wire protocol; every method may
    raise any exception on protocol errors, the session wraps them.
    """

    def attach(self, port: "serial.Serial") -> None:
        raise NotImplementedError

    def detach(self) -> None:
        raise NotImplementedError

    def handshake(self, timeout: float) -> bool:
        raise NotImplementedError

    def ping(self) -> Optional[FirmwareKind]:
        raise NotImplementedError

    def is_device_in_initialize_state(self) -> bool:
        raise NotImplementedError

    def device_info(self) -> DeviceInfo:
        raise NotImplementedError

    def resume_execution(self) -> None:
        raise NotImplementedError

    def execute_memory(self, address: int) -> None:
        raise NotImplementedError

    def reboot_device(self, mode: RebootMode) -> None:
        raise NotImplementedError

    def deploy_binary(self, data: bytes, address: int) -> bool:
        raise NotImplementedError

    def deployment_start_address(self) -> int:
        raise NotImplementedError

    def runtime_start_address(self) -> int:
        raise NotImplementedError


class SerialTransportSession(TransportSession):
    """
    Serial transport for nano devices.

    Handles:
    - Serial port management
    - Timeout and error handling
    - Wrapping engine failures into TransportIOError

    Example:
        session = SerialTransportSession(port="/dev/ttyUSB0", engine=engine)
        session.connect(timeout=5.0)
        info = session.get_device_info()
        session.disconnect()
    """

    def __init__(
        self,
        port: str,
        engine: DebugEngine,
        baudrate: int = DEFAULT_BAUDRATE,
        timeout: float = 1.0,
    ):
        """
        Initialize transport layer.

        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            engine: Debug protocol engine
            baudrate: Serial baud rate (default 921600)
            timeout: Read/write timeout in seconds (default 1.0)
        """
        super().__init__(endpoint=port)
        self.port = port
        self.engine = engine
        self.baudrate = baudrate
        self.timeout = timeout
        self.ser: Optional[serial.Serial] = None

    def _open_port(self) -> None:
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=8,
                parity='N',
                stopbits=1,
                timeout=self.timeout,
                write_timeout=self.timeout,
            )
            # Clear any junk in buffer
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()

            logger.debug(
                f"Opened {self.port} at {self.baudrate} bps (timeout={self.timeout}s)"
            )
        except serial.SerialException as e:
            raise TransportIOError(f"Cannot open port {self.port}: {e}")

    def connect(self, timeout: float = 5.0) -> bool:
        """
        Open the serial port and perform the engine handshake.

        Returns:
            True when the device answered within timeout.

        Raises:
            TransportIOError: If the port cannot be opened.
        """
        if self.ser is None or not self.ser.is_open:
            self._open_port()
            self.engine.attach(self.ser)

        try:
            self.connected = bool(self.engine.handshake(timeout))
        except Exception as e:
            logger.debug(f"Handshake on {self.port} failed: {e}")
            self.connected = False
        return self.connected

    def disconnect(self) -> None:
        """
        Detach the engine and close the serial port.

        Raises:
            TransportIOError: If the engine fails to detach. The port is closed regardless.
        """
        try:
            self.engine.detach()
        except Exception as e:
            raise TransportIOError(f"Detach failed on {self.port}: {e}")
        finally:
            self.connected = False
            if self.ser and self.ser.is_open:
                self.ser.close()
                logger.debug(f"Closed {self.port}")

    def _call(self, what: str, func, *args):
        if not self.connected:
            raise TransportNotConnected(f"{self.port} is not connected")
        try:
            return func(*args)
        except (serial.SerialException, OSError) as e:
            raise TransportIOError(f"{what} failed on {self.port}: {e}")
        except TransportIOError:
            raise
        except Exception as e:
            raise TransportIOError(f"{what} failed on {self.port}: {e}")

    def ping(self) -> Optional[FirmwareKind]:
        return self._call("ping", self.engine.ping)

    def is_initializing(self) -> bool:
        return bool(self._call("initialize state query", self.engine.is_device_in_initialize_state))

    def get_device_info(self) -> DeviceInfo:
        return self._call("device info query", self.engine.device_info)

    def resume_execution(self) -> None:
        self._call("resume execution", self.engine.resume_execution)

    def execute_at_boot_vector(self) -> None:
        self._call("execute memory", self.engine.execute_memory, 0)

    def reboot(self, mode: RebootMode = RebootMode.NORMAL) -> None:
        self._call("reboot", self.engine.reboot_device, mode)

    def connect_to_bootloader(self) -> bool:
        if self.ping() == FirmwareKind.BOOTLOADER:
            return True
        self.reboot(RebootMode.ENTER_BOOTLOADER)
        if not self.connect(self.timeout * 5):
            return False
        return self.ping() == FirmwareKind.BOOTLOADER

    def write_binary(self, path: str, address: int) -> bool:
        with open(path, "rb") as f:
            data = f.read()
        logger.debug(f"Writing {len(data)} bytes from {path} at 0x{address:08X}")
        return bool(self._call("binary write", self.engine.deploy_binary, data, address))

    def get_deployment_start_address(self) -> int:
        return int(self._call("deployment address query", self.engine.deployment_start_address))

    def get_runtime_start_address(self) -> int:
        return int(self._call("runtime address query", self.engine.runtime_start_address))


def list_serial_ports() -> List[dict]:
    """List available serial ports as dicts with device/name/description."""
    return [
        {
            "device": port.device,
            "name": port.name or "-",
            "description": port.description or "-",
        }
        for port in serial.tools.list_ports.comports()
    ]
