"""Device transport layer - session interface, serial and virtual sessions."""

from .transport import (
    TransportSession,
    TransportError,
    TransportNotConnected,
    TransportIOError,
    FirmwareKind,
    RebootMode,
    DeviceInfo,
)
from .serial_session import (
    DebugEngine,
    SerialTransportSession,
    list_serial_ports,
)
from .virtual_device import VirtualDeviceSession

__all__ = [
    # Interface
    "TransportSession",
    "TransportError",
    "TransportNotConnected",
    "TransportIOError",
    "FirmwareKind",
    "RebootMode",
    "DeviceInfo",
    # Serial
    "DebugEngine",
    "SerialTransportSession",
    "list_serial_ports",
    # Virtual
    "VirtualDeviceSession",
]
