"""
nano firmware flasher - flash firmware and applications onto nano devices

Device bring-up, versioned firmware package cache and offline archive,
and the update workflows built on top of them.
"""

__version__ = "0.1.0"

from nano_firmware_flasher.protocol import SerialTransportSession, VirtualDeviceSession
from nano_firmware_flasher.core.actions import UpdateOrchestrator
from nano_firmware_flasher.firmware import FirmwareArchiveManager, FirmwarePackageResolver

__all__ = [
    "SerialTransportSession",
    "VirtualDeviceSession",
    "UpdateOrchestrator",
    "FirmwareArchiveManager",
    "FirmwarePackageResolver",
    "__version__",
]
