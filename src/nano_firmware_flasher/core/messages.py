"""
Standardized exit codes, error kinds and message items for nano firmware flasher.

Provides stable codes that both the CLI and library callers can rely on,
plus the default remediation hint shown for each error kind.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ExitCode(Enum):
    """Closed set of result codes consumed by the CLI layer."""
    OK = 0

    # nano device
    E2000 = 2000
    E2001 = 2001
    E2002 = 2002

    # ESP32 / esptool
    E4000 = 4000
    E4001 = 4001
    E4003 = 4003

    # general
    E9000 = 9000
    E9005 = 9005
    E9006 = 9006
    E9007 = 9007
    E9008 = 9008
    E9010 = 9010
    E9011 = 9011
    E9012 = 9012
    E9013 = 9013
    E9014 = 9014
    E9015 = 9015

    @property
    def description(self) -> str:
        """One-line, user-facing description of the code."""
        return EXIT_CODE_DESCRIPTIONS.get(self, "")


EXIT_CODE_DESCRIPTIONS: Dict[ExitCode, str] = {
    ExitCode.OK: "",
    ExitCode.E2000: "Error connecting to nano device.",
    ExitCode.E2001: "Error occurred with listing nano devices.",
    ExitCode.E2002: "Error executing operation with nano device.",
    ExitCode.E4000: "Error executing esptool command.",
    ExitCode.E4001: "Unsupported flash size for ESP32 target.",
    ExitCode.E4003: "Failed to write new firmware to ESP32.",
    ExitCode.E9000: "Invalid or missing arguments.",
    ExitCode.E9005: "Can't find the target in the package repository.",
    ExitCode.E9006: "Can't create temporary directory to download firmware.",
    ExitCode.E9007: "Error downloading firmware file.",
    ExitCode.E9008: "Couldn't find application file. Check the path.",
    ExitCode.E9010: "Couldn't find any device connected.",
    ExitCode.E9011: "Couldn't find CLR image file. Check the path.",
    ExitCode.E9012: "CLR image file has wrong format. It has to be a binary file.",
    ExitCode.E9013: "Unsupported platform. Valid options are: esp32, stm32, ti_simplelink, gg11",
    ExitCode.E9014: "Error occurred when clearing the firmware cache location.",
    ExitCode.E9015: "Can't find the target in the firmware archive.",
}


class ErrorKind(Enum):
    """Stable, user-actionable failure categories."""
    CONNECTION_FAILED = "connection_failed"
    DEVICE_UNRESPONSIVE = "device_unresponsive"
    UNSUPPORTED_FLASH_SIZE = "unsupported_flash_size"
    PACKAGE_NOT_FOUND = "package_not_found"
    DOWNLOAD_FAILED = "download_failed"
    EXTRACTION_FAILED = "extraction_failed"
    CACHE_UNAVAILABLE = "cache_unavailable"
    ADDRESS_MISMATCH = "address_mismatch"
    INCOMPATIBLE_DEVICE_VERSION = "incompatible_device_version"
    WRITE_FAILED = "write_failed"
    INVALID_ARGUMENT = "invalid_argument"
    CANCELLED = "cancelled"


# Default remediation hints for each error kind
ERROR_REMEDIATIONS: Dict[ErrorKind, str] = {
    ErrorKind.CONNECTION_FAILED:
        "Check the cable and that no other application is holding the port.",
    ErrorKind.DEVICE_UNRESPONSIVE:
        "Reset the device and try again. It may still be booting.",
    ErrorKind.UNSUPPORTED_FLASH_SIZE:
        "Use --partition-table-size to pick one of the supported sizes.",
    ErrorKind.PACKAGE_NOT_FOUND:
        "Use 'list-targets' to see the available targets and versions.",
    ErrorKind.DOWNLOAD_FAILED:
        "Check the network connection or use a firmware archive.",
    ErrorKind.EXTRACTION_FAILED:
        "Check free disk space and permissions of the cache location.",
    ErrorKind.CACHE_UNAVAILABLE:
        "Check permissions of the cache location or clear it with 'clear-cache'.",
    ErrorKind.ADDRESS_MISMATCH:
        "The bootloader on the device must be updated first (use a JTAG/DFU update).",
    ErrorKind.INCOMPATIBLE_DEVICE_VERSION:
        "The device firmware is too old for a software update. Update it over JTAG/DFU.",
    ErrorKind.WRITE_FAILED:
        "Check connection stability and retry the update.",
    ErrorKind.INVALID_ARGUMENT:
        "Check the command line arguments.",
    ErrorKind.CANCELLED:
        "The operation was cancelled before completing.",
}


# Exit code reported when an operation fails with a given error kind
ERROR_EXIT_CODES: Dict[ErrorKind, ExitCode] = {
    ErrorKind.CONNECTION_FAILED: ExitCode.E2000,
    ErrorKind.DEVICE_UNRESPONSIVE: ExitCode.E2000,
    ErrorKind.UNSUPPORTED_FLASH_SIZE: ExitCode.E4001,
    ErrorKind.PACKAGE_NOT_FOUND: ExitCode.E9005,
    ErrorKind.DOWNLOAD_FAILED: ExitCode.E9007,
    ErrorKind.EXTRACTION_FAILED: ExitCode.E9006,
    ErrorKind.CACHE_UNAVAILABLE: ExitCode.E9006,
    ErrorKind.ADDRESS_MISMATCH: ExitCode.E2002,
    ErrorKind.INCOMPATIBLE_DEVICE_VERSION: ExitCode.E2002,
    ErrorKind.WRITE_FAILED: ExitCode.E2002,
    ErrorKind.INVALID_ARGUMENT: ExitCode.E9000,
    ErrorKind.CANCELLED: ExitCode.E2000,
}


@dataclass
class MessageItem:
    """
    Structured message with a stable error kind.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        kind: Error kind for programmatic handling, if any
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    title: str
    kind: Optional[ErrorKind] = None
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.kind in ERROR_REMEDIATIONS:
            self.remediation = ERROR_REMEDIATIONS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "kind": self.kind.value if self.kind else None,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }

    def to_cli_string(self, verbose: bool = False) -> str:
        """Format for CLI output."""
        if not verbose:
            return self.title
        tag = f"[{self.kind.value}] " if self.kind else ""
        lines = [f"{tag}{self.title}"]
        if self.detail:
            lines.append(f"   {self.detail}")
        if self.remediation:
            lines.append(f"   -> {self.remediation}")
        return "\n".join(lines)


def result_to_messages(result: "OperationResult") -> List[MessageItem]:
    """
    Convert a result's warnings and errors to a MessageItem list.

    Errors carry the result's error kind so the remediation hint is attached.
    """
    items = [MessageItem(MessageLevel.WARN, warning) for warning in result.warnings]
    for err in result.errors:
        items.append(MessageItem(
            MessageLevel.ERROR,
            err,
            kind=result.error_kind,
            detail=result.exit_code.description if result.exit_code else "",
        ))
    return items
