"""
Core module for nano firmware flasher.

This module provides the single source of truth for:
- Exit codes, error kinds and remediation hints (messages.py)
- Expected-failure exceptions (errors.py)
- Result objects (results.py)
- Output sinks and verbosity (output.py)
- Address, flash size and platform parsing (parsing.py)
- Device bring-up state machine (bringup.py)

The update workflows live in actions.py and are imported from there
directly; the firmware layer depends on this package.
"""

from .messages import (
    MessageLevel,
    ExitCode,
    ErrorKind,
    MessageItem,
    ERROR_REMEDIATIONS,
    result_to_messages,
)
from .errors import FlasherError
from .results import OperationResult
from .output import (
    VerbosityLevel,
    OutputSink,
    ConsoleSink,
    LoggingSink,
    CapturingSink,
    NullSink,
    capture_logs,
)
from .parsing import (
    parse_address,
    parse_flash_size,
    parse_partition_table_size,
    parse_platform,
)
from .bringup import (
    BringUpState,
    BringUpResult,
    CancellationToken,
    DeviceBringupController,
    DeviceHandle,
    next_state,
)

__all__ = [
    # Messages
    "MessageLevel",
    "ExitCode",
    "ErrorKind",
    "MessageItem",
    "ERROR_REMEDIATIONS",
    "result_to_messages",
    # Errors / results
    "FlasherError",
    "OperationResult",
    # Output
    "VerbosityLevel",
    "OutputSink",
    "ConsoleSink",
    "LoggingSink",
    "CapturingSink",
    "NullSink",
    "capture_logs",
    # Parsing
    "parse_address",
    "parse_flash_size",
    "parse_partition_table_size",
    "parse_platform",
    # Bring-up
    "BringUpState",
    "BringUpResult",
    "CancellationToken",
    "DeviceBringupController",
    "DeviceHandle",
    "next_state",
]
