"""Domain-specific errors for nano firmware flasher."""

from typing import Any, Dict, Optional

from .messages import ERROR_EXIT_CODES, ErrorKind, ExitCode


class FlasherError(Exception):
    """
    Base error for expected failure paths.

    Attributes:
        kind: Error kind used to map the failure to a stable result code
        payload: Kind-specific data (supported flash sizes, raw tool output, ...)
    """

    kind: ErrorKind = ErrorKind.INVALID_ARGUMENT

    def __init__(
        self,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
        exit_code: Optional[ExitCode] = None,
    ):
        self.message = message
        self.payload = payload or {}
        self._exit_code = exit_code
        super().__init__(message)

    @property
    def exit_code(self) -> ExitCode:
        """Exit code for this failure."""
        return self._exit_code or ERROR_EXIT_CODES[self.kind]


class ConnectionFailedError(FlasherError):
    """Transport could not be opened after the retries were exhausted."""
    kind = ErrorKind.CONNECTION_FAILED


class CantConnectToDeviceError(FlasherError):
    """Connected transport failed while probing the device state."""
    kind = ErrorKind.DEVICE_UNRESPONSIVE

    def __init__(self, message: str, endpoint: str = "", **kwargs):
        self.endpoint = endpoint
        if endpoint:
            message = f"{message} (connection point: {endpoint})"
        super().__init__(message, **kwargs)


class DeviceUnresponsiveError(FlasherError):
    """Device is connected but cannot be used for the requested operation."""
    kind = ErrorKind.DEVICE_UNRESPONSIVE


class UnsupportedFlashSizeError(FlasherError):
    """Chip reports a flash size outside the supported table."""
    kind = ErrorKind.UNSUPPORTED_FLASH_SIZE


class PackageNotFoundError(FlasherError):
    """No package matches the requested name / version / platform."""
    kind = ErrorKind.PACKAGE_NOT_FOUND


class DownloadFailedError(FlasherError):
    """Network or repository failure while fetching a package."""
    kind = ErrorKind.DOWNLOAD_FAILED


class ExtractionFailedError(FlasherError):
    """Package archive could not be unpacked into the cache."""
    kind = ErrorKind.EXTRACTION_FAILED


class CacheUnavailableError(FlasherError):
    """Cache location cannot be created, written or cleared."""
    kind = ErrorKind.CACHE_UNAVAILABLE


class AddressMismatchError(FlasherError):
    """Bootloader-expected address differs from the package address."""
    kind = ErrorKind.ADDRESS_MISMATCH


class IncompatibleDeviceVersionError(FlasherError):
    """Device predates a capability the operation requires."""
    kind = ErrorKind.INCOMPATIBLE_DEVICE_VERSION


class WriteFailedError(FlasherError):
    """Binary write to flash did not verify."""
    kind = ErrorKind.WRITE_FAILED


class OperationCancelledError(FlasherError):
    """A wait point observed a cancellation request."""
    kind = ErrorKind.CANCELLED
