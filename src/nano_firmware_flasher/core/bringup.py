"""
Device bring-up.

Takes a freshly created transport session to a connected device in a known
state before anything is written to it:

    DISCONNECTED -> CONNECTING -> CONNECT_FAILED (terminal)
                              \\-> PROBING -> RUNTIME_READY
                                         \\-> RUNNING_BOOTLOADER
                                         \\-> RUNNING_RUNTIME_INITIALIZING
                                         \\-> INITIALIZING_UNKNOWN

From the three initializing states the controller keeps nudging the device
(execute-at-boot-vector for the bootloader, runtime-only reboot for the
runtime) with a linearly growing wait until it reports steady state or the
retry budget runs out (STILL_INITIALIZING, not an error).

The transition function is pure; all I/O goes through the session and the
injected sleep/yield callables.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from nano_firmware_flasher.protocol.transport import (
    FirmwareKind,
    RebootMode,
    TransportError,
    TransportSession,
)

from .errors import CantConnectToDeviceError, ConnectionFailedError, FlasherError
from .messages import ErrorKind, ExitCode
from .output import NullSink, OutputSink, VerbosityLevel

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_STEP_TIMEOUT = 5.0


class BringUpState(Enum):
    """States of the bring-up state machine."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECT_FAILED = "connect_failed"
    PROBING = "probing"
    RUNNING_BOOTLOADER = "running_bootloader"
    RUNNING_RUNTIME_INITIALIZING = "running_runtime_initializing"
    INITIALIZING_UNKNOWN = "initializing_unknown"
    RUNTIME_READY = "runtime_ready"
    STILL_INITIALIZING = "still_initializing"
    CANCELLED = "cancelled"


class Observation(Enum):
    """What the controller saw after the last step."""
    CONNECTED = "connected"
    NOT_CONNECTED = "not_connected"
    READY = "ready"
    INITIALIZING_BOOTLOADER = "initializing_bootloader"
    INITIALIZING_RUNTIME = "initializing_runtime"
    INITIALIZING_UNKNOWN = "initializing_unknown"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    BringUpState.CONNECT_FAILED,
    BringUpState.RUNTIME_READY,
    BringUpState.STILL_INITIALIZING,
    BringUpState.CANCELLED,
})

INITIALIZING_STATES = frozenset({
    BringUpState.RUNNING_BOOTLOADER,
    BringUpState.RUNNING_RUNTIME_INITIALIZING,
    BringUpState.INITIALIZING_UNKNOWN,
})

_INITIALIZING_TARGETS = {
    Observation.INITIALIZING_BOOTLOADER: BringUpState.RUNNING_BOOTLOADER,
    Observation.INITIALIZING_RUNTIME: BringUpState.RUNNING_RUNTIME_INITIALIZING,
    Observation.INITIALIZING_UNKNOWN: BringUpState.INITIALIZING_UNKNOWN,
}


def next_state(state: BringUpState, observation: Observation) -> BringUpState:
    """
    Transition function of the bring-up state machine.

    Terminal states absorb every observation. Retry accounting is left to
    the caller, which reports EXHAUSTED once its budget is spent.
    """
    if state in TERMINAL_STATES:
        return state
    if observation is Observation.CANCELLED:
        return BringUpState.CANCELLED

    if state is BringUpState.DISCONNECTED:
        return BringUpState.CONNECTING

    if state is BringUpState.CONNECTING:
        if observation is Observation.CONNECTED:
            return BringUpState.PROBING
        if observation is Observation.EXHAUSTED:
            return BringUpState.CONNECT_FAILED
        return BringUpState.CONNECTING

    # PROBING or one of the initializing states
    if observation is Observation.READY:
        return BringUpState.RUNTIME_READY
    if observation is Observation.EXHAUSTED:
        return BringUpState.STILL_INITIALIZING
    if observation in _INITIALIZING_TARGETS:
        return _INITIALIZING_TARGETS[observation]
    return state


class CancellationToken:
    """Cooperative cancellation shared by every wait point of an operation."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass
class DeviceHandle:
    """Identity and last known state of a connected device."""
    endpoint: str
    firmware_kind: FirmwareKind = FirmwareKind.UNKNOWN
    is_initializing: bool = False
    runtime_version: Optional[str] = None
    bootloader_version: Optional[str] = None
    target_name: Optional[str] = None
    platform: Optional[str] = None
    flash_size: Optional[int] = None
    chip_type: Optional[str] = None
    valid: bool = True
    session: Optional[TransportSession] = field(default=None, repr=False, compare=False)

    def invalidate(self) -> None:
        self.valid = False

    @property
    def description(self) -> str:
        name = self.target_name or "unknown target"
        kind = self.firmware_kind.value
        version = self.runtime_version if self.firmware_kind == FirmwareKind.RUNTIME else self.bootloader_version
        return f"{name} @ {self.endpoint} ({kind}{' ' + version if version else ''})"


@dataclass
class BringUpResult:
    """Outcome of a bring-up."""
    state: BringUpState
    handle: Optional[DeviceHandle] = None
    exit_code: ExitCode = ExitCode.OK
    error: Optional[FlasherError] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == ExitCode.OK

    @property
    def device_is_in_initialize_state(self) -> bool:
        if self.handle is None:
            return True
        return self.handle.is_initializing

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        if self.state is BringUpState.CANCELLED:
            return ErrorKind.CANCELLED
        return self.error.kind if self.error else None


class DeviceBringupController:
    """
    Drives a TransportSession to a well-defined state.

    Args:
        sink: Receiver of progress messages
        verbosity: Amount of progress output
        sleep: Wait callable, seconds; defaults to a cancellable wait
        yield_: Called once after every wait so pending work can proceed
        cancellation: Token observed at every wait point
    """

    def __init__(
        self,
        sink: Optional[OutputSink] = None,
        verbosity: VerbosityLevel = VerbosityLevel.NORMAL,
        sleep: Optional[Callable[[float], None]] = None,
        yield_: Optional[Callable[[], None]] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.sink = sink or NullSink()
        self.verbosity = verbosity
        self.cancellation = cancellation or CancellationToken()
        self._sleep = sleep or self.cancellation.wait
        self._yield = yield_ or (lambda: time.sleep(0))

    def _say(self, level: VerbosityLevel, text: str, style: Optional[str] = None) -> None:
        if self.verbosity >= level:
            self.sink.write_line(text, style)

    def _wait(self, seconds: float) -> bool:
        """Wait and yield once; returns True when cancelled."""
        if self.cancellation.cancelled:
            return True
        self._sleep(seconds)
        self._yield()
        return self.cancellation.cancelled

    def bring_up(
        self,
        transport: TransportSession,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        per_step_timeout: float = DEFAULT_STEP_TIMEOUT,
    ) -> BringUpResult:
        """
        Connect to the device and make sure it is past initialization.

        Args:
            transport: Session to drive
            max_retries: Connect retries and initialization-wait iterations
            retry_delay: Fixed delay between connect retries; base of the
                initialization backoff (retry_delay * (attempt + 1))
            per_step_timeout: Timeout handed to each connect attempt

        Returns:
            BringUpResult. A device that never leaves initialization is a
            successful result with device_is_in_initialize_state True.
        """
        if transport is None:
            raise ValueError("transport is required")
        if max_retries < 0:
            raise ValueError("max_retries can't be negative")

        endpoint = transport.endpoint
        state = next_state(BringUpState.DISCONNECTED, Observation.NOT_CONNECTED)

        # connect, fixed delay between attempts
        for attempt in range(max_retries + 1):
            try:
                connected = transport.connect(per_step_timeout)
            except TransportError as e:
                error = CantConnectToDeviceError(f"Error connecting to device: {e}", endpoint=endpoint)
                self._say(VerbosityLevel.QUIET, error.message, "red")
                return BringUpResult(BringUpState.CONNECT_FAILED, exit_code=error.exit_code, error=error)

            state = next_state(state, Observation.CONNECTED if connected else Observation.NOT_CONNECTED)
            if state is BringUpState.PROBING:
                if attempt == 0:
                    self._say(VerbosityLevel.NORMAL, "Device connected.")
                else:
                    self._say(VerbosityLevel.NORMAL, f"Device connect result is True. Attempt {attempt}/{max_retries}")
                break

            self._say(VerbosityLevel.NORMAL, f"Device connect result is False. Attempt {attempt}/{max_retries}")
            if attempt < max_retries and self._wait(retry_delay):
                state = next_state(state, Observation.CANCELLED)
                break

        if state is BringUpState.CONNECTING:
            state = next_state(state, Observation.EXHAUSTED)

        if state is BringUpState.CANCELLED:
            return self._cancelled(transport, None)

        if state is BringUpState.CONNECT_FAILED:
            error = ConnectionFailedError(
                f"Error connecting to device on {endpoint} after {max_retries + 1} attempts."
            )
            self._say(VerbosityLevel.QUIET, error.message, "red")
            return BringUpResult(state, exit_code=error.exit_code, error=error)

        handle = DeviceHandle(endpoint=endpoint, session=transport)
        try:
            state = self._probe(transport, handle, state)

            if state in INITIALIZING_STATES:
                self._say(
                    VerbosityLevel.NORMAL,
                    f"Device status verified as being in initialized state. Requesting to resume execution. Attempt 0/{max_retries}.",
                    "yellow",
                )
                transport.resume_execution()
                state = self._await_initialization(transport, handle, state, max_retries, retry_delay)
        except TransportError as e:
            handle.invalidate()
            error = CantConnectToDeviceError(f"Couldn't retrieve device details: {e}", endpoint=endpoint)
            self._say(VerbosityLevel.QUIET, error.message, "red")
            return BringUpResult(state, handle=handle, exit_code=error.exit_code, error=error)

        if state is BringUpState.CANCELLED:
            return self._cancelled(transport, handle)

        handle.is_initializing = state is BringUpState.STILL_INITIALIZING
        logger.debug(f"Bring-up of {endpoint} finished in state {state.value}")
        return BringUpResult(state, handle=handle)

    def _probe(self, transport: TransportSession, handle: DeviceHandle, state: BringUpState) -> BringUpState:
        """Fill the handle from the device and classify its state."""
        kind = transport.ping() or FirmwareKind.UNKNOWN
        handle.firmware_kind = kind

        info = transport.get_device_info()
        if info is not None:
            handle.target_name = info.target_name
            handle.platform = info.platform
            handle.runtime_version = info.runtime_version
            handle.bootloader_version = info.bootloader_version
            handle.flash_size = info.flash_size
            handle.chip_type = info.chip_type

        handle.is_initializing = transport.is_initializing()
        return next_state(state, self._observe(kind, handle.is_initializing))

    @staticmethod
    def _observe(kind: FirmwareKind, initializing: bool) -> Observation:
        if not initializing:
            return Observation.READY
        if kind == FirmwareKind.BOOTLOADER:
            return Observation.INITIALIZING_BOOTLOADER
        if kind == FirmwareKind.RUNTIME:
            return Observation.INITIALIZING_RUNTIME
        return Observation.INITIALIZING_UNKNOWN

    def _await_initialization(
        self,
        transport: TransportSession,
        handle: DeviceHandle,
        state: BringUpState,
        max_retries: int,
        base_timeout: float,
    ) -> BringUpState:
        for attempt in range(max_retries):
            initializing = transport.is_initializing()
            if not initializing:
                self._say(VerbosityLevel.DIAGNOSTIC, "Device has completed initialization.")
                handle.firmware_kind = transport.ping() or handle.firmware_kind
                return next_state(state, Observation.READY)

            kind = transport.ping() or FirmwareKind.UNKNOWN
            handle.firmware_kind = kind
            state = next_state(state, self._observe(kind, True))
            self._say(
                VerbosityLevel.DIAGNOSTIC,
                f"Waiting for device to report initialization completed ({attempt + 1}/{max_retries}).",
            )

            if state is BringUpState.RUNNING_BOOTLOADER:
                self._say(VerbosityLevel.DIAGNOSTIC, "Device reported running bootloader. Requesting to load runtime.")
                transport.execute_at_boot_vector()
            elif state is BringUpState.RUNNING_RUNTIME_INITIALIZING:
                self._say(VerbosityLevel.NORMAL, "Device reported running runtime. Requesting to reboot runtime.", "yellow")
                transport.reboot(RebootMode.RUNTIME_ONLY)

            # slower targets (networked ones) need more time on every pass
            if self._wait(base_timeout * (attempt + 1)):
                return next_state(state, Observation.CANCELLED)

        return next_state(state, Observation.EXHAUSTED)

    def _cancelled(self, transport: TransportSession, handle: Optional[DeviceHandle]) -> BringUpResult:
        self._say(VerbosityLevel.NORMAL, "Bring-up cancelled.", "yellow")
        if transport.connected:
            transport.disconnect()
        if handle is not None:
            handle.invalidate()
        return BringUpResult(BringUpState.CANCELLED, handle=handle, exit_code=ExitCode.E2000)


def bring_up(
    transport: TransportSession,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    per_step_timeout: float = DEFAULT_STEP_TIMEOUT,
    sink: Optional[OutputSink] = None,
    verbosity: VerbosityLevel = VerbosityLevel.NORMAL,
) -> BringUpResult:
    """Module-level shortcut for DeviceBringupController(...).bring_up(...)."""
    controller = DeviceBringupController(sink=sink, verbosity=verbosity)
    return controller.bring_up(transport, max_retries, retry_delay, per_step_timeout)
