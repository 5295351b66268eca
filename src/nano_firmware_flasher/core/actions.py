"""
Core workflow actions for nano firmware flasher.

UpdateOrchestrator coordinates bring-up, package resolution and the write
sequence. Every public operation returns an OperationResult; expected
failures never escape as exceptions.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from nano_firmware_flasher.firmware.flash_tool import EspTool, VendorFlashTool
from nano_firmware_flasher.firmware.package import FirmwarePackageResolver
from nano_firmware_flasher.firmware.versions import FirmwareVersion, PackageChannel
from nano_firmware_flasher.protocol.transport import (
    DeviceInfo,
    FirmwareKind,
    RebootMode,
    TransportError,
    TransportSession,
)

from .bringup import (
    BringUpResult,
    CancellationToken,
    DeviceBringupController,
    DeviceHandle,
)
from .errors import (
    AddressMismatchError,
    CantConnectToDeviceError,
    DeviceUnresponsiveError,
    FlasherError,
    IncompatibleDeviceVersionError,
    OperationCancelledError,
    WriteFailedError,
)
from .messages import ErrorKind, ExitCode
from .output import NullSink, OutputSink, VerbosityLevel, capture_logs
from .results import OperationResult

logger = logging.getLogger(__name__)

# first runtime version able to reboot into the bootloader on request
MIN_SOFT_REBOOT_VERSION = "1.6.0.54"


class UpdateOrchestrator:
    """
    Runs update and deploy workflows against one device.

    Args:
        resolver: Package resolver for repository / archive updates
        sink: Receiver of user-facing progress lines
        verbosity: Amount of progress output
        cancellation: Token observed by bring-up waits
        progress_cb: Optional callback(step_name, current, total)
        max_retries: Bring-up retry bound
        retry_delay: Bring-up delay in seconds
        per_step_timeout: Bring-up connect timeout in seconds
        sleep: Wait callable for bring-up (tests pass a no-op)
    """

    def __init__(
        self,
        resolver: Optional[FirmwarePackageResolver] = None,
        sink: Optional[OutputSink] = None,
        verbosity: VerbosityLevel = VerbosityLevel.NORMAL,
        cancellation: Optional[CancellationToken] = None,
        progress_cb: Optional[Callable[[str, int, int], None]] = None,
        max_retries: int = 5,
        retry_delay: float = 1.0,
        per_step_timeout: float = 5.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.resolver = resolver
        self.sink = sink or NullSink()
        self.verbosity = verbosity
        self.cancellation = cancellation or CancellationToken()
        self.progress_cb = progress_cb
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.per_step_timeout = per_step_timeout
        self.controller = DeviceBringupController(
            sink=self.sink,
            verbosity=verbosity,
            sleep=sleep,
            cancellation=self.cancellation,
        )

    def _say(self, level: VerbosityLevel, text: str, style: Optional[str] = None) -> None:
        if self.verbosity >= level:
            self.sink.write_line(text, style)

    def _progress(self, step: str, current: int, total: int = 100) -> None:
        if self.progress_cb:
            self.progress_cb(step, current, total)

    def _bring_up(self, session: TransportSession, operation: str) -> DeviceHandle:
        """Bring the device up and require it to be past initialization."""
        self._progress("Connecting", 0)
        result: BringUpResult = self.controller.bring_up(
            session,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            per_step_timeout=self.per_step_timeout,
        )
        self._progress("Connecting", 100)

        if result.error_kind == ErrorKind.CANCELLED:
            raise OperationCancelledError(f"{operation} cancelled during bring-up")
        if result.error is not None:
            raise result.error
        if result.device_is_in_initialize_state:
            raise DeviceUnresponsiveError(
                f"Device on {session.endpoint} is still initializing after {self.max_retries} attempts.",
                payload={"endpoint": session.endpoint},
            )
        return result.handle

    @staticmethod
    def _handle_metadata(handle: DeviceHandle) -> Dict[str, Any]:
        return {
            "endpoint": handle.endpoint,
            "firmware_kind": handle.firmware_kind.value,
            "target_name": handle.target_name,
            "platform": handle.platform,
            "runtime_version": handle.runtime_version,
            "bootloader_version": handle.bootloader_version,
        }

    @staticmethod
    def _close(session: TransportSession) -> None:
        if session.connected:
            try:
                session.disconnect()
            except TransportError as e:
                logger.warning(f"Error closing {session.endpoint}: {e}")

    def get_device_details(self, session: TransportSession) -> OperationResult:
        """
        Connect and report what the device says about itself.

        Returns:
            OperationResult with metadata["device"] (the DeviceHandle) and
            the handle fields flattened into metadata.
        """
        operation = "get_device_details"
        with capture_logs() as logs:
            try:
                handle = self._bring_up(session, operation)
                if not handle.target_name:
                    raise CantConnectToDeviceError(
                        "Couldn't retrieve device details from nano device.", endpoint=session.endpoint
                    )
                self._say(VerbosityLevel.NORMAL, f"Connected to nano device: {handle.description}", "cyan")
                result = OperationResult.success(
                    operation=operation,
                    target=handle.target_name or "",
                    version=handle.runtime_version or "",
                )
                result.metadata.update(self._handle_metadata(handle))
                result.metadata["device"] = handle
            except FlasherError as e:
                result = OperationResult.from_error(operation, e)
            finally:
                self._close(session)
            result.logs = logs
            return result

    def update_runtime(
        self,
        session: TransportSession,
        version: Optional[str] = None,
        channel: PackageChannel = PackageChannel.STABLE,
        runtime_file: Optional[Union[str, Path]] = None,
        archive_directory: Optional[Union[str, Path]] = None,
        allow_downgrade: bool = True,
        show_firmware_only: bool = False,
    ) -> OperationResult:
        """
        Update the runtime (CLR) of a device through its bootloader.

        Args:
            session: Transport to the device
            version: Package version; None for the newest
            channel: Package channel
            runtime_file: Local .bin runtime image; skips package resolution
            archive_directory: Resolve from this archive instead of the repository
            allow_downgrade: When False, a package older than the running
                runtime fails instead of being written
            show_firmware_only: Only report target and platform

        Returns:
            OperationResult. An equal version is a successful no-op with
            metadata["up_to_date"] True.
        """
        operation = "update_runtime"

        if runtime_file is not None:
            runtime_file = Path(runtime_file)
            if not runtime_file.is_file():
                return OperationResult.failure(
                    operation=operation,
                    error=f"Couldn't find CLR image file: {runtime_file}",
                    exit_code=ExitCode.E9011,
                    error_kind=ErrorKind.INVALID_ARGUMENT,
                )
            if runtime_file.suffix != ".bin":
                return OperationResult.failure(
                    operation=operation,
                    error=f"CLR image file has to be a binary (.bin) file: {runtime_file.name}",
                    exit_code=ExitCode.E9012,
                    error_kind=ErrorKind.INVALID_ARGUMENT,
                )
            runtime_file = runtime_file.absolute()
        elif self.resolver is None and not show_firmware_only:
            raise ValueError("A package resolver is required to update from the repository or an archive")

        with capture_logs() as logs:
            try:
                self._say(VerbosityLevel.NORMAL, "Getting details from nano device...")
                handle = self._bring_up(session, operation)
                if not handle.target_name or not handle.platform:
                    raise DeviceUnresponsiveError(
                        f"Missing details from {handle.target_name or session.endpoint} to perform update operation."
                    )
                self._say(VerbosityLevel.NORMAL, f"Connected to nano device: {handle.description}", "cyan")

                if show_firmware_only:
                    self.sink.write_line(
                        f"Connected nanoDevice uses target '{handle.target_name}'; platform is {handle.platform}."
                    )
                    result = OperationResult.success(operation=operation, target=handle.target_name)
                    result.metadata.update(self._handle_metadata(handle))
                else:
                    result = self._update_runtime(
                        session, handle, version, channel, runtime_file, archive_directory, allow_downgrade
                    )
            except FlasherError as e:
                result = OperationResult.from_error(operation, e)
                self._say(VerbosityLevel.MINIMAL, e.message, "red")
            finally:
                self._close(session)
            result.logs = logs
            return result

    def _update_runtime(
        self,
        session: TransportSession,
        handle: DeviceHandle,
        version: Optional[str],
        channel: PackageChannel,
        runtime_file: Optional[Path],
        archive_directory: Optional[Union[str, Path]],
        allow_downgrade: bool,
    ) -> OperationResult:
        operation = "update_runtime"
        current = FirmwareVersion.try_parse(handle.runtime_version)
        package_address = None

        if runtime_file is None:
            self._progress("Resolving package", 0)
            artifact = self.resolver.resolve(
                handle.target_name,
                version=version,
                channel=channel,
                device_info=DeviceInfo(
                    target_name=handle.target_name,
                    platform=handle.platform,
                    runtime_version=handle.runtime_version,
                    bootloader_version=handle.bootloader_version,
                    flash_size=handle.flash_size,
                    chip_type=handle.chip_type,
                ),
                archive_directory=archive_directory,
            )
            self._progress("Resolving package", 100)
            target_version = FirmwareVersion.parse(artifact.version)

            if current is not None and target_version == current:
                self._say(VerbosityLevel.MINIMAL, "Nothing to update as device is already running the requested version.", "green")
                result = OperationResult.success(operation=operation, target=handle.target_name, version=artifact.version)
                result.metadata["up_to_date"] = True
                result.metadata["previous_version"] = handle.runtime_version
                return result

            if current is not None and target_version < current:
                if not allow_downgrade:
                    raise FlasherError(
                        f"Refusing to downgrade {handle.target_name} from {current} to {target_version}.",
                        payload={"device_version": str(current), "package_version": str(target_version)},
                    )
                logger.warning(f"Downgrading {handle.target_name} from {current} to {target_version}")

            if artifact.runtime_file is None or not artifact.runtime_file.is_file():
                raise WriteFailedError(f"Package {artifact.descriptor} has no runtime image to write.")
            image = artifact.runtime_file
            package_address = artifact.runtime_start_address
            self._say(VerbosityLevel.NORMAL, f"Updating to {artifact.version}", "yellow")
        else:
            image = runtime_file
            target_version = None

        self._enter_bootloader(session, handle)

        try:
            device_address = session.get_runtime_start_address()
        except TransportError as e:
            handle.invalidate()
            raise CantConnectToDeviceError(f"Error reading CLR start address: {e}", endpoint=session.endpoint)
        if package_address is not None and package_address != device_address:
            raise AddressMismatchError(
                f"Can't update device. CLR addresses are different: device expects "
                f"0x{device_address:08X}, package has 0x{package_address:08X}.",
                payload={
                    "device_address": f"0x{device_address:08X}",
                    "package_address": f"0x{package_address:08X}",
                },
            )

        self._say(VerbosityLevel.NORMAL, f"Starting CLR update at 0x{device_address:08X}...")
        self._write(session, image, device_address)

        self._say(VerbosityLevel.NORMAL, "Rebooting...")
        try:
            session.reboot(RebootMode.NORMAL)
        except TransportError as e:
            handle.invalidate()
            raise CantConnectToDeviceError(f"Error rebooting after CLR update: {e}", endpoint=session.endpoint)

        result = OperationResult.success(
            operation=operation,
            target=handle.target_name,
            version=str(target_version) if target_version else "",
        )
        result.metadata["previous_version"] = handle.runtime_version
        result.metadata["address"] = device_address
        result.metadata["image"] = str(image)
        if target_version is not None and current is not None and target_version < current:
            result.add_warning(f"Downgraded from {current} to {target_version}")
        return result

    def _enter_bootloader(self, session: TransportSession, handle: DeviceHandle) -> None:
        """Make sure the bootloader owns the flash. Tried once."""
        try:
            if handle.firmware_kind == FirmwareKind.RUNTIME:
                self._say(VerbosityLevel.DETAILED, "Launching nanoBooter...")
                try:
                    launched = session.connect_to_bootloader()
                except TransportError as e:
                    logger.info(f"Reboot to bootloader failed: {e}")
                    launched = False

                if not launched:
                    current = FirmwareVersion.try_parse(handle.runtime_version)
                    if current is not None and current < FirmwareVersion.parse(MIN_SOFT_REBOOT_VERSION):
                        raise IncompatibleDeviceVersionError(
                            "The device is running a version that doesn't support rebooting by software. "
                            "Please update your device using a JTAG/DFU connection.",
                            payload={"device_version": str(current), "required_version": MIN_SOFT_REBOOT_VERSION},
                        )
                    raise DeviceUnresponsiveError("Failed to launch nanoBooter. Quitting update.")
                handle.firmware_kind = FirmwareKind.BOOTLOADER

            if session.ping() != FirmwareKind.BOOTLOADER:
                raise DeviceUnresponsiveError("Device is not running nanoBooter. Quitting update.")
        except TransportError as e:
            handle.invalidate()
            raise CantConnectToDeviceError(f"Lost connection while launching nanoBooter: {e}", endpoint=session.endpoint)

    def _write(self, session: TransportSession, image: Path, address: int) -> None:
        self._progress("Writing", 0)
        try:
            written = session.write_binary(str(image), address)
        except TransportError as e:
            raise WriteFailedError(
                f"Exception occurred when writing {image.name}: {e}",
                payload={"error_text": str(e)},
            )
        if not written:
            self._say(VerbosityLevel.NORMAL, "FAILED!", "red")
            raise WriteFailedError(f"Writing {image.name} at 0x{address:08X} did not verify.")
        self._progress("Writing", 100)
        self._say(VerbosityLevel.NORMAL, "OK", "green")

    def deploy_application(
        self,
        session: TransportSession,
        image_path: Union[str, Path],
        address: Optional[int] = None,
    ) -> OperationResult:
        """
        Write an application image to the deployment region and reboot.

        Args:
            session: Transport to the device
            image_path: Deployment image (.bin)
            address: Override of the device-reported deployment address
        """
        operation = "deploy_application"
        image_path = Path(image_path)
        if not image_path.is_file():
            return OperationResult.failure(
                operation=operation,
                error=f"Couldn't find application file: {image_path}",
                exit_code=ExitCode.E9008,
                error_kind=ErrorKind.INVALID_ARGUMENT,
            )

        with capture_logs() as logs:
            try:
                handle = self._bring_up(session, operation)
                try:
                    if address is None:
                        address = session.get_deployment_start_address()
                    self._say(VerbosityLevel.NORMAL, f"Deploying {image_path.name} at 0x{address:08X}...")
                    self._write(session, image_path, address)
                    self._say(VerbosityLevel.NORMAL, "Rebooting...")
                    session.reboot(RebootMode.NORMAL)
                except TransportError as e:
                    handle.invalidate()
                    raise CantConnectToDeviceError(f"Error deploying application: {e}", endpoint=session.endpoint)

                result = OperationResult.success(
                    operation=operation,
                    target=handle.target_name or "",
                    version=handle.runtime_version or "",
                )
                result.metadata["address"] = address
                result.metadata["image"] = str(image_path)
                result.metadata["bytes_len"] = image_path.stat().st_size
            except FlasherError as e:
                result = OperationResult.from_error(operation, e)
                self._say(VerbosityLevel.MINIMAL, e.message, "red")
            finally:
                self._close(session)
            result.logs = logs
            return result

    def flash_esp32_firmware(
        self,
        port: str,
        device_info: DeviceInfo,
        target_name: Optional[str] = None,
        version: Optional[str] = None,
        channel: PackageChannel = PackageChannel.STABLE,
        partition_table_size: Optional[int] = None,
        archive_directory: Optional[Union[str, Path]] = None,
        flash_tool: Optional[VendorFlashTool] = None,
    ) -> OperationResult:
        """
        Flash a complete ESP32 image set (bootloader, partition table, runtime).

        The partition layout is computed from the chip's flash size, or the
        partition_table_size override, before the flash tool is invoked.
        """
        operation = "flash_esp32_firmware"
        target_name = target_name or device_info.target_name
        if not target_name:
            raise ValueError("A target name is required to flash ESP32 firmware")
        if self.resolver is None:
            raise ValueError("A package resolver is required to flash ESP32 firmware")

        with capture_logs() as logs:
            try:
                artifact = self.resolver.resolve(
                    target_name,
                    version=version,
                    channel=channel,
                    device_info=device_info,
                    partition_table_size=partition_table_size,
                    archive_directory=archive_directory,
                )
                if artifact.layout is None:
                    raise FlasherError(
                        f"Can't compute the partition layout of {target_name} without the flash size."
                    )

                tool = flash_tool or EspTool(port, chip=device_info.chip_type or "auto")
                self._say(VerbosityLevel.NORMAL, f"Updating ESP32 firmware to {artifact.version}...")
                for line in artifact.layout.describe():
                    self._say(VerbosityLevel.DETAILED, f"  {line}")

                exit_code = tool.flash(artifact.layout)
                if exit_code != ExitCode.OK:
                    result = OperationResult.failure(
                        operation=operation,
                        error=f"{tool.name} failed writing {artifact.descriptor}",
                        exit_code=exit_code,
                        error_kind=ErrorKind.WRITE_FAILED,
                        target=target_name,
                        version=artifact.version,
                    )
                    result.metadata["error_payload"] = {"tool_output": tool.last_output[-500:]}
                else:
                    self._say(VerbosityLevel.NORMAL, "OK", "green")
                    result = OperationResult.success(operation=operation, target=target_name, version=artifact.version)
                    result.metadata["partitions"] = {
                        f"0x{address:X}": str(path) for address, path in artifact.layout.items()
                    }
            except FlasherError as e:
                result = OperationResult.from_error(operation, e, target=target_name)
                self._say(VerbosityLevel.MINIMAL, e.message, "red")
            result.logs = logs
            return result
