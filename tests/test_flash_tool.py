"""Tests for the esptool adapter (subprocess mocked)."""

import subprocess
from unittest.mock import MagicMock

from nano_firmware_flasher.core.messages import ExitCode
from nano_firmware_flasher.firmware.flash_tool import EspTool
from nano_firmware_flasher.firmware.partitions import compute_partition_layout
from nano_firmware_flasher.models.registry import MB


def make_layout(tmp_path, chip="ESP32", write_files=True):
    layout = compute_partition_layout(chip, 4 * MB, tmp_path)
    if write_files:
        for _, path in layout.items():
            path.write_bytes(b"\xff" * 16)
    return layout


class TestEspTool:
    def test_build_command(self, tmp_path):
        tool = EspTool("/dev/ttyUSB0", chip="ESP32-S3", executable=["esptool"])
        command = tool.build_command(make_layout(tmp_path, "ESP32-S3", write_files=False))

        assert command[:10] == [
            "esptool", "--port", "/dev/ttyUSB0", "--baud", "921600",
            "--chip", "esp32s3", "--after", "hard_reset", "write_flash",
        ]
        assert command[10:12] == ["--flash_size", "4MB"]
        assert command[12::2] == ["0x0", "0x8000", "0x10000"]
        assert command[13].endswith("bootloader.bin")

    def test_no_reset(self, tmp_path):
        tool = EspTool("COM3", executable=["esptool"], hard_reset=False)
        assert "no_reset" in tool.build_command(make_layout(tmp_path, write_files=False))

    def test_success(self, tmp_path, monkeypatch):
        run = MagicMock(return_value=subprocess.CompletedProcess([], 0, stdout="Hash of data verified.\n", stderr=""))
        monkeypatch.setattr(subprocess, "run", run)
        tool = EspTool("/dev/ttyUSB0", executable=["esptool"])

        assert tool.flash(make_layout(tmp_path)) == ExitCode.OK
        assert "Hash of data verified." in tool.last_output
        assert run.call_args[0][0][0] == "esptool"

    def test_write_failure(self, tmp_path, monkeypatch):
        run = MagicMock(return_value=subprocess.CompletedProcess([], 2, stdout="", stderr="Failed to connect"))
        monkeypatch.setattr(subprocess, "run", run)
        tool = EspTool("/dev/ttyUSB0", executable=["esptool"])

        assert tool.flash(make_layout(tmp_path)) == ExitCode.E4003
        assert tool.last_output == "Failed to connect"

    def test_tool_missing(self, tmp_path, monkeypatch):
        monkeypatch.setattr(subprocess, "run", MagicMock(side_effect=FileNotFoundError("esptool")))
        tool = EspTool("/dev/ttyUSB0", executable=["esptool"])

        assert tool.flash(make_layout(tmp_path)) == ExitCode.E4000

    def test_missing_images(self, tmp_path, monkeypatch):
        run = MagicMock()
        monkeypatch.setattr(subprocess, "run", run)
        tool = EspTool("/dev/ttyUSB0", executable=["esptool"])

        assert tool.flash(make_layout(tmp_path, write_files=False)) == ExitCode.E4003
        assert "Missing image files" in tool.last_output
        run.assert_not_called()
