"""Tests for the firmware package resolver and its cache."""

import os
import time

import pytest

from fakes import FakeRepositoryClient, package, write_package_zip
from nano_firmware_flasher.core.errors import (
    DownloadFailedError,
    ExtractionFailedError,
    PackageNotFoundError,
    UnsupportedFlashSizeError,
)
from nano_firmware_flasher.core.messages import ExitCode
from nano_firmware_flasher.core.output import CapturingSink, VerbosityLevel
from nano_firmware_flasher.firmware.package import (
    EXTRACTED_MARKER,
    README_CONTENT,
    README_FILE,
    FirmwarePackageResolver,
)
from nano_firmware_flasher.firmware.versions import PackageChannel
from nano_firmware_flasher.protocol import DeviceInfo


def make_resolver(tmp_path, client=None, sink=None, verbosity=VerbosityLevel.NORMAL):
    return FirmwarePackageResolver(
        cache_path=tmp_path / "cache",
        client=client,
        sink=sink or CapturingSink(),
        verbosity=verbosity,
    )


class TestCaching:
    """Download once, reuse afterwards."""

    def test_second_resolve_does_not_download(self, tmp_path):
        client = FakeRepositoryClient([package("ESP32_REV0", "1.8.1.292")])
        resolver = make_resolver(tmp_path, client)

        first = resolver.resolve("ESP32_REV0")
        mtime = first.package_file.stat().st_mtime_ns
        second = resolver.resolve("ESP32_REV0")

        assert client.downloads == ["ESP32_REV0 1.8.1.292"]
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.package_file == first.package_file
        assert second.package_file.stat().st_mtime_ns == mtime
        assert (first.location / "nanoCLR.bin").read_bytes() == b"nanoCLR.bin 1.8.1.292"

    def test_pinned_version_hit_needs_no_network(self, tmp_path):
        client = FakeRepositoryClient([package("ESP32_REV0", "1.8.1.292")])
        resolver = make_resolver(tmp_path, client)
        resolver.resolve("ESP32_REV0", "1.8.1.292")

        client.offline = True
        lookups = client.lookups
        artifact = resolver.resolve("ESP32_REV0", "1.8.1.292")

        assert artifact.from_cache is True
        assert client.lookups == lookups
        assert len(client.downloads) == 1

    def test_readme_written(self, tmp_path):
        resolver = make_resolver(tmp_path, FakeRepositoryClient([package("ESP32_REV0", "1.8.1.292")]))
        resolver.resolve("ESP32_REV0")

        readme = tmp_path / "cache" / README_FILE
        assert readme.read_text(encoding="utf-8") == README_CONTENT

    def test_switching_versions_re_extracts(self, tmp_path):
        client = FakeRepositoryClient([
            package("ESP32_REV0", "1.8.0.0"),
            package("ESP32_REV0", "1.9.0.0"),
        ])
        resolver = make_resolver(tmp_path, client)
        resolver.resolve("ESP32_REV0", "1.8.0.0")
        artifact = resolver.resolve("ESP32_REV0", "1.9.0.0")

        target_dir = tmp_path / "cache" / "ESP32_REV0"
        assert (target_dir / EXTRACTED_MARKER).read_text() == "ESP32_REV0-1.9.0.0.zip"
        assert (artifact.location / "nanoCLR.bin").read_bytes() == b"nanoCLR.bin 1.9.0.0"
        assert resolver.is_cached("ESP32_REV0", "1.9.0.0")
        assert not resolver.is_cached("ESP32_REV0", "1.8.0.0")

    def test_cached_versions_newest_first(self, tmp_path):
        client = FakeRepositoryClient([
            package("ESP32_REV0", "1.2.0.0"),
            package("ESP32_REV0", "1.10.0.0"),
        ])
        resolver = make_resolver(tmp_path, client)
        resolver.resolve("ESP32_REV0", "1.2.0.0")
        resolver.resolve("ESP32_REV0", "1.10.0.0")

        assert [str(v) for v in resolver.cached_versions("ESP32_REV0")] == ["1.10.0.0", "1.2.0.0"]
        assert resolver.cached_versions("ESP32_REV0", preview=True) == []

    def test_stale_packages_removed_after_download(self, tmp_path):
        resolver = make_resolver(tmp_path, FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")]))
        target_dir = resolver.target_directory("ESP32_REV0")
        old = write_package_zip(target_dir / "ESP32_REV0-1.0.0.0.zip")
        month_ago = time.time() - 40 * 24 * 3600
        os.utime(old, (month_ago, month_ago))

        resolver.resolve("ESP32_REV0")

        assert not old.exists()


class TestLatest:
    def test_latest_is_numeric_max(self, tmp_path):
        client = FakeRepositoryClient([
            package("ESP32_REV0", "1.2.0.0"),
            package("ESP32_REV0", "1.10.0.0"),
            package("ESP32_REV0", "1.9.9.9"),
        ])
        artifact = make_resolver(tmp_path, client).resolve("ESP32_REV0")

        assert artifact.version == "1.10.0.0"

    def test_preview_channel_file_name(self, tmp_path):
        client = FakeRepositoryClient([
            package("ESP32_REV0", "1.9.0.12", channel=PackageChannel.PREVIEW),
        ])
        artifact = make_resolver(tmp_path, client).resolve("ESP32_REV0", channel=PackageChannel.PREVIEW)

        assert artifact.package_file.name == "ESP32_REV0-1.9.0.12-preview.zip"


class TestFailures:
    """Not found, download failures and bad packages."""

    def test_not_found(self, tmp_path):
        resolver = make_resolver(tmp_path, FakeRepositoryClient([package("ESP32_REV0", "1.8.0.0")]))

        with pytest.raises(PackageNotFoundError) as exc_info:
            resolver.resolve("NO_SUCH_TARGET")
        assert exc_info.value.exit_code == ExitCode.E9005
        assert exc_info.value.payload["target"] == "NO_SUCH_TARGET"

    def test_download_failed_without_cache(self, tmp_path):
        sink = CapturingSink()
        client = FakeRepositoryClient([package("ESP32_REV0", "1.8.0.0")], fail=["ESP32_REV0"])
        resolver = make_resolver(tmp_path, client, sink=sink)

        with pytest.raises(DownloadFailedError) as exc_info:
            resolver.resolve("ESP32_REV0")
        assert exc_info.value.exit_code == ExitCode.E9007
        assert ("Failure to download package and couldn't find one in the cache.", "red") in sink.records
        assert not list((tmp_path / "cache" / "ESP32_REV0").glob("*.zip"))

    def test_download_failed_falls_back_to_cache(self, tmp_path):
        sink = CapturingSink()
        client = FakeRepositoryClient([package("ESP32_REV0", "1.8.0.0")])
        resolver = make_resolver(tmp_path, client, sink=sink, verbosity=VerbosityLevel.DIAGNOSTIC)
        resolver.resolve("ESP32_REV0")

        client.packages.append(package("ESP32_REV0", "1.9.0.0"))
        client.fail.add("ESP32_REV0")
        artifact = resolver.resolve("ESP32_REV0")

        assert artifact.version == "1.8.0.0"
        assert artifact.from_cache is True
        assert "Using cached firmware package" in sink.lines

    def test_pinned_version_does_not_fall_back(self, tmp_path):
        client = FakeRepositoryClient([package("ESP32_REV0", "1.8.0.0"), package("ESP32_REV0", "1.9.0.0")])
        resolver = make_resolver(tmp_path, client)
        resolver.resolve("ESP32_REV0", "1.8.0.0")

        client.offline = True
        with pytest.raises(DownloadFailedError):
            resolver.resolve("ESP32_REV0", "1.9.0.0")

    def test_corrupt_package(self, tmp_path):
        client = FakeRepositoryClient([package("ESP32_REV0", "1.8.0.0")], corrupt=["ESP32_REV0"])

        with pytest.raises(ExtractionFailedError) as exc_info:
            make_resolver(tmp_path, client).resolve("ESP32_REV0")
        assert exc_info.value.exit_code == ExitCode.E9006

    def test_no_client_and_nothing_cached(self, tmp_path):
        with pytest.raises(DownloadFailedError):
            make_resolver(tmp_path).resolve("ESP32_REV0")

    def test_invalid_version(self, tmp_path):
        with pytest.raises(ValueError):
            make_resolver(tmp_path).resolve("ESP32_REV0", "latest")


class TestBindings:
    """Image to address bindings per platform."""

    def test_esp32_layout_from_device(self, tmp_path):
        client = FakeRepositoryClient([package("ESP32_S3", "1.9.0.0")])
        device = DeviceInfo(target_name="ESP32_S3", platform="ESP32", flash_size=0x400000, chip_type="ESP32-S3")
        artifact = make_resolver(tmp_path, client).resolve("ESP32_S3", device_info=device)

        assert artifact.layout.addresses == [0x0, 0x8000, 0x10000]
        assert artifact.bindings[0x10000] == artifact.location / "nanoCLR.bin"
        assert artifact.bindings[0x8000].name == "partitions_4mb.bin"
        assert artifact.runtime_start_address == 0x10000
        assert artifact.bootloader_start_address == 0x0

    def test_esp32_without_flash_size_binds_runtime_only(self, tmp_path):
        client = FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")])
        artifact = make_resolver(tmp_path, client).resolve("ESP32_REV0")

        assert artifact.layout is None
        assert list(artifact.bindings) == [0x10000]

    def test_esp32_unsupported_flash_size(self, tmp_path):
        client = FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")])
        device = DeviceInfo(target_name="ESP32_REV0", platform="ESP32", flash_size=0x800, chip_type="ESP32")

        with pytest.raises(UnsupportedFlashSizeError) as exc_info:
            make_resolver(tmp_path, client).resolve("ESP32_REV0", device_info=device)
        assert "4MB" in exc_info.value.payload["supported_flash_sizes"]
        assert client.lookups == 0
        assert client.downloads == []
        assert not (tmp_path / "cache" / "ESP32_REV0").exists()

    def test_esp32_partition_override_checked_before_download(self, tmp_path):
        client = FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")])
        device = DeviceInfo(target_name="ESP32_REV0", platform="ESP32", chip_type="ESP32")

        with pytest.raises(UnsupportedFlashSizeError):
            make_resolver(tmp_path, client).resolve("ESP32_REV0", device_info=device, partition_table_size=1)
        assert client.downloads == []

    def test_stm32_addresses_from_hex(self, tmp_path):
        files = {
            "nanoCLR.hex": ":020000040800F2\n:10800000" + "00" * 16 + "70\n",
            "nanoBooter.hex": ":020000040800F2\n:10000000" + "00" * 16 + "F0\n",
            "nanoCLR.bin": b"CLR",
        }
        client = FakeRepositoryClient([package("ST_STM32F769I_DISCOVERY", "1.9.0.0", "stm32")], files={
            "ST_STM32F769I_DISCOVERY": files,
        })
        artifact = make_resolver(tmp_path, client).resolve("ST_STM32F769I_DISCOVERY")

        assert artifact.runtime_start_address == 0x08008000
        assert artifact.bootloader_start_address == 0x08000000
        assert artifact.runtime_file.name == "nanoCLR.bin"
        assert artifact.bindings[0x08008000] == artifact.runtime_file

    def test_virtual_device_runtime(self, tmp_path):
        client = FakeRepositoryClient([package("WIN_DLL_nanoCLR", "1.9.0.0", "")])
        artifact = make_resolver(tmp_path, client).resolve("WIN_DLL_nanoCLR")

        assert artifact.runtime_file.name == "nanoFramework.nanoCLR.dll"
        assert artifact.runtime_file.parent.name == "WIN_DLL_nanoCLR-1.9.0.0"
        assert artifact.runtime_file.read_bytes() == b"runtime 1.9.0.0"


class TestArchiveSource:
    """Packages taken from a firmware archive instead of the repository."""

    def _archive(self, tmp_path, version="1.8.0.0"):
        archive = tmp_path / "archive"
        archive.mkdir()
        write_package_zip(archive / f"ESP32_REV0-{version}.zip", package("ESP32_REV0", version))
        (archive / f"ESP32_REV0-{version}.zip.json").write_text(
            f'{{"Name": "ESP32_REV0", "Version": "{version}", "Platform": "esp32", "IsPreview": false}}'
        )
        return archive

    def test_latest_from_archive(self, tmp_path):
        archive = self._archive(tmp_path)
        artifact = make_resolver(tmp_path).resolve("ESP32_REV0", archive_directory=archive)

        assert artifact.version == "1.8.0.0"
        assert artifact.package_file.parent == tmp_path / "cache" / "ESP32_REV0"
        assert (artifact.location / "nanoCLR.bin").read_bytes() == b"nanoCLR.bin 1.8.0.0"

    def test_missing_from_archive(self, tmp_path):
        archive = self._archive(tmp_path)

        with pytest.raises(PackageNotFoundError) as exc_info:
            make_resolver(tmp_path).resolve("ESP32_S3", archive_directory=archive)
        assert exc_info.value.exit_code == ExitCode.E9015

        with pytest.raises(PackageNotFoundError) as exc_info:
            make_resolver(tmp_path).resolve("ESP32_REV0", "2.0.0.0", archive_directory=archive)
        assert exc_info.value.exit_code == ExitCode.E9015


class TestClearCache:
    def test_clear_cache(self, tmp_path):
        resolver = make_resolver(tmp_path, FakeRepositoryClient([package("ESP32_REV0", "1.8.0.0")]))
        resolver.resolve("ESP32_REV0")

        assert resolver.clear_cache() == ExitCode.OK
        assert not (tmp_path / "cache").exists()

    def test_clear_missing_cache(self, tmp_path):
        assert make_resolver(tmp_path).clear_cache() == ExitCode.OK
