"""Tests for the firmware archive: listing, adding and retention pruning."""

import json

import pytest

from fakes import FakeRepositoryClient, package, write_package_zip
from nano_firmware_flasher.core.messages import ExitCode
from nano_firmware_flasher.core.output import CapturingSink, VerbosityLevel
from nano_firmware_flasher.firmware.archive import (
    ArchiveEntry,
    FirmwareArchiveManager,
    filter_entries,
    latest_entry,
    package_file_names,
    plan_prune,
    scan_archive,
    select_remote_targets,
)
from nano_firmware_flasher.firmware.versions import PackageChannel


def archive_entry(archive, name, version, platform="esp32", preview=False):
    """Put a package and its sidecar into an archive directory."""
    archive.mkdir(exist_ok=True)
    content, sidecar = package_file_names(name, version, preview)
    write_package_zip(archive / content, package(name, version, platform))
    entry = ArchiveEntry(sidecar, name, version, platform, preview)
    (archive / sidecar).write_text(entry.to_json(), encoding="utf-8")
    return entry


def names(archive):
    return sorted(p.name for p in archive.iterdir())


class TestPureDecisions:
    """Listing and pruning decisions over a snapshot."""

    ENTRIES = [
        ArchiveEntry("A-1.0.0.0.zip.json", "A", "1.0.0.0", "esp32"),
        ArchiveEntry("A-1.10.0.0.zip.json", "A", "1.10.0.0", "esp32"),
        ArchiveEntry("A-1.2.0.0-preview.zip.json", "A", "1.2.0.0", "esp32", True),
        ArchiveEntry("B-2.0.0.0.zip.json", "B", "2.0.0.0", "stm32"),
    ]

    def test_filter_entries(self):
        assert [e.name for e in filter_entries(self.ENTRIES, False, "stm32")] == ["B"]
        assert len(filter_entries(self.ENTRIES, False)) == 3
        assert len(filter_entries(self.ENTRIES, True)) == 1

    def test_latest_entry(self):
        assert latest_entry(self.ENTRIES, False, "A").version == "1.10.0.0"
        assert latest_entry(self.ENTRIES, True, "A").version == "1.2.0.0"
        assert latest_entry(self.ENTRIES, False, "C") is None

    def test_plan_prune_same_target_and_channel_only(self):
        kept = self.ENTRIES[1]
        assert plan_prune(self.ENTRIES, kept) == [self.ENTRIES[0]]
        assert plan_prune(self.ENTRIES, kept, keep_all_versions=True) == []

    def test_select_remote_targets(self):
        remote = [
            package("A", "1.9.9.9"),
            package("A", "1.10.0.0"),
            package("B", "1.0.0.0"),
        ]
        selected = select_remote_targets(remote)
        assert selected["A"].version == "1.10.0.0"
        assert set(selected) == {"A", "B"}
        assert select_remote_targets(remote, "A", "1.9.9.9")["A"].version == "1.9.9.9"


class TestListing:
    def test_empty_archive(self, tmp_path):
        """A missing archive lists nothing and prints exactly one line."""
        sink = CapturingSink()
        manager = FirmwareArchiveManager(tmp_path / "archive", sink=sink)

        assert manager.get_target_list(verbosity=VerbosityLevel.DETAILED) == []
        assert len(sink.lines) == 1
        assert sink.lines[0].startswith("Listing targets from firmware archive")

    def test_quiet_listing_prints_nothing(self, tmp_path):
        sink = CapturingSink()
        manager = FirmwareArchiveManager(tmp_path / "archive", sink=sink)

        manager.get_target_list(platform="esp32")
        assert sink.lines == []

    def test_lists_all_versions_of_channel(self, tmp_path):
        archive = tmp_path / "archive"
        archive_entry(archive, "ESP32_REV0", "1.8.0.0")
        archive_entry(archive, "ESP32_REV0", "1.9.0.0")
        archive_entry(archive, "ESP32_REV0", "1.9.1.0", preview=True)
        archive_entry(archive, "ST_STM32F769I_DISCOVERY", "1.9.0.0", platform="stm32")

        manager = FirmwareArchiveManager(archive)
        listed = manager.get_target_list(platform="esp32")

        assert sorted(d.version for d in listed) == ["1.8.0.0", "1.9.0.0"]
        assert manager.get_latest_version(False, "ESP32_REV0").version == "1.9.0.0"
        assert manager.get_latest_version(True, "ESP32_REV0").channel == PackageChannel.PREVIEW
        assert manager.get_latest_version(False, "") is None

    def test_bad_sidecar_skipped(self, tmp_path):
        archive = tmp_path / "archive"
        archive_entry(archive, "ESP32_REV0", "1.8.0.0")
        (archive / "broken.zip.json").write_text("{not json")
        (archive / "incomplete.zip.json").write_text(json.dumps({"Name": "X"}))

        assert [e.name for e in scan_archive(archive)] == ["ESP32_REV0"]


class TestDownloadToArchive:
    """Adding packages with retention."""

    def test_add_latest_prunes_older(self, tmp_path):
        archive = tmp_path / "archive"
        archive_entry(archive, "ESP32_REV0", "1.8.0.0")
        client = FakeRepositoryClient([package("ESP32_REV0", "1.8.0.0"), package("ESP32_REV0", "1.9.0.0")])
        manager = FirmwareArchiveManager(archive, client=client)

        code = manager.download_firmware_from_repository(target_name="ESP32_REV0")

        assert code == ExitCode.OK
        assert names(archive) == ["ESP32_REV0-1.9.0.0.zip", "ESP32_REV0-1.9.0.0.zip.json"]
        sidecar = json.loads((archive / "ESP32_REV0-1.9.0.0.zip.json").read_text())
        assert sidecar == {"Name": "ESP32_REV0", "Version": "1.9.0.0", "Platform": "esp32", "IsPreview": False}

    def test_keep_all_versions(self, tmp_path):
        archive = tmp_path / "archive"
        archive_entry(archive, "ESP32_REV0", "1.8.0.0")
        client = FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")])
        manager = FirmwareArchiveManager(archive, client=client)

        manager.download_firmware_from_repository(target_name="ESP32_REV0", keep_all_versions=True)

        assert len(manager.scan()) == 2
        assert (archive / "ESP32_REV0-1.8.0.0.zip").exists()

    def test_unrelated_target_untouched(self, tmp_path):
        archive = tmp_path / "archive"
        archive_entry(archive, "ESP32_REV0", "1.8.0.0")
        archive_entry(archive, "ESP32_S3", "1.8.0.0")
        archive_entry(archive, "ESP32_REV0", "1.8.5.0", preview=True)
        client = FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")])
        manager = FirmwareArchiveManager(archive, client=client)

        manager.download_firmware_from_repository(target_name="ESP32_REV0")

        listed = names(archive)
        assert "ESP32_S3-1.8.0.0.zip" in listed
        assert "ESP32_REV0-1.8.5.0-preview.zip" in listed
        assert "ESP32_REV0-1.8.0.0.zip" not in listed

    def test_add_is_idempotent(self, tmp_path):
        archive = tmp_path / "archive"
        sink = CapturingSink()
        client = FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")])
        manager = FirmwareArchiveManager(archive, client=client, sink=sink)

        manager.download_firmware_from_repository(target_name="ESP32_REV0", verbosity=VerbosityLevel.DETAILED)
        manager.download_firmware_from_repository(target_name="ESP32_REV0", verbosity=VerbosityLevel.DETAILED)

        assert len(client.downloads) == 1
        assert sum(line.startswith("Added target") for line in sink.lines) == 1
        assert len(manager.scan()) == 1

    def test_failed_download_keeps_old_version(self, tmp_path):
        archive = tmp_path / "archive"
        archive_entry(archive, "ESP32_REV0", "1.8.0.0")
        sink = CapturingSink()
        client = FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")], fail=["ESP32_REV0"])
        manager = FirmwareArchiveManager(archive, client=client, sink=sink)

        code = manager.download_firmware_from_repository(target_name="ESP32_REV0")

        assert code == ExitCode.E9007
        assert names(archive) == ["ESP32_REV0-1.8.0.0.zip", "ESP32_REV0-1.8.0.0.zip.json"]
        assert ("Could not download target ESP32_REV0 1.9.0.0", "red") in sink.records

    def test_partial_failure_keeps_others(self, tmp_path):
        """One failing target does not stop or undo the rest of the platform."""
        archive = tmp_path / "archive"
        client = FakeRepositoryClient(
            [
                package("ESP32_REV0", "1.9.0.0"),
                package("ESP32_S3", "1.9.0.0"),
                package("M5Core2", "1.8.0.0", channel=PackageChannel.COMMUNITY),
            ],
            fail=["ESP32_S3"],
        )
        manager = FirmwareArchiveManager(archive, client=client)

        code = manager.download_firmware_from_repository(platform="esp32")

        assert code == ExitCode.E9007
        assert sorted(e.name for e in manager.scan()) == ["ESP32_REV0", "M5Core2"]

    def test_parallel_workers(self, tmp_path):
        archive = tmp_path / "archive"
        client = FakeRepositoryClient([package(f"TARGET_{i}", "1.0.0.0") for i in range(6)])
        manager = FirmwareArchiveManager(archive, client=client)

        code = manager.download_firmware_from_repository(platform="esp32", max_workers=3)

        assert code == ExitCode.OK
        assert len(manager.scan()) == 6

    def test_prune_limited_to_snapshot(self, tmp_path):
        """Files appearing after the snapshot are never pruned."""
        archive = tmp_path / "archive"
        archive_entry(archive, "ESP32_REV0", "1.8.0.0")

        class LateWriterClient(FakeRepositoryClient):
            def download(self, remote, dest_path):
                # another writer drops a version in while we download
                archive_entry(archive, "ESP32_REV0", "1.8.5.0")
                return super().download(remote, dest_path)

        client = LateWriterClient([package("ESP32_REV0", "1.9.0.0")])
        FirmwareArchiveManager(archive, client=client).download_firmware_from_repository(target_name="ESP32_REV0")

        listed = names(archive)
        assert "ESP32_REV0-1.8.5.0.zip" in listed
        assert "ESP32_REV0-1.8.0.0.zip" not in listed

    def test_nothing_found(self, tmp_path):
        manager = FirmwareArchiveManager(tmp_path / "archive", client=FakeRepositoryClient())

        assert manager.download_firmware_from_repository(target_name="ESP32_REV0") == ExitCode.E9005
        assert manager.download_firmware_from_repository(platform="esp32") == ExitCode.E9005

    def test_repository_unreachable(self, tmp_path):
        client = FakeRepositoryClient()
        client.offline = True
        manager = FirmwareArchiveManager(tmp_path / "archive", client=client)

        assert manager.download_firmware_from_repository(platform="esp32") == ExitCode.E9007

    def test_requires_client(self, tmp_path):
        with pytest.raises(ValueError):
            FirmwareArchiveManager(tmp_path).download_firmware_from_repository(target_name="X")

    def test_virtual_target_is_a_directory(self, tmp_path):
        archive = tmp_path / "archive"
        client = FakeRepositoryClient([package("WIN_DLL_nanoCLR", "1.9.0.0", "")])
        manager = FirmwareArchiveManager(archive, client=client)

        manager.download_firmware_from_repository(target_name="WIN_DLL_nanoCLR")

        assert (archive / "WIN_DLL_nanoCLR-1.9.0.0" / "nanoFramework.nanoCLR.dll").is_file()
        assert (archive / "WIN_DLL_nanoCLR-1.9.0.0.json").is_file()


class TestEndToEnd:
    def test_archive_then_resolve_offline(self, tmp_path):
        """Archive a package online, then resolve it from the archive with no repository."""
        from nano_firmware_flasher.firmware.package import FirmwarePackageResolver

        archive = tmp_path / "archive"
        client = FakeRepositoryClient([package("ESP32_REV0", "1.9.0.0")])
        FirmwareArchiveManager(archive, client=client).download_firmware_from_repository(target_name="ESP32_REV0")

        resolver = FirmwarePackageResolver(cache_path=tmp_path / "cache")
        artifact = resolver.resolve("ESP32_REV0", archive_directory=archive)

        assert artifact.version == "1.9.0.0"
        assert (artifact.location / "nanoCLR.bin").read_bytes() == b"nanoCLR.bin 1.9.0.0"

    def test_empty_archive_then_add_latest(self, tmp_path):
        """Empty listing, add the newest package, list exactly that package."""
        sink = CapturingSink()
        archive = tmp_path / "archive"
        client = FakeRepositoryClient([
            package("ESP32_REV0", "1.2.0.0"),
            package("ESP32_REV0", "1.10.0.0"),
            package("ESP32_REV0", "1.9.9.9"),
        ])
        manager = FirmwareArchiveManager(archive, client=client, sink=sink)

        assert manager.get_target_list(verbosity=VerbosityLevel.DETAILED) == []
        assert len(sink.lines) == 1
        assert str(archive) in sink.lines[0]

        code = manager.download_firmware_from_repository(target_name="ESP32_REV0")
        assert code == ExitCode.OK

        listed = manager.get_target_list()
        assert [str(d) for d in listed] == ["ESP32_REV0 1.10.0.0"]
        assert client.downloads == ["ESP32_REV0 1.10.0.0"]
