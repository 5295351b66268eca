"""Test doubles for the repository client and the HTTP session."""

import json
import zipfile
from pathlib import Path

import requests

from nano_firmware_flasher.core.errors import DownloadFailedError, PackageNotFoundError
from nano_firmware_flasher.firmware.repository import PAGE_SIZE, RemotePackage
from nano_firmware_flasher.firmware.versions import (
    FirmwarePackageDescriptor,
    FirmwareVersion,
    PackageChannel,
)

ESP32_IMAGES = ("bootloader.bin", "partitions_4mb.bin", "nanoCLR.bin")


def write_package_zip(path, descriptor=None, files=None):
    """Write a package zip; nanoCLR.bin carries the version text."""
    path = Path(path)
    if files is None:
        version = descriptor.version if descriptor else "0.0.0.0"
        files = {name: f"{name} {version}".encode() for name in ESP32_IMAGES}
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in files.items():
            archive.writestr(name, data)
    return path


def package(name, version, platform="esp32", channel=PackageChannel.STABLE):
    return FirmwarePackageDescriptor(name, version, platform, channel)


class FakeRepositoryClient:
    """
    In-memory repository.

    Args:
        packages: Published FirmwarePackageDescriptors
        fail: Target names whose download fails
        corrupt: Target names whose download is not a valid zip
        files: Optional {target name: {file name: bytes}} zip contents
    """

    def __init__(self, packages=(), fail=(), corrupt=(), files=None):
        self.packages = list(packages)
        self.fail = set(fail)
        self.corrupt = set(corrupt)
        self.files = files or {}
        self.offline = False
        self.lookups = 0
        self.downloads = []

    def _check_online(self):
        if self.offline:
            raise DownloadFailedError("Error querying repository: connection refused")

    def list_packages(self, community=False, preview=False, platform=None):
        self.lookups += 1
        self._check_online()
        channel = PackageChannel.COMMUNITY if community else PackageChannel.from_preview(preview)
        return [
            p for p in self.packages
            if p.channel == channel and (not platform or p.platform == str(platform))
        ]

    def find_package(self, name, version=None, preview=False):
        self.lookups += 1
        self._check_online()
        wanted = FirmwareVersion.parse(version) if version else None
        candidates = [
            p for p in self.packages
            if p.name == name
            and p.is_preview == preview
            and (wanted is None or p.parsed_version == wanted)
        ]
        if not candidates:
            raise PackageNotFoundError(
                f"Couldn't find {name} {version or '(latest)'} in the repositories.",
                payload={"target": name, "version": version or "latest"},
            )
        best = max(candidates, key=lambda p: p.parsed_version)
        return RemotePackage(best, f"https://dl.example.com/{best.file_stem}.zip")

    def download(self, remote, dest_path):
        descriptor = remote.descriptor if isinstance(remote, RemotePackage) else remote
        self.downloads.append(str(descriptor))
        self._check_online()
        if descriptor.name in self.fail:
            raise DownloadFailedError(f"Error downloading {descriptor}: 503 Server Error")

        dest_path = Path(dest_path)
        if descriptor.name in self.corrupt:
            dest_path.write_bytes(b"this is not a zip")
        elif dest_path.suffix == ".zip":
            write_package_zip(dest_path, descriptor, self.files.get(descriptor.name))
        else:
            dest_path.write_bytes(f"runtime {descriptor.version}".encode())
        return dest_path


def repository_item(name, version, platform="esp32"):
    """A package entry as returned by the repository JSON API."""
    return {
        "name": name,
        "version": version,
        "cdn_url": f"https://dl.example.com/{name}-{version}.zip",
        "uploaded_at": "2024-01-01T00:00:00Z",
        "tags": {"info": [platform, "nanoclr"]},
    }


class FakeResponse:
    def __init__(self, status_code=200, text="", content=b""):
        self.status_code = status_code
        self.text = text
        self.content = content

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """
    Stands in for requests.Session.

    Args:
        repositories: {repository name: [JSON items]}; queries are applied
            and results paged the way the API does
        files: {download url: bytes}
        error: Exception raised by every request
    """

    def __init__(self, repositories=None, files=None, error=None):
        self.repositories = repositories or {}
        self.files = files or {}
        self.error = error
        self.requests = []

    @staticmethod
    def _matches(item, query):
        for token in (query or "").split():
            key, _, value = token.partition(":")
            if key == "name" and item["name"] != value.strip("^$"):
                return False
            if key == "version" and item["version"] != value.strip("^$"):
                return False
            if key == "tag" and value not in item["tags"]["info"]:
                return False
        return True

    def get(self, url, params=None, timeout=None, stream=False):
        self.requests.append((url, dict(params or {})))
        if self.error is not None:
            raise self.error

        if stream:
            if url in self.files:
                return FakeResponse(200, content=self.files[url])
            return FakeResponse(404, text='{"detail": "Not found."}')

        repository = url.rstrip("/").rsplit("/", 1)[-1]
        items = [
            i for i in self.repositories.get(repository, [])
            if self._matches(i, params.get("query"))
        ]
        page = params.get("page", 1)
        page_size = params.get("page_size", PAGE_SIZE)
        start = (page - 1) * page_size
        if page > 1 and start >= len(items):
            return FakeResponse(404, text='{"detail": "Invalid page."}')
        return FakeResponse(200, text=json.dumps(items[start:start + page_size]))
