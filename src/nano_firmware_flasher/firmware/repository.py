"""
Remote package repository client.

Talks to the Cloudsmith JSON API the firmware packages are published on.
Three repositories exist, one per channel:

- stable:     nanoframework-images
- preview:    nanoframework-images-dev
- community:  nanoframework-images-community-targets

Listing is paged (100 per page) and stops at an empty page or the API's
"Invalid page." answer.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests

from nano_firmware_flasher.core.bringup import CancellationToken
from nano_firmware_flasher.core.errors import (
    CacheUnavailableError,
    DownloadFailedError,
    OperationCancelledError,
    PackageNotFoundError,
)
from nano_firmware_flasher.models.registry import SupportedPlatform

from .versions import FirmwarePackageDescriptor, FirmwareVersion, PackageChannel

logger = logging.getLogger(__name__)

DEFAULT_REPOSITORY_URL = "https://api.cloudsmith.io/v1/packages/net-nanoframework/"
DEFAULT_HTTP_TIMEOUT = 30.0
PAGE_SIZE = 100
CHUNK_SIZE = 8192

REPOSITORIES = {
    PackageChannel.STABLE: "nanoframework-images",
    PackageChannel.PREVIEW: "nanoframework-images-dev",
    PackageChannel.COMMUNITY: "nanoframework-images-community-targets",
}

_PLATFORM_TAGS = {p.value for p in SupportedPlatform}


@dataclass(frozen=True)
class RemotePackage:
    """A package as published in the repository."""
    descriptor: FirmwarePackageDescriptor
    download_url: str
    uploaded_at: Optional[str] = None


def _platform_from_tags(item: Dict[str, Any]) -> str:
    tags = (item.get("tags") or {}).get("info") or []
    for tag in tags:
        if tag in _PLATFORM_TAGS:
            return tag
    return ""


def _package_from_json(item: Dict[str, Any], channel: PackageChannel) -> Optional[RemotePackage]:
    name = item.get("name")
    version = item.get("version")
    if not name or FirmwareVersion.try_parse(version) is None:
        logger.debug(f"Skipping repository entry without usable name/version: {item!r}")
        return None
    descriptor = FirmwarePackageDescriptor(
        name=name,
        version=version,
        platform=_platform_from_tags(item),
        channel=channel,
    )
    return RemotePackage(
        descriptor=descriptor,
        download_url=item.get("cdn_url") or "",
        uploaded_at=item.get("uploaded_at"),
    )


class RepositoryClient:
    """
    Client for the firmware package repository.

    Args:
        base_url: API root; one path segment per repository is appended
        timeout: Per request timeout in seconds
        session: Optional requests.Session (connection reuse, tests)
        cancellation: Token checked between pages and download chunks
    """

    def __init__(
        self,
        base_url: str = DEFAULT_REPOSITORY_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.cancellation = cancellation

    def _check_cancelled(self) -> None:
        if self.cancellation is not None and self.cancellation.cancelled:
            raise OperationCancelledError("Repository request cancelled")

    def _get(self, repository: str, params: Dict[str, Any]) -> requests.Response:
        self._check_cancelled()
        url = f"{self.base_url}{repository}/"
        logger.debug(f"GET {url} {params}")
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise DownloadFailedError(
                f"Error querying repository '{repository}': {e}",
                payload={"error_text": str(e)},
            )
        return response

    def _query(self, repository: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Run a paged query and return every JSON item."""
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            response = self._get(repository, dict(params, page=page, page_size=PAGE_SIZE))
            body = response.text
            # past the last page the API answers 404 "Invalid page."
            if body.strip() == "[]" or '"Invalid page."' in body:
                break
            if not response.ok:
                raise DownloadFailedError(
                    f"Repository '{repository}' answered {response.status_code}",
                    payload={"error_text": body[:500]},
                )
            try:
                data = response.json()
            except ValueError as e:
                raise DownloadFailedError(
                    f"Repository '{repository}' returned invalid JSON: {e}",
                    payload={"error_text": body[:500]},
                )
            if not isinstance(data, list) or not data:
                break
            items.extend(data)
            if len(data) < PAGE_SIZE:
                break
            page += 1
        return items

    def list_packages(
        self,
        community: bool = False,
        preview: bool = False,
        platform: Optional[Union[SupportedPlatform, str]] = None,
    ) -> List[FirmwarePackageDescriptor]:
        """
        List packages of one channel, optionally filtered by platform tag.

        Every published version is returned; callers decide what "latest" is.
        """
        if community:
            channel = PackageChannel.COMMUNITY
        else:
            channel = PackageChannel.from_preview(preview)
        params: Dict[str, Any] = {}
        if platform:
            params["query"] = f"tag:{platform}"

        packages = []
        for item in self._query(REPOSITORIES[channel], params):
            package = _package_from_json(item, channel)
            if package is not None:
                packages.append(package.descriptor)
        logger.info(f"{len(packages)} package(s) listed from {REPOSITORIES[channel]}")
        return packages

    def _find_in(self, channel: PackageChannel, name: str, version: Optional[str]) -> List[RemotePackage]:
        query = f"name:^{name}$"
        if version:
            query += f" version:^{version}$"
        found = []
        for item in self._query(REPOSITORIES[channel], {"query": query}):
            package = _package_from_json(item, channel)
            # the API query is a regex match, keep exact hits only
            if package is not None and package.descriptor.name == name:
                found.append(package)
        return found

    def find_package(self, name: str, version: Optional[str] = None, preview: bool = False) -> RemotePackage:
        """
        Find one package.

        Without a version the numerically newest version wins. Stable
        lookups fall back to the community repository when the target is
        not a reference target.

        Raises:
            PackageNotFoundError: No package matches name/version.
            DownloadFailedError: Repository unreachable or answered garbage.
        """
        channels = [PackageChannel.from_preview(preview)]
        if not preview:
            channels.append(PackageChannel.COMMUNITY)

        for channel in channels:
            candidates = self._find_in(channel, name, version)
            if version:
                wanted = FirmwareVersion.parse(version)
                candidates = [c for c in candidates if c.descriptor.parsed_version == wanted]
            if candidates:
                package = max(candidates, key=lambda c: c.descriptor.parsed_version)
                logger.info(f"Found {package.descriptor} in {REPOSITORIES[channel]}")
                return package
            logger.debug(f"{name} {version or 'latest'} not found in {REPOSITORIES[channel]}")

        raise PackageNotFoundError(
            f"Couldn't find {name} {version or '(latest)'} in the repositories.",
            payload={"target": name, "version": version or "latest"},
        )

    def download(
        self,
        package: Union[RemotePackage, FirmwarePackageDescriptor],
        dest_path: Union[str, Path],
    ) -> Path:
        """
        Stream a package to dest_path.

        A bare descriptor is looked up first to get its download URL.

        The file is written to a temporary sibling and moved in place once
        complete, so an interrupted download never leaves a partial zip.

        Raises:
            DownloadFailedError: Network or HTTP failure; remote text attached.
        """
        if isinstance(package, FirmwarePackageDescriptor):
            package = self.find_package(package.name, package.version, package.is_preview)
        if not package.download_url:
            raise DownloadFailedError(f"No download URL for {package.descriptor}")

        dest_path = Path(dest_path)
        partial = dest_path.with_name(dest_path.name + ".part")
        logger.info(f"Downloading {package.descriptor} from {package.download_url}")

        try:
            with self.session.get(package.download_url, stream=True, timeout=self.timeout) as response:
                try:
                    response.raise_for_status()
                except requests.HTTPError as e:
                    raise DownloadFailedError(
                        f"Error downloading {package.descriptor}: {e}",
                        payload={"error_text": response.text[:500]},
                    )
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        self._check_cancelled()
                        if chunk:
                            f.write(chunk)
            os.replace(partial, dest_path)
        except requests.RequestException as e:
            raise DownloadFailedError(
                f"Error downloading {package.descriptor}: {e}",
                payload={"error_text": str(e)},
            )
        except OSError as e:
            raise CacheUnavailableError(f"Can't write {dest_path}: {e}", payload={"error_text": str(e)})
        finally:
            if partial.exists():
                partial.unlink()

        logger.info(f"Firmware downloaded to: {dest_path}")
        return dest_path
