"""
Runtime settings.

Defaults can be overridden through the environment:

    NANOFF_CACHE_PATH       firmware cache root
    NANOFF_REPOSITORY_URL   package repository API root
    NANOFF_HTTP_TIMEOUT     repository request timeout, seconds
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from nano_firmware_flasher.core.bringup import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_STEP_TIMEOUT,
)
from nano_firmware_flasher.firmware.package import DEFAULT_CACHE_PATH
from nano_firmware_flasher.firmware.repository import DEFAULT_HTTP_TIMEOUT, DEFAULT_REPOSITORY_URL


@dataclass
class FlasherSettings:
    """Settings shared by the CLI and library callers."""
    cache_path: Path = field(default_factory=lambda: DEFAULT_CACHE_PATH)
    repository_url: str = DEFAULT_REPOSITORY_URL
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    per_step_timeout: float = DEFAULT_STEP_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FlasherSettings":
        """
        Build settings from environment variables.

        Raises:
            ValueError: If NANOFF_HTTP_TIMEOUT is not a positive number.
        """
        env = os.environ if environ is None else environ
        settings = cls()

        cache_path = env.get("NANOFF_CACHE_PATH")
        if cache_path:
            settings.cache_path = Path(cache_path).expanduser()

        repository_url = env.get("NANOFF_REPOSITORY_URL")
        if repository_url:
            settings.repository_url = repository_url

        timeout = env.get("NANOFF_HTTP_TIMEOUT")
        if timeout:
            try:
                settings.http_timeout = float(timeout)
            except ValueError:
                raise ValueError(f"Invalid NANOFF_HTTP_TIMEOUT '{timeout}'. Use a number of seconds.")
            if settings.http_timeout <= 0:
                raise ValueError(f"Invalid NANOFF_HTTP_TIMEOUT '{timeout}'. It must be positive.")

        return settings
