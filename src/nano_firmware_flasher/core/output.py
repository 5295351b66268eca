"""
Output sinks for user-facing progress messages.

Components receive a sink in their constructor instead of writing to a
process-wide console. The CLI passes a ConsoleSink; tests pass a
CapturingSink and assert on the recorded lines.
"""

import logging
from contextlib import contextmanager
from enum import IntEnum
from typing import List, Optional, Tuple

from rich.console import Console


class VerbosityLevel(IntEnum):
    """How much progress output an operation produces."""
    QUIET = 0
    MINIMAL = 1
    NORMAL = 2
    DETAILED = 3
    DIAGNOSTIC = 4


class OutputSink:
    """Receiver of user-facing progress lines."""

    def write_line(self, text: str = "", style: Optional[str] = None) -> None:
        raise NotImplementedError


class ConsoleSink(OutputSink):
    """Writes lines to a rich Console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def write_line(self, text: str = "", style: Optional[str] = None) -> None:
        self.console.print(text, style=style, highlight=False)


class LoggingSink(OutputSink):
    """Forwards lines to a logger; red and yellow lines become errors and warnings."""

    def __init__(self, logger_name: str = "nano_firmware_flasher.output"):
        self.logger = logging.getLogger(logger_name)

    def write_line(self, text: str = "", style: Optional[str] = None) -> None:
        if not text:
            return
        if style == "red":
            self.logger.error(text)
        elif style == "yellow":
            self.logger.warning(text)
        else:
            self.logger.info(text)


class CapturingSink(OutputSink):
    """Records lines (and their styles) in memory."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, Optional[str]]] = []

    def write_line(self, text: str = "", style: Optional[str] = None) -> None:
        self.records.append((text, style))

    @property
    def lines(self) -> List[str]:
        return [text for text, _ in self.records]

    @property
    def output(self) -> str:
        return "\n".join(self.lines)

    def reset(self) -> None:
        self.records.clear()


class NullSink(OutputSink):
    """Discards everything."""

    def write_line(self, text: str = "", style: Optional[str] = None) -> None:
        return None


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def capture_logs(logger_name: str = "nano_firmware_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)
