"""
Reporting for mc-model-preview.

Every component takes an optional reporter. When none is passed, the active
reporter is used, which is a LoggingReporter unless the CLI installs
something else (ActionsReporter inside a workflow).
"""

from __future__ import annotations

import sys
import logging
from contextlib import contextmanager

_LOGGER_NAME = "mcpreview"

__all__ = [
    "Reporter",
    "LoggingReporter",
    "ActionsReporter",
    "SilentReporter",
    "RecordingReporter",
    "get_logger",
    "configure_logging",
    "get_reporter",
    "set_reporter",
    "section",
]


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def configure_logging(verbosity: int = 0) -> None:
    logger = get_logger()
    logger.setLevel(logging.DEBUG if verbosity >= 1 else logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False


class Reporter:
    """
    Interface for reporting progress and problems. Parse failures and render
    failures are reported as warnings, and the run continues.
    """

    def info(self, message: str) -> None:
        raise NotImplementedError

    def warning(self, message: str) -> None:
        raise NotImplementedError

    def error(self, message: str) -> None:
        raise NotImplementedError

    def verbose(self, message: str) -> None:
        pass

    def start_section(self, title: str) -> None:
        self.info(title)

    def end_section(self) -> None:
        pass


class LoggingReporter(Reporter):
    """Routes every message to the 'mcpreview' logger."""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or get_logger()

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def verbose(self, message: str) -> None:
        self.logger.debug(message)


class ActionsReporter(Reporter):
    """
    Writes GitHub Actions workflow commands, so warnings and errors show up
    as annotations on the run.
    """

    def __init__(self, stream=None, debug: bool = False):
        self.stream = stream or sys.stdout
        self.debug = debug

    @staticmethod
    def _escape(message: str) -> str:
        # Workflow commands are line based.
        return message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")

    def _write(self, line: str) -> None:
        self.stream.write(line + "\n")
        self.stream.flush()

    def info(self, message: str) -> None:
        self._write(message)

    def warning(self, message: str) -> None:
        self._write(f"::warning::{self._escape(message)}")

    def error(self, message: str) -> None:
        self._write(f"::error::{self._escape(message)}")

    def verbose(self, message: str) -> None:
        if self.debug:
            self._write(f"::debug::{self._escape(message)}")

    def start_section(self, title: str) -> None:
        self._write(f"::group::{title}")

    def end_section(self) -> None:
        self._write("::endgroup::")


class SilentReporter(Reporter):
    """No-op reporter (quiet mode)."""

    def info(self, message: str) -> None:
        pass

    def warning(self, message: str) -> None:
        pass

    def error(self, message: str) -> None:
        pass


class RecordingReporter(Reporter):
    """Keeps every message, by level. Handy for inspecting a run."""

    def __init__(self):
        self.infos: list[str] = []
        self.warnings: list[str] = []
        self.errors: list[str] = []
        self.verbose_messages: list[str] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def warning(self, message: str) -> None:
        self.warnings.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)

    def verbose(self, message: str) -> None:
        self.verbose_messages.append(message)


_ACTIVE_REPORTER: Reporter | None = None


def set_reporter(reporter: Reporter) -> None:
    global _ACTIVE_REPORTER
    _ACTIVE_REPORTER = reporter


def get_reporter() -> Reporter:
    global _ACTIVE_REPORTER
    if _ACTIVE_REPORTER is None:
        _ACTIVE_REPORTER = LoggingReporter()
    return _ACTIVE_REPORTER


@contextmanager
def section(title: str, reporter: Reporter = None):
    reporter = reporter or get_reporter()
    reporter.start_section(title)
    try:
        yield reporter
    finally:
        reporter.end_section()
