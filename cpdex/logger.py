"""
cpdex Logging System

One-time root logger setup for the settlement engine: a rich console
handler with an engine-aware highlighter (or a plain stream handler) and
an optional rotating file.  Every line passes through
TerminalSafeFormatter, so owner ids and pause reasons cannot inject
escape sequences.

Usage:
    >>> from cpdex.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Pool SOL/USDC initialized")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_FILE_OUTPUT,
)


LOG_FILE_PATH = Path.cwd() / "logs" / "cpdex.log"

ENGINE_THEME = Theme({
    "cpdex.level_critical": "bold red reverse",
    "cpdex.level_debug": "bold dim",
    "cpdex.level_error": "bold red",
    "cpdex.level_info": "bold green",
    "cpdex.level_warning": "bold yellow",
    "cpdex.logger_name": "magenta",
    "cpdex.pair": "bold cyan",
    "cpdex.handle": "dim cyan",
    "cpdex.status": "bold white",
    "cpdex.amount": "yellow",
    "cpdex.timestamp": "bold cyan",
})

# "(name)s" not preceded by "%"
_BARE_SPECIFIER = re.compile(r"(?<!%)\([a-zA-Z_]\w*\)[a-zA-Z]")
_STRFTIME_DIRECTIVE = re.compile(r"%[a-zA-Z]")


def _fallback(what: str, reason: str) -> None:
    # The logging system is not up yet, so complain on stderr directly.
    print(
        f"{time.strftime(str(LOG_DATE_FORMAT.default()))} - cpdex.logger - "
        f"{what}: {reason}. Using default.",
        file=sys.stderr,
    )


class LogManager:
    """Process-wide logging setup, applied at most once."""

    _instance: Optional["LogManager"] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> "LogManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._configured = False
        return cls._instance

    @staticmethod
    def validate_log_format(log_format: str) -> str:
        """Return log_format if a dummy record formats cleanly, else the default."""
        default = str(LOG_FORMAT.default())
        if not log_format:
            return default
        log_format = str(log_format)
        if _BARE_SPECIFIER.search(log_format):
            _fallback("Invalid log format", "specifier without '%'")
            return default
        record = logging.LogRecord("cpdex", logging.INFO, "", 0, "check", (), None)
        try:
            logging.Formatter(fmt=log_format).format(record)
        except (ValueError, KeyError, TypeError) as e:
            _fallback("Invalid log format", str(e))
            return default
        return log_format

    @staticmethod
    def validate_date_format(date_format: str) -> str:
        default = str(LOG_DATE_FORMAT.default())
        if not date_format:
            return default
        date_format = str(date_format)
        if not _STRFTIME_DIRECTIVE.search(date_format):
            _fallback("Invalid date format", "no strftime directive")
            return default
        try:
            time.strftime(date_format)
        except ValueError as e:
            _fallback("Invalid date format", str(e))
            return default
        return date_format

    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
    ) -> None:
        """
        Install handlers on the root logger.  Later calls are no-ops.

        Args:
            log_level: level name; defaults to LOG_LEVEL from .env
            log_file: rotating log path; defaults to ./logs/cpdex.log
            console_output: attach a console handler
            file_output: attach the rotating file; defaults to LOG_FILE_OUTPUT
        """
        with self._lock:
            if self._configured:
                return

            level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
            root = logging.getLogger()
            root.setLevel(level)
            root.handlers.clear()

            formatter = TerminalSafeFormatter(
                fmt=self.validate_log_format(LOG_FORMAT),
                datefmt=self.validate_date_format(LOG_DATE_FORMAT) + " UTC",
            )
            formatter.converter = time.gmtime

            handlers = []
            if console_output:
                if LOG_CONSOLE_HIGHLIGHTING:
                    handlers.append(RichHandler(
                        console=Console(theme=ENGINE_THEME, highlight=False),
                        highlighter=EngineLogHighlighter(),
                        rich_tracebacks=True,
                        show_path=False,
                        show_time=False,
                        show_level=False,
                        markup=False,
                    ))
                else:
                    handlers.append(logging.StreamHandler(sys.stdout))

            if file_output is None:
                file_output = bool(LOG_FILE_OUTPUT)
            if file_output:
                path = log_file or LOG_FILE_PATH
                path.parent.mkdir(parents=True, exist_ok=True)
                handlers.append(logging.handlers.RotatingFileHandler(
                    filename=str(path),
                    maxBytes=LOG_MAX_FILE_SIZE,
                    backupCount=LOG_BACKUP_COUNT,
                    encoding="utf-8",
                ))

            for handler in handlers:
                handler.setLevel(level)
                handler.setFormatter(formatter)
                root.addHandler(handler)
            self._configured = True

    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)

    @property
    def is_configured(self) -> bool:
        return self._configured


class TerminalSafeFormatter(logging.Formatter):
    """Formatter that drops ANSI escapes and control characters except tab and newline."""

    _ansi_escape_re = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-Z\\-_]")
    _control_chars_re = re.compile(r"[\x00-\x08\x0B-\x1F\x7F]")

    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        return cls._control_chars_re.sub("", cls._ansi_escape_re.sub("", text))

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class EngineLogHighlighter(RegexHighlighter):
    """Highlights pairs, record handles, record statuses and amounts."""

    base_style = "cpdex."
    highlights = [
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<pair>\b[A-Z0-9]{2,10}/[A-Z0-9]{2,10}\b)",
        r"(?P<handle>\b[0-9a-f]{16}\b)",
        r"(?P<status>\b(open|partially_filled|filled|cancelled|expired|liquidated|closed)\b)",
        r"(?P<amount>(?<=\s)\d{4,}\b)",
        r"(?P<timestamp>^(.*?)UTC)",
    ]


_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    """Logger for name; configures logging from .env on first use."""
    return _manager.get_logger(name)
