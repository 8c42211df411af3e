"""Logging configuration for the auto-sync backup service.

The API process and the runner process both call `configure_logging` once at
start-up. The root logger gets:
- A custom TRACE level.
- Console output.
- Size-rotated and midnight-rotated files under `log_dir`, each paired with
  an error-only twin for triage.
- A filter that masks credential-looking values (refresh tokens, passwords,
  destination tokens) before any handler formats a record.

Calling `configure_logging` more than once is a no-op.
"""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path
from typing import List, Optional, Tuple


TRACE_LEVEL_NUM = 5

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_SECRET_PATTERN = re.compile(
    r"(?P<key>refresh_token|access_token|destination_token|password|secret)"
    r"(?P<sep>['\"]?\s*[:=]\s*['\"]?)"
    r"(?P<value>[^'\"\s,}]+)",
    re.IGNORECASE,
)


def _install_trace_level() -> None:
    """Install the TRACE logging level and `Logger.trace` helper."""

    if logging.getLevelName(TRACE_LEVEL_NUM) != "TRACE":
        logging.addLevelName(TRACE_LEVEL_NUM, "TRACE")

    if not hasattr(logging.Logger, "trace"):

        def trace(self: logging.Logger, message: str, *args, **kwargs) -> None:
            if self.isEnabledFor(TRACE_LEVEL_NUM):
                self._log(TRACE_LEVEL_NUM, message, args, **kwargs)

        logging.Logger.trace = trace  # type: ignore[attr-defined]


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]


class SecretRedactionFilter(logging.Filter):
    """Mask `key=value` / `"key": "value"` pairs whose key names a secret.

    The record message is rendered once, redacted, and the args are cleared
    so that handlers format the already-masked text.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except Exception:
            return True

        redacted = _SECRET_PATTERN.sub(
            lambda m: f"{m.group('key')}{m.group('sep')}{_mask(m.group('value'))}",
            rendered,
        )
        if redacted != rendered:
            record.msg = redacted
            record.args = ()
        return True


def _resolve_level(log_level: str, debug: bool) -> int:
    """Translate a level name into a numeric level.

    Raises:
        ValueError: When the provided log_level is invalid.
    """

    name = str(log_level or "").strip().upper()
    if not name:
        name = "DEBUG" if debug else "INFO"

    if name == "TRACE":
        return TRACE_LEVEL_NUM

    level = getattr(logging, name, None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    return level


def _file_handlers(
    log_dir: str,
    log_filename: str,
    level: int,
    max_bytes: int,
    backup_count: int,
) -> List[logging.Handler]:
    """Build the rotating file handlers (regular + error-only, size + daily)."""

    stem = Path(log_filename).stem
    suffix = Path(log_filename).suffix or ".log"
    base = Path(log_dir)
    base.mkdir(parents=True, exist_ok=True)

    layout: List[Tuple[str, bool, int]] = [
        (f"{stem}{suffix}", False, level),
        (f"{stem}.error{suffix}", False, logging.ERROR),
        (f"{stem}.day{suffix}", True, level),
        (f"{stem}.day.error{suffix}", True, logging.ERROR),
    ]

    handlers: List[logging.Handler] = []
    for filename, daily, handler_level in layout:
        if daily:
            handler: logging.Handler = TimedRotatingFileHandler(
                filename=str(base / filename),
                when="midnight",
                backupCount=backup_count,
                utc=True,
                encoding="utf-8",
            )
            handler.suffix = "%Y-%m-%d"  # type: ignore[attr-defined]
        else:
            handler = RotatingFileHandler(
                filename=str(base / filename),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        handler.setLevel(handler_level)
        handlers.append(handler)
    return handlers


def configure_logging(
    *,
    log_dir: str = "/app/logs",
    log_level: str = "INFO",
    debug: bool = False,
    log_filename: str = "autosync.log",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    file_logging: bool = True,
) -> None:
    """Configure application-wide logging.

    Args:
        log_dir: Directory where log files are stored.
        log_level: Root log level name (e.g. INFO, DEBUG, TRACE).
        debug: When True, defaults to DEBUG unless log_level explicitly overrides it.
        log_filename: Log file name (within log_dir).
        max_bytes: Rotate the size-based log files after this size.
        backup_count: Number of rotated files to keep.
        file_logging: When False only console output is configured.

    Raises:
        ValueError: When the provided log_level is invalid.
    """

    _install_trace_level()

    root = logging.getLogger()
    if getattr(root, "_autosync_logging_configured", False):
        return

    level = _resolve_level(log_level, debug)
    root.setLevel(level)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    redaction = SecretRedactionFilter()

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    handlers[0].setLevel(level)

    if file_logging:
        try:
            handlers.extend(_file_handlers(log_dir, log_filename, level, max_bytes, backup_count))
        except OSError:
            logging.getLogger(__name__).warning(
                "Failed to configure file logging under %s; continuing with console-only logging",
                log_dir,
            )

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(redaction)
        root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    logging.captureWarnings(True)
    root._autosync_logging_configured = True  # type: ignore[attr-defined]


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger instance."""

    return logging.getLogger(name or __name__)
