"""Logging setup for the sitewright assistant.

Records are tagged with the request they belong to: the orchestrator wraps
each request in :func:`request_context`, and :class:`RequestContextFilter`
copies the active request/document ids onto every record passing through
the configured handlers. Records carrying an :class:`AssistantError` (via
``exc_info`` or ``extra={"assistant_error": exc}``) also get its code and
technical detail, which never reach the user.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

from ..ai.errors import AssistantError

__all__ = ["RequestContextFilter", "current_request", "get_log_path", "request_context", "setup_logging"]

_DEFAULT_LOG_DIR = Path.home() / ".sitewright" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(request)s | %(message)s%(error_detail)s"
_NO_REQUEST = "-"
_CONFIGURED = False
_LOG_PATH: Path | None = None

_REQUEST: ContextVar[str] = ContextVar("sitewright_request", default=_NO_REQUEST)


@contextmanager
def request_context(request_id: int | str, document_id: str | None = None) -> Iterator[str]:
    """Tag records logged inside the block with *request_id* and *document_id*."""

    label = f"req={request_id}"
    if document_id:
        label = f"{label} doc={document_id}"
    token = _REQUEST.set(label)
    try:
        yield label
    finally:
        _REQUEST.reset(token)


def current_request() -> str:
    return _REQUEST.get()


class RequestContextFilter(logging.Filter):
    """Adds ``request`` and ``error_detail`` attributes used by the log format."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request = _REQUEST.get()
        error = getattr(record, "assistant_error", None)
        if error is None and record.exc_info:
            error = record.exc_info[1]
        if isinstance(error, AssistantError):
            record.error_code = error.code
            record.error_detail = f" [{error.code}] {error.detail}" if error.detail else f" [{error.code}]"
        else:
            record.error_code = None
            record.error_detail = ""
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and an optional console handler."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "sitewright.log"

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    context_filter = RequestContextFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("SITEWRIGHT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
