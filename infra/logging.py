"""
Centralized Logging
-------------------
Structured logging with request_id propagation.

Design:
- Every incoming call gets a request_id (contextvar, async-safe)
- Console output through rich, file output as JSON lines
- Severity discipline: INFO=state, WARNING=policy/recoverable, ERROR=failure

Usage:
    from infra.logging import get_logger, RequestContext

    logger = get_logger("service_bus")

    with RequestContext() as request_id:
        logger.info("Handling call")
"""

from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional
import contextvars
import json
import logging
import uuid

from rich.console import Console
from rich.logging import RichHandler


_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def get_request_id() -> Optional[str]:
    return _request_id_var.get()


class RequestContext:
    """
    Scope a request_id over a block.

        with RequestContext(incoming_id) as request_id:
            ...
    """

    def __init__(self, request_id: Optional[str] = None):
        self._request_id = request_id or generate_request_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = _request_id_var.set(self._request_id)
        return self._request_id

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _request_id_var.reset(self._token)


class RequestIdFilter(logging.Filter):
    """Adds request_id from context to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line for file logging."""

    EXTRA_FIELDS = ("tool_name", "execution_time_ms", "success", "details")

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in self.EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Prefix console lines with the request id when there is one."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        request_id = getattr(record, "request_id", "-")
        if request_id and request_id != "-":
            return f"[{request_id}] {message}"
        return message


_logging_initialized = False
_log_file_path: Optional[Path] = None


def configure_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    console: bool = True,
    file: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
    force: bool = False,
) -> None:
    """
    Configure the toolgate logger tree.

    Args:
        level: Logging level for console output
        log_dir: Directory for the JSON log file (default ./logs)
        console: Enable rich console output
        file: Enable rotating JSON file output
        force: Reconfigure even if already configured
    """
    global _logging_initialized, _log_file_path

    if _logging_initialized and not force:
        return

    root_logger = logging.getLogger("toolgate")
    root_logger.setLevel(logging.DEBUG if file else level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    request_filter = RequestIdFilter()

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        console_handler.setLevel(level)
        console_handler.setFormatter(ConsoleFormatter("%(name)s: %(message)s"))
        console_handler.addFilter(request_filter)
        root_logger.addHandler(console_handler)

    if file:
        log_path = Path(log_dir) if log_dir else Path("logs")
        log_path.mkdir(parents=True, exist_ok=True)
        _log_file_path = log_path / "toolgate.log"

        file_handler = RotatingFileHandler(
            str(_log_file_path), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(request_filter)
        root_logger.addHandler(file_handler)

    _logging_initialized = True


def get_log_file_path() -> Optional[Path]:
    return _log_file_path


def get_logger(name: str) -> logging.Logger:
    """Logger under the toolgate namespace ('toolgate.' prefix added if missing)."""
    if not name.startswith("toolgate"):
        name = f"toolgate.{name}"
    return logging.getLogger(name)
