"""
Logging

Single entry point for every logger in the bridge. Records carry the chat and
message being routed so concurrent events can be told apart in the output.

Quick start:

```python
from logger import get_logger, set_event_context, log_execution_time

logger = get_logger("bridge.router")

set_event_context(chat_id="oc_123", message_id="om_456")
logger.info("Event accepted", extra={"kind": "text"})

with log_execution_time("gateway exchange", logger):
    reply = await exchange.run(request)
```

Output:
- console: coloured, human readable
- files: one JSON object per line (bridge.log, plus error.log for ERROR and above)
"""
import json
import logging
import os
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "larkbridge"


def _get_log_dir() -> Path:
    """Log directory, resolved through app_paths when it is importable."""
    try:
        from utils.app_paths import get_logs_dir
        return get_logs_dir()
    except Exception:
        import tempfile
        return Path(tempfile.gettempdir()) / "larkbridge" / "logs"


_log_dir = _get_log_dir()


LOG_CONFIG = {
    "level": os.getenv("LOG_LEVEL", "INFO").upper(),
    "console_enabled": True,
    "file_enabled": os.getenv("LOG_FILE_ENABLED", "true").lower() != "false",
    "file": str(_log_dir / "bridge.log"),
    "error_file": str(_log_dir / "error.log"),
    "max_size": 50 * 1024 * 1024,  # 50MB
    "backup_count": 10,
}

# ============================================================
# Per-event context
# ============================================================
_chat_id: ContextVar[str] = ContextVar("chat_id", default="")
_message_id: ContextVar[str] = ContextVar("message_id", default="")


def set_event_context(chat_id: str = "", message_id: str = "") -> None:
    """
    Bind the chat / message being routed to the current task.

    Args:
        chat_id: platform conversation id
        message_id: platform message id
    """
    if chat_id:
        _chat_id.set(chat_id)
    if message_id:
        _message_id.set(message_id)


def clear_event_context() -> None:
    """Reset the per-event context (end of routing)."""
    _chat_id.set("")
    _message_id.set("")


@contextmanager
def log_execution_time(operation: str, logger: Optional[logging.Logger] = None):
    """
    Log how long the wrapped block took.

    Args:
        operation: operation name
        logger: target logger (defaults to the root bridge logger)
    """
    if logger is None:
        logger = logging.getLogger(ROOT_LOGGER_NAME)

    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{operation} finished", extra={
            "operation": operation,
            "duration_ms": round(duration_ms, 2),
        })


# ============================================================
# Formatters
# ============================================================

class _ContextFilter(logging.Filter):
    """Stamp the per-event context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.chat_id = getattr(record, "chat_id", None) or _chat_id.get() or "-"
        record.message_id = getattr(record, "message_id", None) or _message_id.get() or "-"
        return True


class _ConsoleFormatter(logging.Formatter):
    """Coloured console output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] [%(chat_id)s:%(message_id)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_colors = sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if self.use_colors:
            record = logging.makeLogRecord(record.__dict__)
            color = self.COLORS.get(record.levelname, "")
            record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """
    JSON line formatter for the log files.

    Example:
    {"ts":"2026-01-01T12:00:00.123+00:00","level":"INFO","chat":"oc_1","msg_id":"om_1","logger":"bridge.router","msg":"Reply delivered","chunks":1}
    """

    _RESERVED = {
        "name", "msg", "args", "created", "levelname", "levelno",
        "pathname", "filename", "module", "exc_info", "exc_text",
        "stack_info", "lineno", "funcName", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "taskName", "chat_id", "message_id",
    }

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "chat": getattr(record, "chat_id", "-"),
            "msg_id": getattr(record, "message_id", "-"),
            "logger": record.name.replace(f"{ROOT_LOGGER_NAME}.", ""),
            "file": f"{record.filename}:{record.lineno}",
            "func": record.funcName or "-",
            "msg": record.getMessage(),
        }

        if record.exc_info:
            log["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "msg": str(record.exc_info[1]) if record.exc_info[1] else None,
                "trace": "".join(traceback.format_exception(*record.exc_info)).strip(),
            }

        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                try:
                    json.dumps(value)
                    log[key] = value
                except (TypeError, ValueError):
                    log[key] = str(value)

        return json.dumps(log, ensure_ascii=False, default=str)


# ============================================================
# Logger management
# ============================================================

class _LoggerManager:
    """Process-wide logger registry."""

    _initialized = False
    _loggers: dict[str, logging.Logger] = {}

    @classmethod
    def setup(cls) -> None:
        if cls._initialized:
            return

        if LOG_CONFIG["file_enabled"]:
            try:
                Path(LOG_CONFIG["file"]).parent.mkdir(parents=True, exist_ok=True)
                Path(LOG_CONFIG["error_file"]).parent.mkdir(parents=True, exist_ok=True)
            except OSError:
                import tempfile
                fallback_dir = Path(tempfile.gettempdir()) / "larkbridge_logs"
                fallback_dir.mkdir(parents=True, exist_ok=True)
                LOG_CONFIG["file"] = str(fallback_dir / "bridge.log")
                LOG_CONFIG["error_file"] = str(fallback_dir / "error.log")

        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(LOG_CONFIG["level"])
        root.handlers.clear()

        context_filter = _ContextFilter()

        if LOG_CONFIG["console_enabled"]:
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(LOG_CONFIG["level"])
            console.setFormatter(_ConsoleFormatter())
            console.addFilter(context_filter)
            root.addHandler(console)

        if LOG_CONFIG["file_enabled"]:
            from logging.handlers import RotatingFileHandler

            file_handler = RotatingFileHandler(
                LOG_CONFIG["file"],
                maxBytes=LOG_CONFIG["max_size"],
                backupCount=LOG_CONFIG["backup_count"],
                encoding="utf-8",
            )
            file_handler.setLevel(LOG_CONFIG["level"])
            file_handler.setFormatter(_JsonFormatter())
            file_handler.addFilter(context_filter)
            root.addHandler(file_handler)

            error_handler = RotatingFileHandler(
                LOG_CONFIG["error_file"],
                maxBytes=LOG_CONFIG["max_size"],
                backupCount=LOG_CONFIG["backup_count"],
                encoding="utf-8",
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(_JsonFormatter())
            error_handler.addFilter(context_filter)
            root.addHandler(error_handler)

        cls._initialized = True

    @classmethod
    def get(cls, name: Optional[str] = None) -> logging.Logger:
        if not cls._initialized:
            cls.setup()

        if not name or name == ROOT_LOGGER_NAME:
            full_name = ROOT_LOGGER_NAME
        else:
            full_name = f"{ROOT_LOGGER_NAME}.{name}"
        if full_name not in cls._loggers:
            cls._loggers[full_name] = logging.getLogger(full_name)

        return cls._loggers[full_name]


# ============================================================
# Public API
# ============================================================

def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger under the bridge root.

    Args:
        name: dotted component name, e.g. "bridge.exchange"

    Returns:
        logging.Logger
    """
    return _LoggerManager.get(name)
