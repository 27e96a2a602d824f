"""
Structured logging

- JSON format for production / CI log shipping
- Colored console format for local use
- Run ID tracking through a context variable
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

from shipyard.core.config import get_settings

# Run currently being orchestrated in this task context
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

_configured = False


class JSONFormatter(logging.Formatter):
    """JSON log formatter (production)"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        run_id = run_id_var.get()
        if run_id:
            log_data["run_id"] = run_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored console formatter (development)"""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)

        run_id = run_id_var.get()
        run_str = f"[{run_id}] " if run_id else ""

        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        formatted = (
            f"{color}{stamp}.{int(record.msecs):03d} {record.levelname:<8}{self.RESET} | "
            f"{run_str}{record.name} | {record.getMessage()}"
        )

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def setup_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> None:
    """Configure the root logger once per process

    Explicit arguments override the settings and force reconfiguration.
    """
    global _configured
    if _configured and level is None and json_format is None:
        return

    settings = get_settings()
    level = (level or settings.log_level).upper()
    if json_format is None:
        json_format = settings.log_json or settings.app_env == "production"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    root_logger.addHandler(handler)

    # Third-party SDKs are chatty at INFO/DEBUG
    for noisy in ("docker", "urllib3", "kubernetes", "slack_sdk"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Return a module logger

    Usage:
        logger = get_logger(__name__)
        logger.info("Stage started", extra={"extra_fields": {"stage": "build"}})
    """
    return logging.getLogger(name)
