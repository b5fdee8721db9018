"""
Structured logging configuration.

- Development / testing: human-readable colored format
- Production: JSON format (log aggregator compatible)
- Log level: controlled via LOG_LEVEL (config or env variable)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Extra fields copied from ``logger.x(..., extra={...})`` into JSON records
_EXTRA_FIELDS = (
    "action",
    "decision_id",
    "outcome",
    "scenario_id",
    "constraint_id",
    "duration_ms",
    "violation_count",
    "warning_count",
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored one-line records; decision context is appended as key=value tags."""

    COLORS = {"DEBUG": "\033[36m", "INFO": "\033[32m", "WARNING": "\033[33m", "ERROR": "\033[31m"}
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")
        duration = getattr(record, "duration_ms", None)
        dur_str = f" [{duration:.1f}ms]" if duration is not None else ""
        msg = record.getMessage()
        tags = "".join(
            f" {key}={getattr(record, key)}"
            for key in ("scenario_id", "decision_id", "outcome")
            if getattr(record, key, None) is not None
        )
        base = (f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: "
                f"{msg}{dur_str}{tags}")
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(settings) -> None:
    """
    Set up structured logging for the engine.

    Reads LOG_LEVEL from the config object, then env (default: DEBUG in dev,
    INFO in prod).
    Development  → ReadableFormatter on stderr
    Production   → JSONFormatter on stderr
    """
    is_testing = getattr(settings, "TESTING", False)
    is_prod = not getattr(settings, "DEBUG", False) and not is_testing

    level_name = getattr(settings, "LOG_LEVEL", None) or os.getenv(
        "LOG_LEVEL", "INFO" if is_prod else "DEBUG"
    )
    level = getattr(logging, level_name.upper(), logging.INFO)

    formatter = JSONFormatter() if is_prod else ReadableFormatter()

    # Single stream handler on the package logger, replaced on reconfigure
    pkg_logger = logging.getLogger("portfolio_engine")
    pkg_logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)

    if not is_testing:
        pkg_logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
