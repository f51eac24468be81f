"""
Logging setup.

Call setup_logging() once at startup, then get_logger(__name__) per module.
Never log access or refresh tokens.
"""
import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


class _JsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with level/logger/location fields."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["function"] = record.funcName
        log_record["line"] = record.lineno


def setup_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name, defaults to settings.log_level
        json_format: Emit JSON lines, defaults to settings.log_json
    """
    if level is None or json_format is None:
        from equiauth.config import get_settings
        settings = get_settings()
        level = level or settings.log_level
        json_format = settings.log_json if json_format is None else json_format

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        formatter: logging.Formatter = _JsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s | %(levelname)-7s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%H:%M:%S",
        )
    handler.setFormatter(formatter)
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging configured (level={level}, json={json_format})")


def get_logger(name: str) -> logging.Logger:
    """Get a module logger."""
    return logging.getLogger(name)
