"""
Structured logging for tiered-pipeline

Every module logs through ``get_logger(__name__)``. Records are emitted as
one JSON object per line on stdout (python-json-logger); pass context such
as ``source_id`` or ``run_id`` through ``extra`` and it becomes a top-level
key. ``LOG_FORMAT=text`` switches to a human-readable format for local runs.
"""
import logging
import os
import sys
import time

from pythonjsonlogger.json import JsonFormatter

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

DEFAULT_LOGGER_NAME = "tiered-pipeline"
PACKAGE_PREFIX = "tiered_pipeline"

JSON_FIELDS = "%(timestamp)s %(level)s %(logger)s %(module)s %(function)s %(message)s"
TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(threadName)s] %(message)s"


class PipelineJsonFormatter(JsonFormatter):
    """Fills the fixed JSON keys from the LogRecord."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = log_record.get("timestamp") or self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["module"] = record.module
        log_record["function"] = record.funcName
        # Window workers log concurrently
        log_record["thread"] = record.threadName


def _level(name: str | None) -> int:
    return LOG_LEVELS.get((name or "INFO").upper(), logging.INFO)


def _formatter(format_type: str) -> logging.Formatter:
    if format_type == "json":
        return PipelineJsonFormatter(fmt=JSON_FIELDS, datefmt="%Y-%m-%dT%H:%M:%S%z")
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME,
    level: str | None = None,
    format_type: str | None = None,
) -> logging.Logger:
    """
    (Re)configure a logger with a single stdout handler

    Args:
        name: Logger name
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (default $LOG_LEVEL, then INFO)
        format_type: "json" or "text" (default $LOG_FORMAT, then json)

    Returns:
        The configured logger; it does not propagate to the root logger
    """
    log_level = _level(level or os.getenv("LOG_LEVEL"))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(_formatter(format_type or os.getenv("LOG_FORMAT", "json")))

    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Logger for ``name``, configured from the environment on first use."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    return setup_logger(name)


def set_level(level: str) -> None:
    """
    Apply ``level`` to every pipeline logger created so far

    Module loggers are configured at import time, before the CLI has read
    its arguments or .env file.
    """
    log_level = _level(level)
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if not isinstance(logger, logging.Logger):
            continue
        if name == DEFAULT_LOGGER_NAME or name.startswith(PACKAGE_PREFIX):
            logger.setLevel(log_level)
            for handler in logger.handlers:
                handler.setLevel(log_level)


class log_operation:
    """
    Logs the start and the outcome of a pipeline stage with its duration

    Usage:
        with log_operation("write cleaned tier", logger=logger, source_id="orders"):
            writer.write_cleaned(day)

    On success the closing record has ``status="success"``; on an exception
    it is logged at ERROR with ``status="error"`` and the exception re-raised.
    """

    def __init__(self, operation_name: str, logger: logging.Logger | None = None, **extra_fields):
        self.operation_name = operation_name
        self.logger = logger or get_logger()
        self.extra_fields = extra_fields
        self.start_time = 0.0
        self.duration = 0.0

    def _extra(self, **fields) -> dict:
        return {"operation": self.operation_name, **fields, **self.extra_fields}

    def __enter__(self) -> "log_operation":
        self.start_time = time.monotonic()
        self.logger.info(f"Starting: {self.operation_name}", extra=self._extra())
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.duration = time.monotonic() - self.start_time
        elapsed = round(self.duration, 3)

        if exc_type is None:
            self.logger.info(
                f"Completed: {self.operation_name}",
                extra=self._extra(duration_seconds=elapsed, status="success"),
            )
        else:
            self.logger.error(
                f"Failed: {self.operation_name}",
                extra=self._extra(
                    duration_seconds=elapsed,
                    status="error",
                    error_type=exc_type.__name__,
                    error_message=str(exc_val),
                ),
            )
        return False
