"""
Logging Configuration for the Character Chat API.

Console logs are colored one-liners while developing and one JSON object per
line in every other environment. Each record is tagged with the correlation
ID of the request that produced it, so a streamed reply, its quota charge and
its upstream call can be traced together.

Key Components:
- `CorrelationFilter`: Copies the correlation ID from a context variable onto
  each record.
- `StructuredFormatter`: JSON output. Fields passed through `extra=` are
  nested under "extra", with credentials masked.
- `ColoredConsoleFormatter`: Level-colored output for local runs.
- `get_logging_config` / `setup_logging`: Build and apply the `dictConfig`.
- `log_function_call`: Decorator timing sync or async handlers.

Chatty client libraries (httpx, httpcore, openai) are held at WARNING so that
per-chunk traffic from upstream does not drown the application logs.
"""

import asyncio
import functools
import json
import logging
import logging.config
import os
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variable for request correlation ID
correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

APP_LOGGERS = ("api", "core", "providers", "services")
QUIET_LOGGERS = ("httpx", "httpcore", "openai")
SERVER_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi")

SECRET_FIELDS = {"api_key", "pawan_api_key", "upstream_api_key", "authorization"}
MASK = "***"

# Attributes every LogRecord carries; anything else arrived through `extra=`
_RECORD_ATTRS = set(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "correlation_id", "taskName"}


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached through `extra=`, with credentials masked"""
    return {
        key: MASK if key.lower() in SECRET_FIELDS and value else value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS
    }


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        corr_id = correlation_id.get()
        if corr_id:
            record.correlation_id = corr_id
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        corr_id = getattr(record, "correlation_id", None) or correlation_id.get()
        if corr_id:
            entry["correlation_id"] = corr_id

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }

        extras = record_extras(record)
        if extras:
            entry["extra"] = extras

        return json.dumps(entry, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self):
        super().__init__(datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        corr_id = getattr(record, "correlation_id", None)
        line = "[{time}] {level:8} {name}{corr}: {message}".format(
            time=self.formatTime(record, self.datefmt),
            level=record.levelname,
            name=record.name,
            corr=f" [{corr_id}]" if corr_id else "",
            message=record.getMessage(),
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return f"{self.COLORS.get(record.levelname, '')}{line}{self.RESET}"


def get_logging_config(
    environment: Optional[str] = None, log_level: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build the dictConfig for an environment.

    Falls back to the ENVIRONMENT and LOG_LEVEL variables when arguments are
    omitted; only "development" gets the colored console formatter.
    """
    environment = (environment or os.getenv("ENVIRONMENT", "development")).lower()
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()

    loggers: Dict[str, Any] = {}
    for name in APP_LOGGERS:
        loggers[name] = {"level": log_level, "handlers": ["console"], "propagate": False}
    for name in SERVER_LOGGERS:
        loggers[name] = {"level": "INFO", "handlers": ["console"], "propagate": False}
    for name in QUIET_LOGGERS:
        loggers[name] = {"level": "WARNING", "handlers": ["console"], "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"correlation": {"()": CorrelationFilter}},
        "formatters": {
            "structured": {"()": StructuredFormatter},
            "colored_console": {"()": ColoredConsoleFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "colored_console" if environment == "development" else "structured",
                "filters": ["correlation"],
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": loggers,
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging(environment: Optional[str] = None, log_level: Optional[str] = None):
    logging.config.dictConfig(get_logging_config(environment, log_level))
    logging.getLogger("core.logging").info(
        "Logging initialized",
        extra={"environment": environment or os.getenv("ENVIRONMENT", "development")},
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_correlation_id(corr_id: str):
    correlation_id.set(corr_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id.get()


def log_function_call(logger: logging.Logger):
    """Log entry, exit and duration of the decorated (sync or async) function"""

    def decorator(func):
        name = func.__name__

        def elapsed_ms(started: float) -> float:
            return round((time.perf_counter() - started) * 1000, 2)

        def on_error(e: Exception, started: float):
            logger.error(
                f"{name} failed: {e}",
                extra={
                    "function_name": name,
                    "execution_time_ms": elapsed_ms(started),
                    "success": False,
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )

        def on_done(started: float):
            logger.debug(
                f"{name} finished",
                extra={
                    "function_name": name,
                    "execution_time_ms": elapsed_ms(started),
                    "success": True,
                },
            )

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                started = time.perf_counter()
                logger.debug(f"{name} called")
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    on_error(e, started)
                    raise
                on_done(started)
                return result

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            started = time.perf_counter()
            logger.debug(f"{name} called")
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                on_error(e, started)
                raise
            on_done(started)
            return result

        return sync_wrapper

    return decorator
