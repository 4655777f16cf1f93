# coding: utf-8
"""
Logging configuration with loguru for the review pipeline processes

The API server and the review worker each write their own daily files.
Standard-library loggers (tenacity retry notices, crud) are routed into
loguru so every record ends up in the same sinks.
"""
import inspect
import logging
import sys
from pathlib import Path
from loguru import logger
import sentry_sdk

from config.config import LOG_LEVEL, ENVIRONMENT, SENTRY_DSN


LOGS_DIR = Path(__file__).parent.parent / "logs"

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[service]} | "
    "{name}:{function}:{line} | {message}"
)

# Third-party loggers and the level they are held at
QUIET_LOGGERS = {
    "aiohttp": logging.WARNING,
    "apscheduler": logging.WARNING,
    "asyncio": logging.WARNING,
    "httpx": logging.WARNING,
    "openai": logging.WARNING,
    "sqlalchemy.engine": logging.ERROR,
    "uvicorn.access": logging.WARNING,
}


class InterceptHandler(logging.Handler):
    """Forwards standard-library log records to loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Report the caller of logging, not this handler
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def is_review_record(record) -> bool:
    """Records emitted by the review pipeline package"""
    return (record["name"] or "").startswith("src.services.review")


def setup_logging(service: str = "api") -> None:
    """
    Setup loguru logging for one process

    Args:
        service: Process name ("api" or "worker"), used in file names and records
    """
    logger.remove()
    logger.configure(extra={"service": service})
    LOGS_DIR.mkdir(exist_ok=True)

    logger.add(
        sys.stdout,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<magenta>{extra[service]}</magenta> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=LOG_LEVEL,
        colorize=True,
    )

    # Everything this process logs
    logger.add(
        LOGS_DIR / f"{service}_{{time:YYYY-MM-DD}}.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
        encoding="utf-8",
    )

    # Review runs: lifecycle, phase transitions, failures
    logger.add(
        LOGS_DIR / f"{service}_review_runs_{{time:YYYY-MM-DD}}.log",
        format=FILE_FORMAT,
        level="INFO",
        filter=is_review_record,
        rotation="00:00",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
    )

    logger.add(
        LOGS_DIR / f"{service}_error_{{time:YYYY-MM-DD}}.log",
        format=FILE_FORMAT,
        level="ERROR",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
    )

    if SENTRY_DSN:
        logger.add(sentry_sink, level="ERROR", format="{message}")

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    logger.info(f"Coin Advisor {service} | Environment: {ENVIRONMENT} | Log level: {LOG_LEVEL}")


def sentry_sink(message):
    """
    Send ERROR and CRITICAL records to Sentry

    A record carrying an exception is sent once, as that exception.
    """
    record = message.record

    if record["exception"]:
        sentry_sdk.capture_exception(record["exception"].value)
        return

    sentry_sdk.capture_message(
        record["message"],
        level="fatal" if record["level"].name == "CRITICAL" else "error",
        extras={
            "service": record["extra"].get("service"),
            "function": record["function"],
            "file": record["file"].path,
            "line": record["line"],
        },
    )
