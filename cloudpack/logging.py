"""Logging for cloudpack runs.

loguru, disabled for the library by default. The command line turns it on
with setup_logging(); embedding callers may do the same.

Every record carries a ``host`` extra: "local" for the control machine, or
the address of the instance whose remote output is being relayed (see
remote_logger). Remote command output is logged at DEBUG, so it shows on the
console only with --debug but always lands in the log file.

Example:
    from cloudpack.logging import LogConfig, setup_logging, teardown_logging

    handlers = setup_logging(LogConfig(level="DEBUG", file="cloudpack.log"))
    try:
        workflow.bootstrap(create, install, classify, cert)
    finally:
        teardown_logging(handlers)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger

logger.disable("cloudpack")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

LOCAL_HOST = "local"

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level.name.lower(): <7}</level> "
    "<dim>[{extra[host]}]</dim> "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[host]} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where cloudpack logs go.

    Attributes:
        level: Console threshold. DEBUG also shows remote script output.
        file: Optional log file; it records everything down to DEBUG.
        console: Log to stderr.
        rotation: File rotation policy, e.g. "50 MB" or "1 day".
        retention: Rotated files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def remote_logger(host: str) -> Logger:
    """Logger whose records are attributed to host instead of the local machine."""
    return logger.bind(host=host)


def setup_logging(config: LogConfig) -> list[int]:
    """Install the configured sinks; returns their ids for teardown_logging."""
    logger.configure(extra={"host": LOCAL_HOST})
    logger.enable("cloudpack")
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(
            logger.add(
                sys.stderr,
                level=config.level,
                format=CONSOLE_FORMAT,
                colorize=True,
                filter="cloudpack",
            )
        )

    if config.file:
        handler_ids.append(
            logger.add(
                config.file,
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                compression="zip",
                diagnose=False,  # tracebacks may hold ENC passwords
                enqueue=True,
                filter="cloudpack",
            )
        )

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("cloudpack")
