"""Loguru configuration for the execution engine.

Every module logs through the ``logger`` exported here, as one-line
``"Event | key=value ..."`` messages. Trigger events additionally bind the
full event dict under ``extra["event"]``; a serialized file sink keeps it as
JSON next to the message.
"""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(
    log_file: Optional[str] = "condexec.log",
    level: str = "INFO",
    enable_console: bool = True,
    serialize: bool = False,
) -> None:
    """Replace loguru's default handler with the engine's sinks.

    Args:
        log_file: Rotating log file (100 MB, kept 7 days); None for console only
        level: Minimum level for every sink
        enable_console: Also log to stdout, colorized
        serialize: Write the file as JSON lines including bound extras
    """
    logger.remove()

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(path),
            format=LOG_FORMAT,
            level=level.upper(),
            rotation="100 MB",
            retention="7 days",
            serialize=serialize,
        )

    if enable_console:
        logger.add(sys.stdout, format=LOG_FORMAT, level=level.upper(), colorize=True)

    logger.debug(f"Logging configured | file={log_file} level={level} serialize={serialize}")
