"""Loguru sinks for the CLI, the API server and index builds."""
from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> "
    "<level>{level: <7}</level> "
    "<dim>{name}:{function}:{line}</dim> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <7} | {process} | {name}:{line} | {message}"


def setup_logger(
    log_level: str = "INFO",
    log_file: str | None = "logs/chronos_rag.log",
    json_file: bool = False,
) -> None:
    """
    Replace loguru's default sink with a console sink on stderr and,
    when log_file is set, a rotating file sink.

    json_file=True writes one JSON record per line (loguru's serialize
    mode) so the file can be shipped to a log collector as is.
    """
    level = log_level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True, backtrace=False)

    if log_file:
        target = Path(log_file)
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            target,
            level=level,
            format=FILE_FORMAT,
            serialize=json_file,
            rotation="20 MB",
            retention=5,
            compression="gz",
            enqueue=True,
        )

    logger.debug(f"[Logger] level={level} file={log_file or '-'} json={json_file}")
