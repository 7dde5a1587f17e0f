"""
Logging setup shared by the main process and the rebalance worker.

Both processes write to the same rotating file; records carry the process
name so supervisor and worker lines can be told apart. A rich handler
mirrors the same records on the console unless disabled.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s - %(processName)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Transport libraries that log every request/frame at INFO or DEBUG
NOISY_LOGGERS = ('urllib3', 'requests', 'websockets', 'httpx', 'uvicorn.access')


def setup_logging(
    log_file: str = "logs/yieldkeeper.log",
    log_level: str = "INFO",
    max_bytes: int = 10_485_760,
    backup_count: int = 5,
    module_levels: Optional[dict] = None,
    console: bool = True
) -> logging.Logger:
    """
    Install file and console handlers on the root logger.

    Drops any handlers already on the root logger, so calling it again
    (the spawned worker does) does not duplicate output.

    Args:
        log_file: Rotating log file, parent directories are created
        log_level: Handler threshold name (DEBUG ... CRITICAL)
        max_bytes: Rotation size
        backup_count: Rotated files kept
        module_levels: Logger name -> level name overrides,
            e.g. {'yieldkeeper.executor': 'DEBUG'}
        console: Add the rich console handler

    Returns:
        The root logger
    """
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    file_handler = RotatingFileHandler(
        filename=log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(file_handler)

    if console:
        console_handler = RichHandler(
            console=Console(),
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            show_time=False,
            show_path=False
        )
        console_handler.setLevel(level)
        root_logger.addHandler(console_handler)

    for module_name, module_level in (module_levels or {}).items():
        logging.getLogger(module_name).setLevel(getattr(logging, module_level.upper()))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = get_logger("yieldkeeper.setup")
    logger.info(f"Logging to {log_file} at {log_level} (rotate at {max_bytes} bytes, keep {backup_count})")
    if module_levels:
        logger.debug(f"Module level overrides: {module_levels}")

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
