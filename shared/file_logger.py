"""
File Logger Utility

Process entry points call setup_file_logger() once; library modules only
use logging.getLogger(__name__).
"""

import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "[%(name)s] %(levelname)s: %(message)s"


def setup_file_logger(
    service_name: str,
    log_level: str = "INFO",
    output_dir: str = "./logs",
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    extra_loggers: Optional[Iterable[str]] = None
) -> logging.Logger:
    """
    Send a service's logs to <output_dir>/<service_name>.log and the console.

    The same handlers are attached to each logger tree in extra_loggers (e.g.
    "orchestrator", "shared"), so engine modules write into the service's file.
    Calling it again replaces the handlers instead of stacking them.

    Args:
        service_name: Name of the service (e.g., "api", "orchestrator")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        output_dir: Directory to write log files
        console_output: Whether to also output to console
        max_bytes: Size at which the file is rotated
        backup_count: Number of rotated files to keep
        extra_loggers: Other logger trees to route to the same handlers

    Returns:
        The service logger
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    log_file = output_path / f"{service_name}.log"

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)  # Capture all levels in file
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    handlers = [file_handler]
    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        handlers.append(console_handler)

    for name in [service_name, *(extra_loggers or [])]:
        target = logging.getLogger(name)
        target.setLevel(level)
        for old in list(target.handlers):
            target.removeHandler(old)
            old.close()
        for handler in handlers:
            target.addHandler(handler)
        target.propagate = False

    logger = logging.getLogger(service_name)
    logger.info(f"File logging initialized: {log_file}")
    return logger
