import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import colorlog

from pgmount.config import LoggingConfig


def setup_logging(config: LoggingConfig, verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for the application."""
    root_logger = logging.getLogger()
    if quiet:
        root_logger.setLevel(logging.ERROR)
    elif verbose:
        root_logger.setLevel(logging.DEBUG)
    else:
        root_logger.setLevel(config.level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create formatters
    if config.use_color:
        # Color formatter for console output
        console_formatter = colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            }
        )
    else:
        console_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    # The file log is optional for a desktop daemon
    if config.log_dir:
        log_dir = Path(config.log_dir)
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "pgmount.log",
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count
        )
        file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        root_logger.addHandler(file_handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
