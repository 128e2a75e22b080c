"""
Logging utilities for the CSP XSS audit tools.
"""
import logging
import os
import sys
from typing import Optional


def setup_logger(
    name: str = "csp_xss_audit",
    level: int = logging.INFO,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure and return a logger with the specified settings.

    Calling it again for the same name only changes the level and adds the
    file handler if one is requested; console and file handlers are not
    duplicated.

    Args:
        name: Name of the logger
        level: Logging level (default: INFO)
        log_file: Optional file to write logs to

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    console_format = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S"
    )
    file_format = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    has_console = any(
        type(handler) is logging.StreamHandler for handler in logger.handlers
    )
    if not has_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(console_format)
        logger.addHandler(console_handler)

    if log_file:
        log_path = os.path.abspath(log_file)
        has_file = any(
            isinstance(handler, logging.FileHandler) and handler.baseFilename == log_path
            for handler in logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(file_format)
            logger.addHandler(file_handler)

    return logger
