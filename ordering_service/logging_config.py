"""
logging_config.py — Centralized Logging Configuration for the Ordering Service

This module configures unified logging behavior for the entire application.
It ensures that all modules log messages consistently to both console and file.

Features:
    • Combined console and file logging output
    • Process ID tagging for multi-process visibility
    • Standardized log format for all modules
    • Reduced verbosity for external dependencies (pika, httpx, sqlalchemy)
"""

import logging
import sys

from .config import LOG_FILE


def setup_logging(level=logging.INFO, log_file: str = LOG_FILE):
    """
    Configures the global logging system for the application.

    The configuration includes:
        - Log level: INFO (default)
        - Log format: timestamp, log level, process ID, and message
        - Output destinations:
            1. File: `LOG_FILE` (persistent log, skipped when empty)
            2. Console (stdout): real-time logs, Docker/Kubernetes compatible
        - Reduced verbosity for third-party libraries

    Args:
        level (int): Root log level.
        log_file (str): Path of the log file; an empty string disables file output.
    """
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=log_format, handlers=handlers)

    # Reduce verbosity from external libraries
    logging.getLogger("pika").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a logger instance for a given module or component name.

    Args:
        name (str): The logger name, typically the module's __name__.

    Returns:
        logging.Logger: A logger that follows the global format and handlers.
    """
    return logging.getLogger(name)
