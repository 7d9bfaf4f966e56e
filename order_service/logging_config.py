"""
logging_config.py — Centralized Logging Configuration for the Order Service

This module configures unified logging behavior for the entire application.
It ensures that all modules log messages consistently to both console and file.

Features:
    • Combined console and file logging output
    • Process ID tagging for multi-process visibility
    • Standardized log format for all modules
    • Reduced verbosity for external dependencies (pika, httpx)
"""

import logging
import os
import sys

LOG_FILE = os.environ.get("ORDER_SERVICE_LOG_FILE", "order_service.log")
LOG_LEVEL = os.environ.get("ORDER_SERVICE_LOG_LEVEL", "INFO")


def setup_logging(log_file=LOG_FILE, level=LOG_LEVEL):
    """
    Configures the global logging system for the application.

    The configuration includes:
        - Log level: INFO (default, override via ORDER_SERVICE_LOG_LEVEL)
        - Log format: timestamp, log level, process ID, and message
        - Output destinations:
            1. File: 'order_service.log' (persistent log), skipped when log_file is empty
            2. Console (stdout): real-time logs, Docker/Kubernetes compatible
        - Reduced verbosity for third-party libraries such as pika and httpx

    Args:
        log_file (str): Path of the log file, or an empty string for console only.
        level (str | int): Root log level.
    """
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=handlers
    )

    # Reduce verbosity from external libraries
    logging.getLogger("pika").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a configured logger instance for a given module or component name.

    Args:
        name (str): The logger name, typically the module’s __name__.

    Returns:
        logging.Logger: A preconfigured logger that follows the global format and handlers.
    """
    return logging.getLogger(name)
