"""
Logging setup for the AppAtOnce SDK.

The SDK only ever logs through ``logging.getLogger(__name__)``. This helper
attaches a handler to the package logger (``appatonce_sdk``) so applications can turn
SDK output on without touching their root logger.
"""

from __future__ import annotations

import logging

import json_log_formatter

SDK_LOGGER_NAME = __name__.rpartition(".")[0]

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """Configure the SDK logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        log_format: ``text`` or ``json``

    Returns:
        The configured SDK logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if log_format == "json":
        # One JSON object per line; ``extra`` context becomes top-level keys
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    sdk_logger = logging.getLogger(SDK_LOGGER_NAME)
    sdk_logger.setLevel(numeric_level)
    sdk_logger.handlers = [handler]
    sdk_logger.propagate = False

    # Reduce noise from transport libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)

    return sdk_logger
