"""
Utility functions for the Course Watcher pipeline.

This module provides:
- Central logging configuration
- Environment variable helpers
- Configuration error type
- Timestamp and formatting helpers used across modules
"""

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional


class ConfigError(ValueError):
    """Raised when configuration values are missing, malformed or contradictory."""


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure and return the root logger for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to INFO.

    Returns:
        Configured logger instance.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Configure root logger
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    logger = logging.getLogger("course_watcher")
    logger.setLevel(log_level)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: Name for the logger, typically the module name.

    Returns:
        Logger instance configured as a child of the main application logger.
    """
    return logging.getLogger(f"course_watcher.{name}")


def get_env_var(name: str, required: bool = True, default: Optional[str] = None) -> Optional[str]:
    """
    Get an environment variable with optional requirement enforcement.

    Args:
        name: Name of the environment variable.
        required: If True, raises ConfigError when variable is not set.
                  Defaults to True.
        default: Default value if variable is not set and not required.

    Returns:
        Value of the environment variable or default.

    Raises:
        ConfigError: If required=True and the variable is not set.
    """
    value = os.environ.get(name)

    if value is None or value.strip() == "":
        if required:
            raise ConfigError(f"Required environment variable '{name}' is not set")
        return default

    return value.strip()


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_points(points: float) -> str:
    """
    Render a points value without a redundant trailing ".0".

    Args:
        points: Credit points value.

    Returns:
        "10" for 10.0, "2.5" for 2.5.
    """
    return f"{points:g}"
