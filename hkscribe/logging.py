"""
hkscribe.logging - Centralized logging configuration.

Provides the package logger and a simple setup with optional verbose mode.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("hkscribe")


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for the hkscribe package.

    Args:
        verbose: If True, enable DEBUG level logging; otherwise WARNING level
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )
    logger.setLevel(level)
    # google-genai logs every request through httpx at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
