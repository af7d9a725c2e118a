"""
Centralized logging configuration for the monitoring core.
"""

import logging
import sys
from typing import Optional

_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure the root logger once.

    Args:
        level: Level name, defaults to the LOG_LEVEL setting
    """
    global _configured
    if _configured:
        return

    if level is None:
        from lonelycare.config import settings
        level = settings.log_level

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
