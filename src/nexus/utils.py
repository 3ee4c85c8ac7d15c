"""
Nexus - Utility functions.

Logging setup and input validation shared by the relay server and the
client side.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from .config import Config
from .constants import (
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    MAX_USERNAME_LENGTH,
)

logger = logging.getLogger(__name__)


def configure_logging(
    config: Optional[Config] = None,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the ``nexus`` logger hierarchy.

    Args:
        config: Configuration to read the ``logging`` section from
        level: Level name overriding the configured one
        log_file: Log file path overriding the configured one

    Returns:
        The configured ``nexus`` logger
    """
    settings = config.get_section("logging") if config else {}

    level_name = str(level or settings.get("level") or "INFO").upper()
    numeric_level = getattr(logging, level_name, None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root = logging.getLogger("nexus")
    root.setLevel(numeric_level)

    # Reconfiguring replaces handlers installed by a previous call
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if settings.get("console", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    path = log_file or settings.get("file")
    if path:
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.propagate = False
    logger.debug(f"Logging configured at {level_name}")
    return root


def validate_username(username) -> bool:
    """
    Validate a relay username.

    Args:
        username: Candidate username

    Returns:
        True if it is a non-blank string of acceptable length
    """
    if not isinstance(username, str):
        return False
    stripped = username.strip()
    return bool(stripped) and stripped == username and len(username) <= MAX_USERNAME_LENGTH

