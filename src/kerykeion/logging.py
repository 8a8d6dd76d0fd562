import logging
import sys
from typing import Union

from .errors import ConfigError

LOGGER_NAME = "kerykeion"

# Transport libraries that log every request or frame below WARNING
CHATTY_LOGGERS = ("httpx", "httpcore", "websockets")


def resolve_level(level: Union[int, str]) -> int:
    """Turn a level name such as ``"debug"`` (``KERYKEION_LOG_LEVEL``) into a number."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ConfigError(f"Unknown log level: {level!r}")
    return value


def configure_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """
    Configure the Kerykeion logger.

    Args:
        level: Logging level (e.g., logging.INFO, "DEBUG"), usually Config.log_level

    Returns:
        The configured logger instance.

    Raises:
        ConfigError: ``level`` is not a known level name
    """
    level = resolve_level(level)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Re-configuring replaces the handler instead of stacking another one
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] %(levelname)s [%(name)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(handler)
    logger.propagate = False

    # Request-level transport logs only when debugging
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a child logger of kerykeion."""
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)
