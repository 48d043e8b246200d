import logging
from typing import Optional

from .config import LOG_LEVEL

PACKAGE_LOGGER = "browser_agent"

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3", "asyncio", "playwright", "langchain")


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a single stream handler to the package logger (idempotent)."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel((level or LOG_LEVEL).upper())

    if not any(getattr(h, "_browser_agent", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)-8s %(message)s"))
        handler._browser_agent = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
        logger.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
