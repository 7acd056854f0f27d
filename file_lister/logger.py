import logging
import os
import sys

BASE_NAME = "file_lister"
LEVEL_ENV = "FILE_LISTER_LOG_LEVEL"
CATS_ENV = "FILE_LISTER_LOG_CATS"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}
_FORMAT = "[%(asctime)s] %(levelname)s %(threadName)s: %(message)s"


class CategoryFilter(logging.Filter):
    """Pass only records whose last logger-name segment is in ``allowed``.

    ``file_lister.scanner`` has category ``scanner``.
    """

    def __init__(self, allowed: set[str]) -> None:
        super().__init__()
        self.allowed = allowed

    def filter(self, record: logging.LogRecord) -> bool:
        return (record.name or "").rsplit(".", 1)[-1] in self.allowed


def _stderr_handler(logger: logging.Logger) -> logging.StreamHandler:
    for h in logger.handlers:
        if isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr:
            return h
    handler = logging.StreamHandler(stream=sys.stderr)
    logger.addHandler(handler)
    return handler


def setup_logger(level: int = logging.INFO, name: str = BASE_NAME) -> logging.Logger:
    """Create or update the project logger.

    Environment overrides are read on every call so configuration applied
    after import still takes effect. Worker threads share the single stderr
    handler; the thread name is part of each line.
    """
    logger = logging.getLogger(name)
    env_level = (os.getenv(LEVEL_ENV) or "").strip().lower()
    logger.setLevel(_LEVELS.get(env_level, level))

    handler = _stderr_handler(logger)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%H:%M:%S"))

    handler.filters.clear()
    cats = {c.strip() for c in (os.getenv(CATS_ENV) or "").split(",") if c.strip()}
    if cats:
        handler.addFilter(CategoryFilter(cats))

    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = setup_logger()
    return base if not name else base.getChild(name)
