# ============================================
#   SignLobby — Central logger
#   Shared by the signaling server and the console client
# ============================================

import os
import logging
from logging.handlers import TimedRotatingFileHandler

from signlobby.config import LOG_FILE, LOG_TO_CONSOLE


ROOT_LOGGER_NAME = os.getenv("SIGNLOBBY_LOGGER_NAME", "signlobby")
LOG_LEVEL = os.getenv("SIGNLOBBY_LOG_LEVEL", "INFO").upper()

_FORMATTER = logging.Formatter(
    "%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _build_handlers():
    # One file per day, a month of history
    handlers = [TimedRotatingFileHandler(LOG_FILE, when="midnight", backupCount=30, encoding="utf-8")]

    if LOG_TO_CONSOLE:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(_FORMATTER)
    return handlers


def _root() -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    for handler in _build_handlers():
        logger.addHandler(handler)

    # Flask / engineio keep their own output
    logger.propagate = False
    return logger


def set_level(level):
    """
    Change the level of every SignLobby logger, e.g. set_level("DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    _root().setLevel(level)


def get_logger(module_name: str) -> logging.Logger:
    """
    get_logger("router") → "signlobby.router"
    """
    return _root().getChild(module_name)


def log_debug(module: str, message: str):
    get_logger(module).debug(message)


def log_info(module: str, message: str):
    get_logger(module).info(message)


def log_warning(module: str, message: str):
    get_logger(module).warning(message)


def log_error(module: str, message: str):
    get_logger(module).error(message)


def log_exception(module: str, message: str):
    """
    Inside an except block only: the traceback is appended.
    """
    get_logger(module).exception(message)
