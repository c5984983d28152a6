"""Logging setup: rich console output plus an optional plain log file for cron runs."""

import logging

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingConfig

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: LoggingConfig, verbose: bool = False) -> logging.Logger:
    """
    Configure the ``n8n_stack`` logger.

    Args:
        config: Logging section of the tool configuration
        verbose: Force DEBUG level

    Returns:
        The package logger
    """
    logger = logging.getLogger("n8n_stack")
    level = logging.DEBUG if verbose else logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if config.console_logging:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=verbose,
            rich_tracebacks=verbose,
            markup=False,
        )
        console_handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        logger.addHandler(console_handler)

    if config.file:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger
