"""Centralized logging configuration."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from .config import AppConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _file_handler(config: AppConfig) -> RotatingFileHandler:
    settings = config.logging
    log_dir = config.paths.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        log_dir / settings.file_name,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
    )


def configure_logging(config: AppConfig, to_file: Optional[bool] = None) -> List[logging.Handler]:
    """Replace the root handlers with console output plus an optional rotating file.

    ``to_file`` overrides ``logging.to_file`` from the configuration.
    Returns the handlers that were installed.
    """
    settings = config.logging
    write_file = settings.to_file if to_file is None else to_file

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if write_file:
        handlers.append(_file_handler(config))

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.level.upper(), logging.INFO))

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    return handlers
