"""
Logging setup for applications that use voxwarp.

Library modules only create module-level loggers; nothing is printed unless
an application attaches handlers, for example with `setup_logging`.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path


def setup_logging(
    level: str = 'INFO',
    log_file: os.PathLike | None = None,
    module_name: str = 'voxwarp') -> logging.Logger:
    """
    Attach a console handler (and optionally a file handler) to the package logger.

    Args:
        level (str, optional): Logging level name, such as 'DEBUG' or 'INFO'.
        log_file (PathLike, optional): File that receives a copy of every record.
        module_name (str, optional): Root of the logger hierarchy to configure.

    Returns:
        Logger: The configured logger.
    """
    logger = logging.getLogger(module_name)
    logger.setLevel(getattr(logging, level.upper()))

    # drop handlers from previous calls, but keep the library null handler
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter('[%(asctime)s] %(levelname).1s | %(name)s: %(message)s',
                                           datefmt='%H:%M:%S'))
    logger.addHandler(console)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, mode='w')
        handler.setFormatter(logging.Formatter('%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                                               datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(handler)

    return logger


class Timer:
    """
    Context manager that logs the duration of a code section at debug level.
    """

    def __init__(self, name: str, logger: logging.Logger | None = None) -> None:
        self.name = name
        self.logger = logger or logging.getLogger('voxwarp.timer')
        self.elapsed = 0.0
        self._start = None

    def __enter__(self) -> Timer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self.elapsed = time.perf_counter() - self._start
        self.logger.debug(f'{self.name}: {self.elapsed:.3f}s')
