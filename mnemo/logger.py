"""Shared logging setup - every module gets a named logger writing to stderr.

The MCP transport owns stdout, so nothing here may ever print there.
"""

import logging
import os
import sys

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_logger(name: str) -> logging.Logger:
    """Return a logger with a single stderr handler attached.

    Level defaults to INFO and can be changed with MNEMO_LOG_LEVEL.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
        level = os.environ.get("MNEMO_LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level, logging.INFO))
    return logger
