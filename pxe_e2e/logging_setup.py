#!/usr/bin/env python3
"""
Logging configuration for harness runs.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER_NAME = 'pxe_e2e'
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(results_dir: Path, level: int = logging.INFO,
                  timestamp: Optional[str] = None) -> logging.FileHandler:
    """Send package logs to a per-run file and, if nothing else does, to stdout.

    Returns the file handler so the caller can close it when the run ends.
    """
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    timestamp = timestamp or datetime.now().strftime('%Y%m%d_%H%M%S')
    log_file = results_dir / f"harness_{timestamp}.log"

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Remove handlers left over from an earlier run in this process
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    logger.addHandler(file_handler)

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setFormatter(formatter)
        stdout_handler.setLevel(level)
        root_logger.addHandler(stdout_handler)
        root_logger.setLevel(level)

    return file_handler


def close_logging(file_handler: Optional[logging.Handler]):
    if file_handler is None:
        return
    logging.getLogger(LOGGER_NAME).removeHandler(file_handler)
    file_handler.close()
