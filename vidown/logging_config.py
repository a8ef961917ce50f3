"""
Configures the worker's logging setup.

Log records go to ``latest.log`` in the user data directory and to stderr.
Stdout belongs to the control protocol, so no handler may ever write there.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'
# Library loggers that are chatty at DEBUG and say nothing useful about jobs.
QUIET_LOGGERS = ('asyncio', 'aiohttp.access', 'aiohttp.client')


def rotate_latest_log(log_dir: Path) -> Path:
    """
    Archives the previous run's ``latest.log`` under its modification timestamp.

    Returns:
        The path of the (now free) ``latest.log``.
    """
    latest_log_path = log_dir / 'latest.log'
    if not latest_log_path.exists():
        return latest_log_path
    try:
        stamp = datetime.fromtimestamp(latest_log_path.stat().st_mtime).strftime('%Y-%m-%d_%H-%M-%S')
        latest_log_path.rename(log_dir / f"{stamp}.log")
    except OSError as e:
        # Logging is not configured yet; stderr is the only safe channel.
        print(f"Error rotating log file: {e}", file=sys.stderr)
    return latest_log_path


def setup_logging(log_level_str: str = 'INFO', log_dir: Optional[Path] = None):
    """
    Configures the root logger with a file handler and a stderr handler.

    The previous ``latest.log`` is renamed to a timestamped file first, so every
    worker run starts a fresh log.

    Args:
        log_level_str: Minimum level for both handlers, e.g. 'INFO'.
        log_dir: Where log files live; defaults to the user data log directory.
    """
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    latest_log_path = rotate_latest_log(log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)
    log_level = getattr(logging, log_level_str.upper(), logging.INFO)
    handlers = [
        logging.FileHandler(str(latest_log_path), encoding='utf-8'),
        logging.StreamHandler(sys.stderr),
    ]
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    logging.info("--- Logging initialized ---")
    logging.debug(f"Log level set to: {logging.getLevelName(log_level)}")
