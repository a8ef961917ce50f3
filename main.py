"""
Main entry point for the Vidown native worker.

This script initializes the configuration, sets up logging, attaches the framed
control channel to stdin/stdout, and serves coordinator commands until the
channel closes or a shutdown command arrives.
"""

import sys
import logging
import asyncio
from types import TracebackType
from typing import Type

from vidown._version import __version__
from vidown.logging_config import setup_logging
from vidown.config import ConfigManager, Settings
from vidown.constants import CONFIG_FILE
from vidown.controller import WorkerController
from vidown.protocol import open_stdio_endpoint


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


async def run_worker(config: Settings):
    """Wires the controller to the process's standard streams and runs it."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_async_exception)
    endpoint = await open_stdio_endpoint()
    controller = WorkerController(config, endpoint)
    await controller.run()


def main():
    # 1. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()

    # 2. Use the configured log level; stdout is reserved for protocol frames
    setup_logging(config.log_level)
    logging.info(f"Vidown worker {__version__} starting")

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    try:
        asyncio.run(run_worker(config))
    except KeyboardInterrupt:
        logging.info("Worker interrupted by user.")


if __name__ == "__main__":
    main()
