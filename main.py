"""
Main entry point for the media core.

This script loads the persisted state, sets up logging, starts the streaming
gateway and the job orchestrator, and runs until interrupted.
"""

import sys
import signal
import logging
import asyncio
import argparse
from pathlib import Path
from types import TracebackType
from typing import Type

from mediacore._version import __version__
from mediacore.app import MediaCoreApp
from mediacore.constants import STORE_FILE
from mediacore.dependencies import ToolPaths
from mediacore.logging_config import setup_logging
from mediacore.network import HttpStreamProvider
from mediacore.store import AppStore


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


async def run(app: MediaCoreApp):
    """Runs the application until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_async_exception)

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass  # Windows; KeyboardInterrupt still ends asyncio.run

    url = await app.start()
    print(url, flush=True)
    try:
        await stop_event.wait()
    finally:
        await app.stop()


def main():
    parser = argparse.ArgumentParser(description="Local media streaming gateway and job engine.")
    parser.add_argument('--store', type=Path, default=STORE_FILE, help="Path of the settings/history file.")
    parser.add_argument('--log-level', default=None, help="Overrides the configured log level.")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    args = parser.parse_args()

    # 1. Load state before setting up logging so the configured level applies
    store = AppStore(args.store)
    store.load()

    # 2. Logging and global exception handlers
    setup_logging(args.log_level or store.get_settings().log_level)
    sys.excepthook = handle_exception
    logging.info(f"Starting mediacore {__version__}")

    # 3. Build and run
    app = MediaCoreApp(store, ToolPaths.discover(store.get_settings()), HttpStreamProvider())

    try:
        asyncio.run(run(app))
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")


if __name__ == "__main__":
    main()
