"""
Main entry point for the multifetch application.

This script installs the global exception hook and hands control to the
command-line interface, which loads the configuration, sets up logging and
runs the download engine.
"""

import sys
import logging
from types import TracebackType
from typing import Type

from multifetch.cli import app


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def main():
    sys.excepthook = handle_exception
    app()


if __name__ == "__main__":
    main()
