"""
Logging configuration for the notes sync engine.
"""

import logging
import sys


def setup_logging(debug: bool = False) -> logging.Logger:
    """
    Configure engine logging.

    :param debug: Lower the level to DEBUG when set
    :type debug: bool
    :return: Root logger for the sync engine
    :rtype: logging.Logger
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    return logging.getLogger('notesync')


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    :param name: The module name for the logger
    :type name: str
    :return: Logger instance for the specified module
    :rtype: logging.Logger
    """
    return logging.getLogger(f'notesync.{name}')
