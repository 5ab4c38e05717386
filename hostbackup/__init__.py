import os
import logging
from typing import List

import click


__version__ = '1.2.0'

# Custom level for the final "completed successfully" line
OK = 25
logging.addLevelName(OK, 'OK')
logging.addLevelName(logging.CRITICAL, 'FATAL')

LOGGER_NAME = 'hostbackup'

LEVEL_COLORS = {
    'OK': 'green',
    'INFO': 'blue',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'FATAL': 'magenta',
}


class ConsoleFormatter(logging.Formatter):
    """Formats records as ``[LEVEL]   message``, optionally colored."""

    def __init__(self, color: bool = True):
        super().__init__('%(message)s')
        self.color = color

    def format(self, record):
        message = super().format(record)
        tag = f'[{record.levelname}]'
        padding = ' ' * max(1, 10 - len(tag))
        if self.color:
            tag = click.style(tag, fg=LEVEL_COLORS.get(record.levelname), bold=True)
        return f'{tag}{padding}{message}'


def configure_logging(log_file: str, color: bool = True, level: int = logging.INFO) -> List[logging.Handler]:
    """
    Configure run logging.

    Attaches a console handler (stderr) and an append-only file handler
    to the ``hostbackup`` logger.

    Args:
        log_file: Path of the run log file
        color: Whether console output is colored
        level: Minimum level for both handlers

    Returns:
        The installed handlers, to be passed to shutdown_logging()
    """
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter(color=color))

    # File handler
    file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    file_handler.setLevel(level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return [console_handler, file_handler]


def shutdown_logging(handlers: List[logging.Handler]):
    """Detach and close handlers installed by configure_logging()."""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in handlers:
        logger.removeHandler(handler)
        handler.close()
