"""
Run outcome tracking.

Two tiers of failure exist during a run:
- Fatal: raise FatalError; the run stops after cleanup and exits non-zero.
- Recoverable: log at ERROR; the run continues and reports "completed with errors".

RunOutcome is a logging handler, so any ERROR (or FATAL) record emitted under
the hostbackup logger while it is attached marks the run as failed.
"""

import logging
from typing import List

from hostbackup import LOGGER_NAME


class FatalError(Exception):
    """Raised when the run cannot continue."""
    pass


class RunOutcome(logging.Handler):
    """
    Accumulated error state for a single run.

    The ``failed`` flag is set by the first ERROR-level record and is never
    cleared afterwards.
    """

    def __init__(self):
        super().__init__(level=logging.ERROR)
        self.failed = False
        self.errors: List[str] = []

    def emit(self, record):
        self.failed = True
        self.errors.append(record.getMessage())

    def attach(self, logger_name: str = LOGGER_NAME):
        """Start tracking records emitted under ``logger_name``."""
        logging.getLogger(logger_name).addHandler(self)

    def detach(self, logger_name: str = LOGGER_NAME):
        """Stop tracking; the accumulated state is kept."""
        logging.getLogger(logger_name).removeHandler(self)
