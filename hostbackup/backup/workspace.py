import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List

from .outcome import FatalError

log = logging.getLogger(__name__)

KEYCHAIN_DIRNAME = '.keychain'


class ScratchWorkspace:
    """
    Exclusively-owned temporary directory for one run.

    Used as a context manager: the directory is created on entry and removed
    recursively on exit, whether the run succeeded, failed or was interrupted.
    """

    def __init__(self, parent_dir: str = None, prefix: str = 'backup.'):
        self.parent_dir = parent_dir
        self.prefix = prefix
        self.path = None

    def __enter__(self) -> 'ScratchWorkspace':
        try:
            if self.parent_dir:
                os.makedirs(self.parent_dir, exist_ok=True)
            self.path = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.parent_dir))
        except OSError as e:
            raise FatalError(f"Cannot create scratch workspace in {self.parent_dir}: {e}")
        log.info("%s created.", self.path)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.remove()
        return False

    @property
    def keychain(self) -> Path:
        """Credential store location, nested inside the workspace."""
        return self.path / KEYCHAIN_DIRNAME

    def files(self) -> List[Path]:
        """Regular files directly inside the workspace, sorted by name."""
        return sorted(p for p in self.path.iterdir() if p.is_file() and not p.is_symlink())

    def remove(self):
        """Recursively delete the workspace."""
        if self.path is None or not self.path.exists():
            return
        try:
            shutil.rmtree(self.path)
        except OSError as e:
            log.error("Could not remove %s: %s", self.path, e)
            return
        log.info("%s removed.", self.path)
