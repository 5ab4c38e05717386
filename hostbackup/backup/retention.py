"""
Retention policy enforcement for backup generations.

Generations are the directories directly below ``{output_root}/{hostname}``.
They are ranked by modification time, newest first, starting at rank 0; every
generation with a rank greater than the retention count is deleted. A
retention of 7 therefore keeps ranks 0-7, i.e. eight generations.
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional

log = logging.getLogger(__name__)


class RetentionManager:
    """
    Removes aged generations for one host.
    """

    def __init__(self, host_dir: str, retention: Optional[int], active: Optional[str] = None):
        """
        Initialize retention manager.

        Args:
            host_dir: Per-host output directory
            retention: Highest rank to keep; None keeps everything
            active: Generation written by the current run, always ranked first
        """
        self.host_dir = Path(host_dir)
        self.retention = retention
        self.active = Path(active) if active else None

    def list_generations(self) -> List[Path]:
        """
        List generations ordered newest first.

        The active generation, when present, is pinned to rank 0.

        Returns:
            Generation directories by rank

        Raises:
            OSError: If the host directory cannot be listed
        """
        entries = []
        for entry in self.host_dir.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                entries.append((entry.stat().st_mtime, entry))

        entries.sort(key=lambda item: item[0], reverse=True)
        generations = [entry for _mtime, entry in entries]

        if self.active is not None and self.active in generations:
            generations.remove(self.active)
            generations.insert(0, self.active)

        return generations

    def expired(self, generations: List[Path]) -> List[Path]:
        """Generations ranked strictly beyond the retention count, never the active one."""
        if self.retention is None:
            return []
        keep = max(self.retention, 0) + 1
        return [g for g in generations[keep:] if g != self.active]

    def enforce(self) -> List[Path]:
        """
        Delete expired generations.

        A failure to list generations is logged and leaves everything in
        place; a failure to delete one generation does not stop the others.

        Returns:
            Generations that were removed
        """
        if self.retention is None:
            log.info("No explicit backup retention policy set.")
            return []

        log.info("Backup retention policy: %d backups.", self.retention)

        try:
            generations = self.list_generations()
        except OSError as e:
            log.error("Could not list backup generations in %s: %s", self.host_dir, e)
            return []

        removed = []
        for generation in self.expired(generations):
            try:
                shutil.rmtree(generation)
            except OSError as e:
                log.error("Could not remove old backup %s: %s", generation, e)
                continue
            removed.append(generation)
            log.info("Old backup: %s removed.", generation)

        return removed
