"""
Source path resolution for backup runs.

Source patterns may contain shell-style wildcards (e.g. ``/home/*``) so a
single configuration can be shared by hosts with different layouts. Patterns
that match nothing, and matches that cannot be read, are skipped silently.
"""

import glob
import logging
import os
from typing import Iterable, List

log = logging.getLogger(__name__)


def expand_pattern(pattern: str) -> List[str]:
    """
    Expand a single source pattern.

    Args:
        pattern: Path or glob pattern

    Returns:
        Sorted list of matching paths (empty if nothing matches)
    """
    pattern = os.path.expanduser(pattern)
    if glob.has_magic(pattern):
        return sorted(glob.glob(pattern))
    return [pattern] if os.path.lexists(pattern) else []


def is_readable(path: str) -> bool:
    """Check that a source exists and can be read (and traversed, for directories)."""
    if not os.path.exists(path):
        return False
    mode = os.R_OK | os.X_OK if os.path.isdir(path) else os.R_OK
    return os.access(path, mode)


def resolve_sources(patterns: Iterable[str]) -> List[str]:
    """
    Resolve configured source patterns to readable paths.

    Order follows the configured patterns; duplicates are dropped.

    Args:
        patterns: Configured source patterns

    Returns:
        List of readable source paths
    """
    resolved = []
    seen = set()

    for pattern in patterns:
        for path in expand_pattern(pattern):
            if path in seen:
                continue
            seen.add(path)
            if is_readable(path):
                resolved.append(path)
            else:
                log.debug("Skipping unreadable source: %s", path)

    return resolved
