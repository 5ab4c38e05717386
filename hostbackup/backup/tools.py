"""
External tool discovery and invocation.

The backup pipeline drives three external capabilities:
- archiver: tar
- cipher: gpg2, gpg or pgp
- sync: rsync

Missing archiver or sync tools are fatal. A missing cipher only disables
encryption for the run.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .outcome import FatalError

log = logging.getLogger(__name__)

TOOL_CANDIDATES = {
    'archiver': ('tar',),
    'cipher': ('gpg2', 'gpg', 'pgp'),
    'sync': ('rsync',),
}


class ToolError(Exception):
    """Raised when an external tool exits unsuccessfully."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


@dataclass(frozen=True)
class ToolAvailability:
    """Resolved executable paths; None means the capability is absent."""

    archiver: Optional[str] = None
    cipher: Optional[str] = None
    sync: Optional[str] = None

    def require(self, capability: str) -> str:
        """
        Get the path of a capability that must be present.

        Raises:
            FatalError: If the capability is absent
        """
        path = getattr(self, capability)
        if not path:
            raise FatalError(f"Required tool for {capability} not found: "
                             f"{', '.join(TOOL_CANDIDATES[capability])}")
        return path


def which_first(candidates: Sequence[str]) -> Optional[str]:
    """Return the path of the first candidate found on PATH."""
    for name in candidates:
        path = shutil.which(name)
        if path:
            return path
    return None


def locate_tools() -> ToolAvailability:
    """
    Resolve every external capability once for the run.

    Returns:
        ToolAvailability with absent capabilities set to None
    """
    tools = ToolAvailability(**{
        capability: which_first(candidates)
        for capability, candidates in TOOL_CANDIDATES.items()
    })

    for capability in TOOL_CANDIDATES:
        path = getattr(tools, capability)
        if path:
            log.info("Using %s for %s", path, capability)

    return tools


def run_tool(args: List[str], stdin=None, stdout=None, env=None) -> subprocess.CompletedProcess:
    """
    Run an external tool synchronously.

    Args:
        args: Command line, executable first
        stdin: Optional file object fed to the tool
        stdout: Optional file object receiving the tool's output (captured otherwise)
        env: Optional environment for the child process

    Returns:
        CompletedProcess for the finished command

    Raises:
        ToolError: If the tool cannot be started or exits non-zero
    """
    log.debug("Running: %s", ' '.join(args))

    try:
        result = subprocess.run(
            args,
            stdin=stdin,
            stdout=stdout if stdout is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            check=False,
        )
    except OSError as e:
        raise ToolError(f"Failed to run {args[0]}: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or b'').decode(errors='replace').strip()
        raise ToolError(
            f"{args[0]} exited with status {result.returncode}: {stderr}",
            returncode=result.returncode,
            stderr=stderr,
        )

    return result
