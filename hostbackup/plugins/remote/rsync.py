"""
Rsync remote plugin: mirrors the output root to another location.

Environment:
    RSYNC_REMOTE_ENABLE   'true' to enable (default: false)
    RSYNC_REMOTE_OPTS     rsync options (default: -arlHS)
    RSYNC_REMOTE_TARGET   destination, local path or host:path (default: /tmp/rsync_backups)
"""

import logging
import os
import shlex
from pathlib import Path

from hostbackup.backup.outcome import FatalError
from hostbackup.backup.tools import run_tool, which_first, ToolError

log = logging.getLogger(__name__)

RSYNC_REMOTE_ENABLE = os.environ.get('RSYNC_REMOTE_ENABLE', 'false').lower() == 'true'
RSYNC_REMOTE_OPTS = os.environ.get('RSYNC_REMOTE_OPTS', '-arlHS')
RSYNC_REMOTE_TARGET = os.environ.get('RSYNC_REMOTE_TARGET', '/tmp/rsync_backups')


def rsync_setup(context) -> str:
    rsync = context.tools.sync or which_first(['rsync'])
    if not rsync:
        raise FatalError("rsync not found. Please install before using this plugin.")
    log.info("Rsync to %s.", RSYNC_REMOTE_TARGET)
    return rsync


def rsync_sync(rsync: str, source: Path) -> bool:
    if not source.is_dir():
        log.error("%s is not a directory.", source)
        return False

    args = [rsync] + shlex.split(RSYNC_REMOTE_OPTS) + [f"{source}/", f"{RSYNC_REMOTE_TARGET}/"]
    try:
        run_tool(args)
    except ToolError as e:
        log.error("Rsync failed: %s", e)
        return False
    return True


def rsync_exec(output_root, context):
    if not RSYNC_REMOTE_ENABLE:
        log.info("rsync plugin disabled.")
        return True

    rsync = rsync_setup(context)
    ok = rsync_sync(rsync, Path(output_root))
    log.info("Completed rsync.")
    return ok
