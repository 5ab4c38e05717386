"""
MySQL dump application plugin.

Dumps databases into the scratch workspace before encryption, then compresses
each dump with the run's compression method.

Environment:
    MYSQLDUMP_ENABLE     'true' to enable (default: false)
    MYSQLDUMP_HOST       server host (default: localhost)
    MYSQLDUMP_USER       user name (default: backup)
    MYSQLDUMP_PASSWORD   password, passed to mysqldump via MYSQL_PWD
    MYSQLDUMP_DUMP_ALL   'true' to dump all databases into one file (default: true)
    MYSQLDUMP_DATABASES  comma separated databases, used when DUMP_ALL is false
"""

import bz2
import gzip
import lzma
import logging
import os
import shutil
from pathlib import Path

from hostbackup.backup.compression import CompressionMethod, resolve_method
from hostbackup.backup.outcome import FatalError
from hostbackup.backup.tools import run_tool, ToolError

log = logging.getLogger(__name__)

MYSQLDUMP_ENABLE = os.environ.get('MYSQLDUMP_ENABLE', 'false').lower() == 'true'
MYSQLDUMP_HOST = os.environ.get('MYSQLDUMP_HOST', 'localhost')
MYSQLDUMP_USER = os.environ.get('MYSQLDUMP_USER', 'backup')
MYSQLDUMP_PASSWORD = os.environ.get('MYSQLDUMP_PASSWORD', '')
MYSQLDUMP_DUMP_ALL = os.environ.get('MYSQLDUMP_DUMP_ALL', 'true').lower() == 'true'
MYSQLDUMP_DATABASES = [
    db.strip() for db in os.environ.get('MYSQLDUMP_DATABASES', '').split(',') if db.strip()
]

OPENERS = {
    CompressionMethod.GZIP: ('gz', lambda path: gzip.open(path, 'wb')),
    CompressionMethod.BZIP2: ('bz2', lambda path: bz2.open(path, 'wb')),
    CompressionMethod.XZ: ('xz', lambda path: lzma.open(path, 'wb', format=lzma.FORMAT_XZ)),
    CompressionMethod.LZMA: ('lzma', lambda path: lzma.open(path, 'wb', format=lzma.FORMAT_ALONE)),
}


def mysqldump_setup() -> str:
    mysqldump = shutil.which('mysqldump')
    if not mysqldump:
        raise FatalError("mysqldump not found. Please install before using this plugin.")
    log.info("Using MySQL Dump to backup databases.")
    return mysqldump


def mysqldump_compress(path: Path, config) -> Path:
    """Compress a dump in place; returns the compressed file (or the dump itself)."""
    method = resolve_method(config.compression_method, config.compression)
    if method is CompressionMethod.NONE:
        return path

    extension, opener = OPENERS[method]
    target = path.with_name(f"{path.name}.{extension}")
    log.info("Compressing %s using: %s.", path, extension)

    with open(path, 'rb') as src, opener(target) as dst:
        shutil.copyfileobj(src, dst)
    path.unlink()
    return target


def mysqldump_export(mysqldump: str, workspace: Path, config) -> bool:
    if MYSQLDUMP_DUMP_ALL:
        targets = [(f"{MYSQLDUMP_HOST}.sql", ['--all-databases'])]
    else:
        targets = [(f"{database}.sql", [database]) for database in MYSQLDUMP_DATABASES]

    env = dict(os.environ, MYSQL_PWD=MYSQLDUMP_PASSWORD)
    ok = True

    for filename, selection in targets:
        target = workspace / filename
        args = [mysqldump, f"--host={MYSQLDUMP_HOST}", f"--user={MYSQLDUMP_USER}"] + selection
        try:
            with open(target, 'wb') as out:
                run_tool(args, stdout=out, env=env)
        except (ToolError, OSError) as e:
            log.error("mysqldump %s failed: %s", ' '.join(selection), e)
            ok = False

        if target.exists():
            mysqldump_compress(target, config)

    return ok


def mysqldump_exec(workspace, context):
    if not MYSQLDUMP_ENABLE:
        log.info("mysqldump plugin disabled.")
        return True

    mysqldump = mysqldump_setup()
    ok = mysqldump_export(mysqldump, Path(workspace), context.config)
    log.info("Completed MySQL Dump backup.")
    return ok
