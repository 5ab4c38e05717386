"""
Archive creation for backup sources.

Every source path becomes one tar archive in the scratch workspace. Supported
compression methods:
- gz: Gzip compressed tar (.tar.gz)
- bz2: Bzip2 compressed tar (.tar.bz2)
- xz: XZ compressed tar (.tar.xz)
- lzma: Legacy LZMA compressed tar (.tar.lzma)
- none: No compression (.tar)
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from .sources import resolve_sources
from .tools import run_tool, ToolError

log = logging.getLogger(__name__)

# Replaces path separators in archive names
NAME_DELIMITER = '-'


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class CompressionMethod(Enum):
    NONE = 'none'
    GZIP = 'gz'
    BZIP2 = 'bz2'
    XZ = 'xz'
    LZMA = 'lzma'

    @property
    def extension(self) -> str:
        return EXTENSIONS[self]


EXTENSIONS = {
    CompressionMethod.NONE: 'tar',
    CompressionMethod.GZIP: 'tar.gz',
    CompressionMethod.BZIP2: 'tar.bz2',
    CompressionMethod.XZ: 'tar.xz',
    CompressionMethod.LZMA: 'tar.lzma',
}

# tar flags selecting each compression filter
TAR_FLAGS = {
    CompressionMethod.NONE: ['-cf'],
    CompressionMethod.GZIP: ['-czf'],
    CompressionMethod.BZIP2: ['-cjf'],
    CompressionMethod.XZ: ['-cJf'],
    CompressionMethod.LZMA: ['--lzma', '-cf'],
}

METHOD_ALIASES = {
    'none': CompressionMethod.NONE,
    'gz': CompressionMethod.GZIP,
    'gzip': CompressionMethod.GZIP,
    'bz2': CompressionMethod.BZIP2,
    'bzip': CompressionMethod.BZIP2,
    'bzip2': CompressionMethod.BZIP2,
    'xz': CompressionMethod.XZ,
    'lzma': CompressionMethod.LZMA,
}


def resolve_method(name: str, enabled: bool = True) -> CompressionMethod:
    """
    Map a configured method name to a CompressionMethod.

    An unrecognised name is logged as an error and falls back to gzip.

    Args:
        name: Configured method name (see METHOD_ALIASES)
        enabled: False when compression is switched off entirely

    Returns:
        CompressionMethod to use
    """
    if not enabled:
        return CompressionMethod.NONE

    method = METHOD_ALIASES.get((name or '').lower())
    if method is None:
        log.error("Unrecognised compression method: %s. Using gz.", name)
        return CompressionMethod.GZIP
    return method


def generate_archive_name(source_path: str, method: CompressionMethod) -> str:
    """
    Generate the archive filename for a source path.

    The leading slash is stripped and remaining separators are replaced,
    e.g. ``/var/www/site`` -> ``var-www-site.tar.gz``.

    Args:
        source_path: Source path being archived
        method: Compression method

    Returns:
        Filename (without directory)
    """
    stem = source_path.lstrip(os.sep).rstrip(os.sep).replace(os.sep, NAME_DELIMITER)
    if not stem:
        stem = 'root'
    return f"{stem}.{method.extension}"


def create_archive(
    source_path: str,
    output_dir: Path,
    method: CompressionMethod,
    archiver: str
) -> Path:
    """
    Create one archive for a source path.

    Args:
        source_path: File or directory to archive
        output_dir: Directory receiving the archive
        method: Compression method
        archiver: Path to the tar executable

    Returns:
        Path to the created archive

    Raises:
        CompressionError: If the archiver fails
    """
    archive_path = Path(output_dir) / generate_archive_name(source_path, method)
    args = [archiver] + TAR_FLAGS[method] + [str(archive_path), source_path]

    try:
        run_tool(args)
        return archive_path
    except ToolError as e:
        # Clean up partial archive on failure
        if archive_path.exists():
            try:
                archive_path.unlink()
            except OSError:
                log.warning("Could not remove partial archive %s", archive_path)
        raise CompressionError(f"Could not backup {source_path}: {e}")


class Archiver:
    """
    Produces one archive per readable source into the scratch workspace.
    """

    def __init__(self, archiver: str, compression: bool = True, method: str = 'gz'):
        """
        Initialize archiver.

        Args:
            archiver: Path to the tar executable
            compression: Whether archives are compressed
            method: Configured compression method name
        """
        self.archiver = archiver
        self.compression = compression
        self.method_name = method
        self._method: Optional[CompressionMethod] = None

    @property
    def method(self) -> CompressionMethod:
        if self._method is None:
            self._method = resolve_method(self.method_name, self.compression)
        return self._method

    def archive_all(self, patterns: Sequence[str], output_dir: Path) -> List[Path]:
        """
        Archive every readable source matching the configured patterns.

        A failure for one source is logged and does not stop the others.

        Args:
            patterns: Configured source patterns
            output_dir: Scratch workspace directory

        Returns:
            Paths of the archives that were created
        """
        archives = []

        for source in resolve_sources(patterns):
            log.info("Backing up %s", source)
            try:
                archives.append(create_archive(source, output_dir, self.method, self.archiver))
            except CompressionError as e:
                log.error("%s", e)

        return archives
