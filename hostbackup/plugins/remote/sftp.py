"""
SFTP remote plugin: mirrors the output root to a remote host over SSH.

Environment:
    SFTP_ENABLE    'true' to enable (default: false)
    SFTP_HOST      remote host
    SFTP_PORT      SSH port (default: 22)
    SFTP_USER      user name
    SFTP_PASSWORD  password (or use SFTP_KEY)
    SFTP_KEY       private key file
    SFTP_TARGET    remote directory (default: backups)
"""

import logging
import os

from hostbackup.backup.outcome import FatalError
from hostbackup.backup.storage import SFTPStorage, StorageError

log = logging.getLogger(__name__)

SFTP_ENABLE = os.environ.get('SFTP_ENABLE', 'false').lower() == 'true'


def sftp_config() -> dict:
    return {
        'host': os.environ.get('SFTP_HOST', ''),
        'port': os.environ.get('SFTP_PORT', '22'),
        'username': os.environ.get('SFTP_USER', ''),
        'password': os.environ.get('SFTP_PASSWORD') or None,
        'private_key': os.environ.get('SFTP_KEY') or None,
        'target': os.environ.get('SFTP_TARGET', 'backups'),
    }


def sftp_exec(output_root, context):
    if not SFTP_ENABLE:
        log.info("sftp plugin disabled.")
        return True

    config = sftp_config()
    if not config['host'] or not config['username']:
        raise FatalError("SFTP_HOST and SFTP_USER must be set to use the sftp plugin.")

    log.info("SFTP to %s:%s.", config['host'], config['target'])
    storage = SFTPStorage(config)
    try:
        summary = storage.sync_directory(output_root)
    except StorageError as e:
        log.error("SFTP backup failed: %s", e)
        return False

    log.info(
        "Completed sftp backup: %d uploaded, %d unchanged, %d failed.",
        summary['uploaded'], summary['skipped'], summary['failed']
    )
    return summary['failed'] == 0
