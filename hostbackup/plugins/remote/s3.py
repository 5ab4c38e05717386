"""
S3 remote plugin: mirrors the output root into an S3 bucket.

Credentials come from the standard AWS chain (environment variables,
shared credentials file, instance profile).

Environment:
    S3_BACKUP_ENABLE   'true' to enable (default: false)
    S3_BUCKET          bucket name (required when enabled)
    S3_PREFIX          optional key prefix
    S3_REGION          optional AWS region
"""

import logging
import os

from hostbackup.backup.outcome import FatalError
from hostbackup.backup.storage import S3Storage, StorageError

log = logging.getLogger(__name__)

S3_BACKUP_ENABLE = os.environ.get('S3_BACKUP_ENABLE', 'false').lower() == 'true'
S3_BUCKET = os.environ.get('S3_BUCKET', '')
S3_PREFIX = os.environ.get('S3_PREFIX', '')
S3_REGION = os.environ.get('S3_REGION') or None


def s3_setup() -> S3Storage:
    if not S3_BUCKET:
        raise FatalError("S3_BUCKET is not set. Please configure it before using this plugin.")
    try:
        storage = S3Storage(S3_BUCKET, region=S3_REGION)
    except StorageError as e:
        raise FatalError(str(e))
    log.info("Backing up to s3://%s/%s", S3_BUCKET, S3_PREFIX)
    return storage


def s3_exec(output_root, context):
    if not S3_BACKUP_ENABLE:
        log.info("s3 plugin disabled.")
        return True

    storage = s3_setup()
    try:
        summary = storage.sync_directory(output_root, S3_PREFIX)
    except StorageError as e:
        log.error("s3 backup failed: %s", e)
        return False

    log.info(
        "Completed aws backup: %d uploaded, %d unchanged, %d failed.",
        summary['uploaded'], summary['skipped'], summary['failed']
    )
    return summary['failed'] == 0
