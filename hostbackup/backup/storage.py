"""
Storage handlers for backup generations.

Supports:
- LocalStorage: Publish the scratch workspace into the dated output directory
- S3Storage: Mirror the output root into an AWS S3 bucket
- SFTPStorage: Mirror the output root to a remote directory via SSH/SFTP
"""

import os
import logging
import stat
from pathlib import Path
from typing import Dict, List, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from .outcome import FatalError
from .tools import run_tool, ToolError
from .workspace import KEYCHAIN_DIRNAME

log = logging.getLogger(__name__)

# Files larger than this use multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class LocalStorage:
    """
    Publishes workspace contents into ``{output_root}/{hostname}/{date_label}``.
    """

    def __init__(self, output_root: str, hostname: str, date_label: str, sync: str):
        """
        Initialize local storage handler.

        Args:
            output_root: Base directory for backups
            hostname: Host name used for the per-host directory
            date_label: Generation directory name
            sync: Path to the rsync executable
        """
        self.output_root = Path(output_root)
        self.host_dir = self.output_root / hostname
        self.generation_dir = self.host_dir / date_label
        self.sync = sync

    def check_readable(self):
        """
        Verify that an existing output root can be used.

        Raises:
            FatalError: If the output root exists but is not a readable,
                writable directory
        """
        if not self.output_root.exists():
            return
        if not self.output_root.is_dir() or not os.access(self.output_root, os.R_OK | os.W_OK | os.X_OK):
            raise FatalError(f"Cannot read from {self.output_root}")

    def prepare(self) -> Path:
        """
        Create the output root and the generation directory if needed.

        Returns:
            Generation directory path

        Raises:
            FatalError: If either directory cannot be created
        """
        try:
            self.output_root.mkdir(parents=True, exist_ok=True)
            self.generation_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FatalError(f"Cannot write to {self.output_root}: {e}")
        return self.generation_dir

    def publish(self, workspace_dir: Path) -> Path:
        """
        Copy workspace contents into the generation directory.

        Symbolic links are preserved, the keychain is excluded and the
        workspace originals are left in place.

        Args:
            workspace_dir: Scratch workspace directory

        Returns:
            Generation directory path

        Raises:
            FatalError: If the directories cannot be created
            StorageError: If the transfer fails
        """
        log.info("Moving backups from %s to %s", workspace_dir, self.output_root)
        self.prepare()

        try:
            run_tool([
                self.sync,
                '--exclude', KEYCHAIN_DIRNAME,
                '-rl',
                f"{workspace_dir}/",
                f"{self.generation_dir}/",
            ])
        except ToolError as e:
            raise StorageError(f"Failed to publish to {self.generation_dir}: {e}")

        return self.generation_dir


def iter_files(local_dir: Path):
    """Yield (path, relative_posix_path) for every file below local_dir."""
    for root, _dirs, files in os.walk(local_dir):
        for name in sorted(files):
            path = Path(root) / name
            yield path, path.relative_to(local_dir).as_posix()


class S3Storage:
    """
    Handler for mirroring backups to AWS S3.

    Objects are keyed by their path relative to the mirrored directory,
    optionally below a prefix: {prefix}/{hostname}/{date_label}/{filename}
    """

    def __init__(self, bucket_name: str, region: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Credentials fall back to the standard boto3 chain when not given.

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            access_key: AWS access key ID
            secret_key: AWS secret access key
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def sync_directory(self, local_dir: str, prefix: str = '') -> Dict[str, int]:
        """
        Upload every file under local_dir that is missing or differs in size.

        Args:
            local_dir: Directory to mirror
            prefix: Optional key prefix

        Returns:
            Dict with counts: {'uploaded': int, 'skipped': int, 'failed': int}

        Raises:
            StorageError: If local_dir is not a directory or the bucket cannot be listed
        """
        local_dir = Path(local_dir)
        if not local_dir.is_dir():
            raise StorageError(f"{local_dir} is not a directory.")

        prefix = prefix.strip('/')
        remote_sizes = {obj['Key']: obj['Size'] for obj in self.list_objects(prefix)}
        summary = {'uploaded': 0, 'skipped': 0, 'failed': 0}

        for path, relative in iter_files(local_dir):
            key = f"{prefix}/{relative}" if prefix else relative
            if remote_sizes.get(key) == path.stat().st_size:
                summary['skipped'] += 1
                continue
            try:
                self.upload(str(path), key)
                summary['uploaded'] += 1
                log.info("Uploaded s3://%s/%s", self.bucket_name, key)
            except StorageError as e:
                summary['failed'] += 1
                log.error("%s", e)

        return summary

    def upload(self, local_path: str, s3_key: str):
        """
        Upload a single file.

        Args:
            local_path: Path to local file
            s3_key: S3 object key

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload of {s3_key} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload of {s3_key} failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                log.warning("Could not abort multipart upload of %s: %s", s3_key, abort_error)
            raise

    def list_objects(self, prefix: str = '') -> List[dict]:
        """
        List objects in the bucket with given prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")


class SFTPStorage:
    """
    Handler for mirroring backups to a remote directory via SSH/SFTP.
    """

    def __init__(self, config: Dict):
        """
        Initialize SFTP storage handler.

        Args:
            config: SSH configuration dict with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional if using key)
                - private_key: Path to private key file (optional)
                - target: Remote directory receiving the mirror
        """
        self.host = config.get('host')
        self.port = int(config.get('port') or 22)
        self.username = config.get('username')
        self.password = config.get('password')
        self.private_key_path = config.get('private_key')
        self.target = (config.get('target') or '.').rstrip('/') or '/'

        self.ssh_client = None
        self.sftp_client = None

    def connect(self):
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise StorageError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise StorageError("Either password or private_key must be provided")

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise StorageError(f"SSH connection failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def _ensure_remote_dir(self, remote_dir: str):
        """Create remote_dir and any missing parents."""
        current = '/' if remote_dir.startswith('/') else ''
        for part in [p for p in remote_dir.split('/') if p]:
            current = f"{current}{part}" if current in ('', '/') else f"{current}/{part}"
            try:
                attrs = self.sftp_client.stat(current)
            except FileNotFoundError:
                self.sftp_client.mkdir(current)
                continue
            if not stat.S_ISDIR(attrs.st_mode):
                raise StorageError(f"Remote path is not a directory: {current}")

    def sync_directory(self, local_dir: str) -> Dict[str, int]:
        """
        Upload every file under local_dir that is missing remotely or differs in size.

        Args:
            local_dir: Directory to mirror

        Returns:
            Dict with counts: {'uploaded': int, 'skipped': int, 'failed': int}

        Raises:
            StorageError: If connecting fails or local_dir is not a directory
        """
        local_dir = Path(local_dir)
        if not local_dir.is_dir():
            raise StorageError(f"{local_dir} is not a directory.")

        summary = {'uploaded': 0, 'skipped': 0, 'failed': 0}
        self.connect()

        try:
            for path, relative in iter_files(local_dir):
                remote_path = f"{self.target}/{relative}"
                try:
                    self._ensure_remote_dir(remote_path.rsplit('/', 1)[0])
                    if self._remote_size(remote_path) == path.stat().st_size:
                        summary['skipped'] += 1
                        continue
                    self.sftp_client.put(str(path), remote_path)
                    summary['uploaded'] += 1
                    log.info("Uploaded %s:%s", self.host, remote_path)
                except (OSError, paramiko.SSHException, StorageError) as e:
                    summary['failed'] += 1
                    log.error("Failed to upload %s: %s", relative, e)
        finally:
            self.cleanup()

        return summary

    def _remote_size(self, remote_path: str) -> Optional[int]:
        try:
            return self.sftp_client.stat(remote_path).st_size
        except FileNotFoundError:
            return None

    def cleanup(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, paramiko.SSHException):
                pass
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (OSError, paramiko.SSHException):
                pass
            self.ssh_client = None
