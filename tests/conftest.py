"""
Shared pytest fixtures for hostbackup tests.

This module provides fixtures for:
- Run configuration pointing at temporary directories
- Plugin directory layouts
- Resolved (fake or real) external tools
- Run outcome tracking
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from hostbackup.backup.outcome import RunOutcome
from hostbackup.backup.plugins import CATEGORIES
from hostbackup.backup.tools import ToolAvailability
from hostbackup.config import resolve_configuration


requires_tar_and_rsync = pytest.mark.skipif(
    not (shutil.which('tar') and shutil.which('rsync')),
    reason='tar and rsync are required for end-to-end runs'
)


def completed(args=None, stdout=b'', returncode=0):
    """Build a CompletedProcess as returned by run_tool()."""
    return subprocess.CompletedProcess(args or [], returncode, stdout=stdout, stderr=b'')


@pytest.fixture
def plugin_dir(tmp_path):
    """
    Create an empty plugin root with one directory per category.
    """
    root = tmp_path / 'plugins'
    for category in CATEGORIES:
        (root / category).mkdir(parents=True)
    return root


@pytest.fixture
def source_dir(tmp_path):
    """
    Create a source directory with a few files.
    """
    source = tmp_path / 'data' / 'www'
    source.mkdir(parents=True)
    (source / 'index.html').write_text('<h1>hello</h1>')
    (source / 'nested').mkdir()
    (source / 'nested' / 'app.cfg').write_text('debug = false')
    return source


@pytest.fixture
def make_config(tmp_path, plugin_dir):
    """
    Factory for RunConfiguration objects rooted in tmp_path.

    Encryption is off and retention is 7 unless overridden.
    """
    def _make(**overrides):
        values = {
            'source_patterns': (),
            'output_root': str(tmp_path / 'backups'),
            'encryption': False,
            'retention': 7,
            'compression': True,
            'compression_method': 'gz',
            'key_dir': str(tmp_path / 'pubkey'),
            'plugin_dir': str(plugin_dir),
            'temp_dir': str(tmp_path / 'tmp'),
            'log_file': str(tmp_path / 'log' / 'hostbackup.log'),
            'color': False,
        }
        values.update(overrides)
        return resolve_configuration(**values)

    return _make


@pytest.fixture
def fake_tools():
    """
    Tools resolved to fixed paths; use together with a patched run_tool.
    """
    return ToolAvailability(archiver='/usr/bin/tar', cipher='/usr/bin/gpg', sync='/usr/bin/rsync')


@pytest.fixture
def outcome():
    """
    RunOutcome attached to the hostbackup logger for the test.
    """
    tracker = RunOutcome()
    tracker.attach()
    yield tracker
    tracker.detach()


@pytest.fixture
def workspace_dir(tmp_path):
    """
    Directory standing in for a scratch workspace.
    """
    workspace = tmp_path / 'workspace'
    workspace.mkdir()
    return workspace


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches real accounts."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the mocked SSHClient class; its SFTP client is available as
    ``mock_ssh.return_value.open_sftp.return_value``.
    """
    with patch('hostbackup.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


def write_plugin(directory: Path, name: str, body: str) -> Path:
    """Write a plugin file into a category directory."""
    path = directory / name
    path.write_text(body)
    return path
