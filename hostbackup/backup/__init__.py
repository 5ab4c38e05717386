"""
Backup module for hostbackup.

This module handles the backup pipeline including:
- External tool discovery
- Keychain provisioning
- Archiving and encryption
- Local publishing and remote storage
- Plugin discovery and invocation
- Retention policy enforcement
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup
from .outcome import FatalError, RunOutcome
from .compression import Archiver, CompressionMethod
from .encryption import Encryptor
from .keychain import KeychainProvisioner
from .storage import LocalStorage, S3Storage, SFTPStorage
from .plugins import PluginContext, PluginRegistry, PluginRunner
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'FatalError',
    'RunOutcome',
    'Archiver',
    'CompressionMethod',
    'Encryptor',
    'KeychainProvisioner',
    'LocalStorage',
    'S3Storage',
    'SFTPStorage',
    'PluginContext',
    'PluginRegistry',
    'PluginRunner',
    'RetentionManager'
]
