"""
Recipient key provisioning.

Imports every ``*.pub`` file from the key directory into an ephemeral
keychain living inside the scratch workspace, so the operator's own keyring
is never touched and nothing outlives the run.
"""

import logging
import os
from pathlib import Path
from typing import List

from .outcome import FatalError
from .tools import run_tool, ToolError

log = logging.getLogger(__name__)

PUBLIC_KEY_PATTERN = '*.pub'


class KeychainError(Exception):
    """Raised when a key cannot be imported."""
    pass


class KeychainProvisioner:
    """
    Sets up the per-run keychain used by the Encryptor.
    """

    def __init__(self, key_dir: str, keychain_dir: Path, cipher: str):
        """
        Initialize keychain provisioner.

        Args:
            key_dir: Directory holding recipient public keys
            keychain_dir: Credential store path inside the scratch workspace
            cipher: Path to the cipher tool
        """
        self.key_dir = Path(key_dir).expanduser()
        self.keychain_dir = Path(keychain_dir)
        self.cipher = cipher

    def find_keys(self) -> List[Path]:
        """
        List public key files in the key directory.

        Returns:
            Sorted list of matching regular files

        Raises:
            FatalError: If the key directory cannot be read
        """
        if not self.key_dir.is_dir() or not os.access(self.key_dir, os.R_OK | os.X_OK):
            raise FatalError(f"Cannot read from {self.key_dir}")

        keys = []
        for candidate in sorted(self.key_dir.glob(PUBLIC_KEY_PATTERN)):
            if candidate.is_file():
                keys.append(candidate)
            else:
                log.warning("%s is not a file.", candidate)
        return keys

    def provision(self) -> int:
        """
        Import all recipient keys into the keychain.

        Returns:
            Number of key files found. Zero means encryption must be disabled
            for this run; the keychain is not created in that case.

        Raises:
            FatalError: If the key directory cannot be read or the keychain
                cannot be created
        """
        log.info("Checking for keys in %s", self.key_dir)
        keys = self.find_keys()

        if not keys:
            log.warning("No keys found in %s. Disabling encryption.", self.key_dir)
            return 0

        log.info("Setting up encryption keychain.")
        try:
            self.keychain_dir.mkdir(mode=0o700)
            os.chmod(self.keychain_dir, 0o700)
        except OSError as e:
            raise FatalError(f"Cannot create keychain {self.keychain_dir}: {e}")

        for key in keys:
            log.info("Importing %s", key)
            try:
                self.import_key(key)
            except KeychainError as e:
                log.error("%s", e)

        return len(keys)

    def import_key(self, key: Path):
        """
        Import a single key file.

        Raises:
            KeychainError: If the cipher tool rejects the key
        """
        try:
            run_tool([
                self.cipher,
                '--homedir', str(self.keychain_dir),
                '--batch',
                '--import', str(key),
            ])
        except ToolError as e:
            raise KeychainError(f"Could not import {key}: {e}")
