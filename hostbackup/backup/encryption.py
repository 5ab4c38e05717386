"""
Workspace encryption.

Encrypts every regular file at the top level of the scratch workspace to all
recipients found in the run keychain, then deletes the plaintext. The
imported keys are trusted unconditionally (``--trust-model always``).
"""

import logging
from pathlib import Path
from typing import List

from .outcome import FatalError
from .tools import run_tool, ToolError

log = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when a file cannot be encrypted."""
    pass


def parse_recipients(colon_listing: str) -> List[str]:
    """
    Extract recipient identities from a ``--with-colons`` key listing.

    The identity is the last token of each ``uid`` record's user ID field
    with angle brackets removed, i.e. the e-mail address.

    Args:
        colon_listing: Output of ``--list-public-keys --with-colons``

    Returns:
        Recipient identities in listing order
    """
    recipients = []
    for line in colon_listing.splitlines():
        fields = line.split(':')
        if fields[0] != 'uid' or len(fields) < 10:
            continue
        tokens = fields[9].split()
        if not tokens:
            continue
        identity = tokens[-1].replace('<', '').replace('>', '')
        if identity:
            recipients.append(identity)
    return recipients


class Encryptor:
    """
    Encrypts workspace files in place.
    """

    def __init__(self, cipher: str, keychain_dir: Path, ascii_armor: bool = True, strict: bool = False):
        """
        Initialize encryptor.

        Args:
            cipher: Path to the cipher tool
            keychain_dir: Keychain populated by KeychainProvisioner
            ascii_armor: Produce ASCII-armored (.asc) output instead of binary (.gpg)
            strict: Treat any per-file failure as fatal instead of leaving plaintext
        """
        self.cipher = cipher
        self.keychain_dir = Path(keychain_dir)
        self.ascii_armor = ascii_armor
        self.strict = strict

    @property
    def suffix(self) -> str:
        return '.asc' if self.ascii_armor else '.gpg'

    def list_recipients(self) -> List[str]:
        """
        List recipient identities present in the keychain.

        Returns:
            Recipient identities; empty if the keychain cannot be listed
        """
        try:
            result = run_tool([
                self.cipher,
                '--homedir', str(self.keychain_dir),
                '--list-public-keys',
                '--with-colons',
            ])
        except ToolError as e:
            log.error("Could not list keys in %s: %s", self.keychain_dir, e)
            return []

        return parse_recipients(result.stdout.decode(errors='replace'))

    def encrypt_file(self, path: Path, recipients: List[str]) -> Path:
        """
        Encrypt one file to all recipients and delete the plaintext.

        Args:
            path: File to encrypt
            recipients: Recipient identities

        Returns:
            Path of the ciphertext file

        Raises:
            EncryptionError: If encryption fails; the plaintext is left in place
        """
        if not recipients:
            raise EncryptionError(f"Could not encrypt {path}: no recipients available")

        output = path.with_name(path.name + self.suffix)
        args = [
            self.cipher,
            '--homedir', str(self.keychain_dir),
            '--batch', '--yes',
            '--trust-model', 'always',
            '--output', str(output),
            '--encrypt',
        ]
        if self.ascii_armor:
            args.append('--armor')
        for recipient in recipients:
            args.extend(['--recipient', recipient])
        args.append(str(path))

        try:
            run_tool(args)
        except ToolError as e:
            # Never leave partial ciphertext next to the plaintext
            if output.exists():
                try:
                    output.unlink()
                except OSError:
                    log.warning("Could not remove partial output %s", output)
            raise EncryptionError(f"Could not encrypt {path}: {e}")

        path.unlink()
        return output

    def encrypt_files(self, files: List[Path]) -> List[Path]:
        """
        Encrypt the given workspace files.

        Recipients are listed fresh from the keychain before the pass.

        Args:
            files: Regular files at the top level of the workspace

        Returns:
            Files left in plaintext because encryption failed

        Raises:
            FatalError: In strict mode, on the first failed file
        """
        recipients = self.list_recipients()
        log.info("Encrypting %d files for %d recipients", len(files), len(recipients))

        plaintext = []
        for path in files:
            try:
                self.encrypt_file(path, recipients)
            except EncryptionError as e:
                if self.strict:
                    raise FatalError(f"{e} (strict encryption enabled)")
                log.error("%s", e)
                plaintext.append(path)

        if plaintext:
            log.warning(
                "%d files will be published unencrypted: %s",
                len(plaintext), ', '.join(p.name for p in plaintext)
            )

        return plaintext
