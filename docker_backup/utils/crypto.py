"""
Encryption of backup archives with age.

Archives are encrypted to a public recipient so the backup host never needs
the private key; only restore requires the identity file.
"""

import logging
import os
import shutil
import subprocess
from typing import List, Optional


logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


class AgeCipher:
    """Encrypts and decrypts files through the age command line tool."""

    def __init__(self, recipient: Optional[str] = None, identity_file: Optional[str] = None,
                 binary: str = 'age', timeout: Optional[float] = None):
        """
        Args:
            recipient: age public key archives are encrypted to
            identity_file: Private key file used for decryption
            binary: Name or path of the age executable
            timeout: Seconds before an age invocation is killed
        """
        self.recipient = recipient
        self.identity_file = identity_file
        self.binary = binary
        self.timeout = timeout

    def _run(self, args: List[str], output_path: str, action: str):
        if shutil.which(self.binary) is None:
            raise EncryptionError(f"{self.binary} is not installed")

        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            self._discard(output_path)
            raise EncryptionError(f"{action} timed out after {self.timeout}s")
        except OSError as e:
            self._discard(output_path)
            raise EncryptionError(f"{action} failed: {e}")

        if result.returncode != 0:
            self._discard(output_path)
            raise EncryptionError(f"{action} failed: {result.stderr.strip()}")

    @staticmethod
    def _discard(path: str):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Failed to remove partial output {path}: {e}")

    def encrypt_file(self, input_path: str, output_path: str) -> str:
        """
        Encrypt a file to the configured recipient.

        Returns:
            Path of the encrypted file

        Raises:
            EncryptionError: If no recipient is set or age fails
        """
        if not self.recipient:
            raise EncryptionError("AGE_RECIPIENT not set, cannot encrypt")

        logger.info(f"Encrypting: {os.path.basename(input_path)}")
        self._run([self.binary, '-r', self.recipient, '-o', output_path, input_path], output_path, 'Encryption')
        logger.info(f"  Encrypted: {os.path.getsize(output_path)} bytes")
        return output_path

    def decrypt_file(self, input_path: str, output_path: str) -> str:
        """
        Decrypt a file with the configured identity file.

        Returns:
            Path of the decrypted file

        Raises:
            EncryptionError: If the identity file is missing or age fails
        """
        if not self.identity_file:
            raise EncryptionError("AGE_KEY_FILE not set, cannot decrypt")
        if not os.path.isfile(self.identity_file):
            raise EncryptionError(f"Age key file not found: {self.identity_file}")

        logger.info(f"Decrypting: {os.path.basename(input_path)}")
        self._run([self.binary, '-d', '-i', self.identity_file, '-o', output_path, input_path], output_path, 'Decryption')
        return output_path
