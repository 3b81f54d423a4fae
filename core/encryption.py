"""
Encryption manager for Media Backup Engine
Keeps stored credentials encrypted at rest
"""
import logging
import os
from pathlib import Path
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
import config

logger = logging.getLogger(__name__)


class EncryptionManager:
    """Manages encryption of secrets stored in the settings table"""

    def __init__(self, key_path: Optional[Path] = None):
        self.key_path = Path(key_path or config.ENCRYPTION_KEY_PATH)
        self.cipher = None
        self._initialize_encryption()

    def _initialize_encryption(self):
        """Initialize encryption with existing or new key"""
        if self.key_path.exists():
            self._load_key()
        else:
            self._generate_and_save_key()

    def _generate_and_save_key(self):
        """Generate a new encryption key and save it"""
        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.key_path, 'wb') as key_file:
            key_file.write(key)

        # Owner read/write only; not supported on every filesystem
        try:
            os.chmod(self.key_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not restrict permissions on {self.key_path}: {e}")

        logger.info(f"Generated new settings key at {self.key_path}")
        self.cipher = Fernet(key)

    def _load_key(self):
        """Load existing encryption key"""
        with open(self.key_path, 'rb') as key_file:
            key = key_file.read()
        self.cipher = Fernet(key)

    def encrypt_string(self, data: str) -> str:
        """Encrypt a string, returning a text token"""
        return self.cipher.encrypt(data.encode()).decode()

    def decrypt_string(self, token: str) -> str:
        """Decrypt a text token produced by encrypt_string"""
        try:
            return self.cipher.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise RuntimeError(
                f"Stored secret cannot be decrypted with key {self.key_path}"
            ) from e

    def verify_encryption_key(self) -> bool:
        """Verify that the encryption key is valid"""
        try:
            test_data = b"test_data"
            encrypted = self.cipher.encrypt(test_data)
            decrypted = self.cipher.decrypt(encrypted)
            return decrypted == test_data
        except InvalidToken:
            return False
