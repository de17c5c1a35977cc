"""
Encrypted local storage for chat client.

Stores identity private keys encrypted on disk, so a key survives restarts
when the logout policy retains it.
"""

import os
import json
import logging
import sqlite3
from typing import Optional, Dict
from pathlib import Path
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

VERIFIER = b"e2e-storage-v1"


class EncryptedStorage:
    """
    Manages encrypted local storage for key material.

    All data is encrypted with a key derived from the user's password.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            username: Username for this storage
            storage_dir: Directory to store encrypted data
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{username}.db"
        self.salt_path = self.storage_dir / f"{username}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock storage with password, creating it on first use.

        Args:
            password: User's password

        Returns:
            True if unlocked, False if the password is wrong

        Raises:
            ValueError: Empty password
        """
        if not password:
            raise ValueError("A passphrase is required to unlock key storage")
        if not self.salt_path.exists():
            salt = os.urandom(16)
            self.salt_path.write_bytes(salt)
            self.encryption_key = self.derive_key(password, salt)
            self._init_database()
            self._set_metadata("verifier", VERIFIER)
            return True

        self.encryption_key = self.derive_key(password, self.salt_path.read_bytes())
        self._init_database()
        try:
            if self._get_metadata("verifier") not in (None, VERIFIER):
                raise InvalidTag()
        except InvalidTag:
            logger.warning("Wrong password for local storage of %s", self.username)
            self.close()
            self.encryption_key = None
            return False
        return True

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                encrypted_value BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                key_type TEXT PRIMARY KEY,
                encrypted_data BLOB NOT NULL
            )
        """)

        self.db.commit()

    def _encrypt(self, data: bytes, context: str) -> bytes:
        """Encrypt data with storage key, bound to its row"""
        if not self.encryption_key:
            raise ValueError("Storage not unlocked")

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        return nonce + aesgcm.encrypt(nonce, data, context.encode())

    def _decrypt(self, encrypted_data: bytes, context: str) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            raise ValueError("Storage not unlocked")

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(encrypted_data[:12], encrypted_data[12:], context.encode())

    def save_keys(self, key_type: str, key_data: dict):
        """
        Save cryptographic keys.

        Args:
            key_type: Storage slot, e.g. 'identity:alice'
            key_data: Dictionary of key data
        """
        if not self.db:
            raise ValueError("Storage not unlocked")

        encrypted = self._encrypt(json.dumps(key_data).encode(), f"keys:{key_type}")
        self.db.execute(
            "INSERT OR REPLACE INTO keys (key_type, encrypted_data) VALUES (?, ?)",
            (key_type, encrypted)
        )
        self.db.commit()

    def load_keys(self, key_type: str) -> Optional[Dict]:
        """
        Load cryptographic keys.

        Args:
            key_type: Storage slot to load

        Returns:
            Dictionary of key data or None
        """
        if not self.db:
            return None

        row = self.db.execute("SELECT encrypted_data FROM keys WHERE key_type = ?", (key_type,)).fetchone()
        if not row:
            return None
        try:
            return json.loads(self._decrypt(row[0], f"keys:{key_type}").decode())
        except (InvalidTag, ValueError):
            logger.warning("Stored keys %s could not be decrypted", key_type)
            return None

    def delete_keys(self, key_type: str):
        """Remove a key slot"""
        if not self.db:
            return
        self.db.execute("DELETE FROM keys WHERE key_type = ?", (key_type,))
        self.db.commit()

    def _set_metadata(self, key: str, value: bytes):
        self.db.execute(
            "INSERT OR REPLACE INTO metadata (key, encrypted_value) VALUES (?, ?)",
            (key, self._encrypt(value, f"meta:{key}"))
        )
        self.db.commit()

    def _get_metadata(self, key: str) -> Optional[bytes]:
        """Get metadata value"""
        row = self.db.execute("SELECT encrypted_value FROM metadata WHERE key = ?", (key,)).fetchone()
        if row:
            return self._decrypt(row[0], f"meta:{key}")
        return None

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
