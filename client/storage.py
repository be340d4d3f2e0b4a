"""
Encrypted local storage for the mailbox client.

Keeps the identity's private key and the decrypted message list on disk,
encrypted with a key derived from the user's password.
"""

import os
import json
import sqlite3
from typing import Optional, List, Dict
from pathlib import Path
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


PASSWORD_CHECK = b"securechat-storage"


class EncryptedStorage:
    """
    Manages encrypted local storage for one identity.

    All values are encrypted with a key derived from the user's password.
    """

    def __init__(self, code: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            code: Identity code that owns this storage
            storage_dir: Directory to store encrypted data
        """
        self.code = code
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{code}.db"
        self.salt_path = self.storage_dir / f"{code}.salt"
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
        """
        if not self.db_path.exists() or not self.salt_path.exists():
            salt = os.urandom(16)
            self.salt_path.write_bytes(salt)
            self.encryption_key = self.derive_key(password, salt)
            self._init_database()
            self._set_metadata("check", PASSWORD_CHECK)
            return True

        salt = self.salt_path.read_bytes()
        self.encryption_key = self.derive_key(password, salt)
        self._init_database()

        try:
            if self._get_metadata("check") == PASSWORD_CHECK:
                return True
        except InvalidTag:
            pass

        self.close()
        self.encryption_key = None
        return False

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sender TEXT NOT NULL,
                encrypted_content BLOB NOT NULL,
                timestamp INTEGER NOT NULL
            )
        """)

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

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        if not self.encryption_key:
            raise ValueError("Storage not unlocked")

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        return nonce + aesgcm.encrypt(nonce, data, None)

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            raise ValueError("Storage not unlocked")

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(encrypted_data[:12], encrypted_data[12:], None)

    def save_messages(self, messages: List[Dict]):
        """
        Append received messages in arrival order.

        Args:
            messages: Dicts with 'sender', 'content' and 'timestamp'
        """
        if not self.db:
            return

        cursor = self.db.cursor()
        cursor.executemany(
            "INSERT INTO messages (sender, encrypted_content, timestamp) VALUES (?, ?, ?)",
            [(m['sender'], self._encrypt(m['content'].encode()), m['timestamp']) for m in messages]
        )
        self.db.commit()

    def get_messages(self, limit: Optional[int] = 50) -> List[Dict]:
        """
        Get stored messages, newest first.

        Args:
            limit: Maximum number of messages to retrieve, None for all

        Returns:
            List of message dictionaries
        """
        if not self.db:
            return []

        cursor = self.db.cursor()
        cursor.execute(
            "SELECT sender, encrypted_content, timestamp FROM messages ORDER BY id DESC LIMIT ?",
            (-1 if limit is None else limit,)
        )

        return [
            {
                'sender': sender,
                'content': self._decrypt(encrypted).decode(),
                'timestamp': timestamp
            }
            for sender, encrypted, timestamp in cursor.fetchall()
        ]

    def replace_messages(self, messages: List[Dict]):
        """Replace every stored message, e.g. after a history sync"""
        if not self.db:
            return

        self.db.execute("DELETE FROM messages")
        self.save_messages(messages)

    def save_keys(self, key_type: str, key_data: dict):
        """
        Save cryptographic keys.

        Args:
            key_type: Type of keys ('identity', etc.)
            key_data: Dictionary of key data
        """
        if not self.db:
            return

        encrypted = self._encrypt(json.dumps(key_data).encode())

        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO keys (key_type, encrypted_data) VALUES (?, ?)",
            (key_type, encrypted)
        )
        self.db.commit()

    def load_keys(self, key_type: str) -> Optional[dict]:
        """
        Load cryptographic keys.

        Args:
            key_type: Type of keys to load

        Returns:
            Dictionary of key data or None
        """
        if not self.db:
            return None

        cursor = self.db.cursor()
        cursor.execute("SELECT encrypted_data FROM keys WHERE key_type = ?", (key_type,))
        result = cursor.fetchone()

        if result:
            return json.loads(self._decrypt(result[0]).decode())
        return None

    def _set_metadata(self, key: str, value: bytes):
        self.db.execute(
            "INSERT OR REPLACE INTO metadata (key, encrypted_value) VALUES (?, ?)",
            (key, self._encrypt(value))
        )
        self.db.commit()

    def _get_metadata(self, key: str) -> Optional[bytes]:
        """Get metadata value"""
        if not self.db:
            return None

        cursor = self.db.cursor()
        cursor.execute("SELECT encrypted_value FROM metadata WHERE key = ?", (key,))
        result = cursor.fetchone()

        if result:
            return self._decrypt(result[0])
        return None

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
