"""
Encrypted local key storage for the chat client.

Keeps the identity key pair and per-user preferences (such as the
remembered auto-delete mode) in a small SQLite file. Every value is sealed
with AES-256-GCM under a key derived from the user's password, with the
entry name as associated data so rows cannot be swapped.
"""

import json
import logging
import sqlite3
from typing import Dict, Optional
from pathlib import Path
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from e2ee.primitives import AES_KEY_BYTES, IV_BYTES, random_bytes

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 310000
SALT_BYTES = 16

_CHECK_ENTRY = "check"
_CHECK_VALUE = b"vaultline-keystore"
_IDENTITY_ENTRY = "identity"


class KeyStore:
    """
    Password-protected vault for one user's identity keys.

    Nothing is readable until ``unlock`` has derived the vault key.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Args:
            username: Owner of the vault; names the files on disk
            storage_dir: Directory holding the vault files
        """
        self.username = username
        self.path = Path(storage_dir) / f"{username}.db"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._cipher: Optional[AESGCM] = None
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def unlocked(self) -> bool:
        return self._cipher is not None and self._conn is not None

    @staticmethod
    def _vault_key(password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=AES_KEY_BYTES,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode("utf-8"))

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.execute("CREATE TABLE IF NOT EXISTS vault (name TEXT PRIMARY KEY, sealed BLOB NOT NULL)")
        conn.execute("CREATE TABLE IF NOT EXISTS kdf (id INTEGER PRIMARY KEY CHECK (id = 0), salt BLOB NOT NULL)")
        conn.commit()
        return conn

    def unlock(self, password: str) -> bool:
        """
        Derive the vault key, creating the vault on first use.

        Returns:
            True if unlocked, False if the password is wrong
        """
        conn = self._connect()
        row = conn.execute("SELECT salt FROM kdf WHERE id = 0").fetchone()
        created = row is None
        if created:
            salt = random_bytes(SALT_BYTES)
            conn.execute("INSERT INTO kdf (id, salt) VALUES (0, ?)", (salt,))
            conn.commit()
        else:
            salt = row[0]

        self._conn = conn
        self._cipher = AESGCM(self._vault_key(password, salt))
        if created:
            self._write(_CHECK_ENTRY, _CHECK_VALUE)
            return True

        try:
            self._read(_CHECK_ENTRY)
        except InvalidTag:
            logger.warning("Key store for %s rejected password", self.username)
            self.close()
            return False
        return True

    def _write(self, name: str, value: bytes):
        if not self.unlocked:
            raise ValueError("Key store is locked")
        iv = random_bytes(IV_BYTES)
        sealed = iv + self._cipher.encrypt(iv, value, name.encode("utf-8"))
        self._conn.execute("INSERT OR REPLACE INTO vault (name, sealed) VALUES (?, ?)", (name, sealed))
        self._conn.commit()

    def _read(self, name: str) -> Optional[bytes]:
        """
        Raises:
            InvalidTag: If the entry was sealed under another password or tampered with
        """
        if not self.unlocked:
            return None
        row = self._conn.execute("SELECT sealed FROM vault WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        sealed = row[0]
        return self._cipher.decrypt(sealed[:IV_BYTES], sealed[IV_BYTES:], name.encode("utf-8"))

    def save_identity(self, private_key: str, public_key: str):
        """
        Save the identity key pair.

        Args:
            private_key: Base64 PKCS8 private key
            public_key: Base64 SPKI public key
        """
        payload = json.dumps({"private": private_key, "public": public_key})
        self._write(_IDENTITY_ENTRY, payload.encode("utf-8"))

    def load_identity(self) -> Optional[Dict[str, str]]:
        """
        Returns:
            Dictionary with ``private`` and ``public`` entries, or None
        """
        data = self._read(_IDENTITY_ENTRY)
        return json.loads(data) if data is not None else None

    def save_preference(self, name: str, value: str):
        self._write(f"pref:{name}", value.encode("utf-8"))

    def load_preference(self, name: str, default: Optional[str] = None) -> Optional[str]:
        data = self._read(f"pref:{name}")
        return data.decode("utf-8") if data is not None else default

    def close(self):
        self._cipher = None
        if self._conn is not None:
            self._conn.close()
            self._conn = None
