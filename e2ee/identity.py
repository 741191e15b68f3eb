"""
Identity key management.

Each participant owns one long-lived RSA-OAEP key pair (4096-bit modulus,
SHA-512). The public half is published to the key directory; the private
half stays on this device and is only used to unwrap message keys.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from .primitives import (
    CryptoEnvironmentError,
    KeyFormatError,
    b64decode,
    b64encode,
)

logger = logging.getLogger(__name__)

MODULUS_BITS = 4096
PUBLIC_EXPONENT = 65537

# Values that leak out of untyped key storage and must never be parsed
_SENTINELS = {"undefined", "null"}


@dataclass(frozen=True)
class KeyPair:
    """
    An identity key pair.

    Attributes:
        private_key: RSA private key, never exported outside the local key store
        public_key: RSA public key, shared through the directory
    """
    private_key: RSAPrivateKey
    public_key: RSAPublicKey


def _decode_key_text(key_text: Optional[str], kind: str) -> bytes:
    if not key_text or not isinstance(key_text, str) or key_text.strip() in _SENTINELS:
        raise KeyFormatError(f"Valid {kind} key is required")
    try:
        data = b64decode(key_text)
    except ValueError as e:
        raise KeyFormatError(f"{kind.capitalize()} key is not valid base64") from e
    if not data:
        raise KeyFormatError(f"{kind.capitalize()} key is empty")
    return data


class IdentityKeyManager:
    """
    Generates, serializes and holds the local identity key pair.
    """

    def __init__(self, key_size: int = MODULUS_BITS):
        """
        Args:
            key_size: RSA modulus length in bits
        """
        self.key_size = key_size
        self.key_pair: Optional[KeyPair] = None

    def generate(self) -> KeyPair:
        """
        Generate a fresh RSA-OAEP key pair.

        Raises:
            CryptoEnvironmentError: If the backend cannot generate RSA keys
        """
        try:
            private_key = rsa.generate_private_key(
                public_exponent=PUBLIC_EXPONENT,
                key_size=self.key_size
            )
        except (UnsupportedAlgorithm, NotImplementedError) as e:
            raise CryptoEnvironmentError("RSA key generation unavailable") from e
        return KeyPair(private_key=private_key, public_key=private_key.public_key())

    @staticmethod
    def export_public(key: RSAPublicKey) -> str:
        """Serialize a public key as base64 SPKI DER"""
        return b64encode(key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ))

    @staticmethod
    def export_private(key: RSAPrivateKey) -> str:
        """Serialize a private key as base64 unencrypted PKCS8 DER"""
        return b64encode(key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ))

    @staticmethod
    def import_public(key_text: Optional[str]) -> RSAPublicKey:
        """
        Parse a base64 SPKI public key.

        Raises:
            KeyFormatError: On empty, sentinel, malformed or non-RSA input
        """
        data = _decode_key_text(key_text, "public")
        try:
            key = serialization.load_der_public_key(data)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyFormatError("Malformed public key") from e
        if not isinstance(key, RSAPublicKey):
            raise KeyFormatError("Public key is not an RSA key")
        return key

    @staticmethod
    def import_private(key_text: Optional[str]) -> RSAPrivateKey:
        """
        Parse a base64 PKCS8 private key.

        Raises:
            KeyFormatError: On empty, sentinel, malformed or non-RSA input
        """
        data = _decode_key_text(key_text, "private")
        try:
            key = serialization.load_der_private_key(data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyFormatError("Malformed private key") from e
        if not isinstance(key, RSAPrivateKey):
            raise KeyFormatError("Private key is not an RSA key")
        return key

    def load(self, private_text: str, public_text: Optional[str] = None) -> KeyPair:
        """
        Install a previously exported key pair as the local identity.

        The public half is derived from the private key when not given.
        """
        private_key = self.import_private(private_text)
        if public_text is None:
            public_key = private_key.public_key()
        else:
            public_key = self.import_public(public_text)
            if public_key.public_numbers() != private_key.public_key().public_numbers():
                raise KeyFormatError("Public key does not belong to private key")
        self.key_pair = KeyPair(private_key=private_key, public_key=public_key)
        return self.key_pair

    def load_or_generate(self, private_text: Optional[str]) -> bool:
        """
        Load the stored identity, or generate one on first use.

        Returns:
            True if a new key pair was generated
        """
        if private_text:
            self.load(private_text)
            return False
        self.key_pair = self.generate()
        logger.info("Generated new identity key pair")
        return True

    @property
    def public_key_b64(self) -> Optional[str]:
        """Base64 SPKI of the local public key, if loaded"""
        if self.key_pair is None:
            return None
        return self.export_public(self.key_pair.public_key)

    @property
    def private_key_b64(self) -> Optional[str]:
        if self.key_pair is None:
            return None
        return self.export_private(self.key_pair.private_key)

    def regenerate(self, acknowledge_data_loss: bool = False) -> KeyPair:
        """
        Create a replacement identity key pair.

        Every message wrapped for the old public key becomes permanently
        undecryptable on this device. The returned pair is not installed;
        call ``install`` once the new public key has been published.

        Raises:
            ValueError: If the caller has not acknowledged the data loss
        """
        if not acknowledge_data_loss:
            raise ValueError(
                "Regenerating keys makes all past messages unreadable on this device"
            )
        logger.warning(
            "Regenerating identity keys; previously received messages will become unreadable"
        )
        return self.generate()

    def install(self, key_pair: KeyPair):
        """Make a key pair the local identity"""
        self.key_pair = key_pair
