"""
Hybrid encryption for message content.

Every message gets its own AES-256-GCM key. The content is encrypted once
and the key is wrapped separately under each recipient's RSA-OAEP public
key, so a single packet can be opened by both the sender and the receiver.
"""

from dataclasses import dataclass, field
from typing import Dict, Tuple, Union
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from .primitives import (
    AES_KEY_BYTES,
    DecryptionError,
    KeyUnwrapError,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64decode,
    b64encode,
    oaep_padding,
    random_bytes,
)


@dataclass(frozen=True)
class SymmetricKey:
    """Raw AES-256 key material for exactly one message"""
    material: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.material) != AES_KEY_BYTES:
            raise ValueError("AES-256 keys are 32 bytes")


@dataclass(frozen=True)
class EncryptedContent:
    """
    Attributes:
        ciphertext: Encrypted content with the 16-byte GCM tag appended
        iv: 12-byte initialization vector
    """
    ciphertext: bytes
    iv: bytes


class HybridCipher:
    """
    Content encryption and per-recipient key wrapping.
    """

    def generate_symmetric_key(self) -> SymmetricKey:
        """Generate a fresh AES-256-GCM key"""
        return SymmetricKey(random_bytes(AES_KEY_BYTES))

    def encrypt_content(self, plaintext: Union[str, bytes], key: SymmetricKey) -> EncryptedContent:
        """
        Encrypt content under a fresh random iv.

        Args:
            plaintext: Text (UTF-8 encoded) or raw bytes
            key: Message key

        Returns:
            EncryptedContent with ciphertext and iv
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        iv, ciphertext = aes_gcm_encrypt(key.material, plaintext)
        return EncryptedContent(ciphertext=ciphertext, iv=iv)

    def decrypt_content(self, ciphertext: bytes, iv: bytes, key: SymmetricKey) -> str:
        """
        Decrypt and authenticate content.

        Raises:
            DecryptionError: If authentication fails or the result is not text
        """
        plaintext = aes_gcm_decrypt(key.material, iv, ciphertext)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted content is not valid UTF-8") from e

    def wrap_key_for_recipient(self, key: SymmetricKey, recipient_public_key: RSAPublicKey) -> str:
        """Encrypt raw key bytes under RSA-OAEP, returning base64"""
        wrapped = recipient_public_key.encrypt(key.material, oaep_padding())
        return b64encode(wrapped)

    def unwrap_key(self, wrapped: str, own_private_key: RSAPrivateKey) -> SymmetricKey:
        """
        Recover a message key wrapped for us.

        Raises:
            KeyUnwrapError: If the blob is empty, malformed, wrapped for a
                different key pair, or does not yield a 256-bit key
        """
        if not wrapped:
            raise KeyUnwrapError("Encrypted AES key is required")
        try:
            blob = b64decode(wrapped)
        except ValueError as e:
            raise KeyUnwrapError("Invalid encrypted key format") from e
        if not blob:
            raise KeyUnwrapError("Invalid encrypted key format")

        try:
            material = own_private_key.decrypt(blob, oaep_padding())
        except ValueError as e:
            raise KeyUnwrapError("Wrapped key does not match this identity") from e

        if len(material) != AES_KEY_BYTES:
            raise KeyUnwrapError("Unwrapped key is not a 256-bit AES key")
        return SymmetricKey(material)

    def seal(
        self,
        plaintext: Union[str, bytes],
        recipients: Dict[str, RSAPublicKey]
    ) -> Tuple[EncryptedContent, Dict[str, str]]:
        """
        Encrypt content once and wrap its key for every recipient.

        Args:
            plaintext: Content to encrypt
            recipients: Mapping of recipient id to public key

        Returns:
            Tuple of (encrypted content, recipient id -> wrapped key)
        """
        key = self.generate_symmetric_key()
        encrypted = self.encrypt_content(plaintext, key)
        wrapped = {
            recipient_id: self.wrap_key_for_recipient(key, public_key)
            for recipient_id, public_key in recipients.items()
        }
        return encrypted, wrapped

    def open(self, ciphertext: bytes, iv: bytes, wrapped: str, own_private_key: RSAPrivateKey) -> str:
        """Unwrap our copy of the message key and decrypt the content"""
        key = self.unwrap_key(wrapped, own_private_key)
        return self.decrypt_content(ciphertext, iv, key)
