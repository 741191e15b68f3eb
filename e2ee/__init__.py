"""
Cryptographic module for end-to-end encrypted ephemeral chat.

Implements hybrid encryption with:
- RSA-OAEP (4096-bit, SHA-512) identity keys
- Per-message AES-256-GCM content keys wrapped for every recipient
- A JSON wire packet carrying the ciphertext and the wrapped keys
"""

from .primitives import (
    CryptoError,
    CryptoEnvironmentError,
    KeyFormatError,
    PacketFormatError,
    KeyUnwrapError,
    DecryptionError,
)
from .identity import IdentityKeyManager, KeyPair
from .hybrid import HybridCipher, SymmetricKey, EncryptedContent
from .packet import PacketCodec, Packet, RawFallback, Envelope, KEY_UNAVAILABLE

__all__ = [
    'CryptoError',
    'CryptoEnvironmentError',
    'KeyFormatError',
    'PacketFormatError',
    'KeyUnwrapError',
    'DecryptionError',
    'IdentityKeyManager',
    'KeyPair',
    'HybridCipher',
    'SymmetricKey',
    'EncryptedContent',
    'PacketCodec',
    'Packet',
    'RawFallback',
    'Envelope',
    'KEY_UNAVAILABLE',
]
