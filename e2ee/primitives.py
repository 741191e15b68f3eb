"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations shared by the identity,
hybrid cipher and packet layers: the error hierarchy, base64 helpers,
secure randomness and the AES-256-GCM content primitive.
"""

import os
import base64
import binascii
from typing import Tuple
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


AES_KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class CryptoEnvironmentError(CryptoError):
    """The secure random source or a required primitive is unavailable"""
    pass


class KeyFormatError(CryptoError):
    """An exported key could not be parsed"""
    pass


class PacketFormatError(CryptoError):
    """A wire packet is structurally malformed"""
    pass


class KeyUnwrapError(CryptoError):
    """A wrapped symmetric key could not be recovered with our private key"""
    pass


class DecryptionError(CryptoError):
    """Authenticated decryption of message content failed"""
    pass


def oaep_padding() -> padding.OAEP:
    """RSA-OAEP padding with SHA-512 for both the digest and MGF1"""
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA512()),
        algorithm=hashes.SHA512(),
        label=None
    )


def random_bytes(length: int) -> bytes:
    """
    Read bytes from the operating system CSPRNG.

    Raises:
        CryptoEnvironmentError: If no secure random source is available
    """
    try:
        return os.urandom(length)
    except NotImplementedError as e:
        raise CryptoEnvironmentError("Secure random source unavailable") from e


def b64encode(data: bytes) -> str:
    """Encode bytes as standard base64 text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Decode standard base64 text, ignoring embedded whitespace.

    Raises:
        ValueError: If the input is not a string or not valid base64
    """
    if not isinstance(text, str):
        raise ValueError("Invalid base64 input")
    cleaned = "".join(text.split())
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Failed to decode base64 string") from e


def aes_gcm_encrypt(key: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt with AES-256-GCM under a fresh 12-byte iv.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt

    Returns:
        Tuple of (iv, ciphertext + 16-byte tag)
    """
    iv = random_bytes(IV_BYTES)
    try:
        ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
    except UnsupportedAlgorithm as e:
        raise CryptoEnvironmentError("AES-GCM is not supported by this backend") from e
    return iv, ciphertext


def aes_gcm_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt and authenticate AES-256-GCM content.

    Raises:
        DecryptionError: If the iv, key or ciphertext fail authentication
    """
    if len(iv) != IV_BYTES:
        raise DecryptionError("Invalid iv length")
    if len(ciphertext) < TAG_BYTES:
        raise DecryptionError("Ciphertext too short")

    try:
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication failed") from e
    except ValueError as e:
        raise DecryptionError(f"Decryption failed: {e}") from e
