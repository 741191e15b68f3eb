"""
Wire packet codec.

A packet is the JSON envelope stored for every encrypted message:

    {"iv": <b64>, "content": <b64 ciphertext+tag>, "keys": {<user id>: <b64 wrapped key>}}

Historical records may hold plain text instead, so decoding tolerates
non-packet input and hands it back as a raw fallback.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Union

from .primitives import IV_BYTES, PacketFormatError, b64decode, b64encode

logger = logging.getLogger(__name__)

PACKET_FIELDS = ("iv", "content", "keys")


@dataclass(frozen=True)
class Packet:
    """
    A decoded packet. Field values are the base64 strings found on the wire.
    """
    iv: str
    content: str
    keys: Dict[str, str]

    @property
    def iv_bytes(self) -> bytes:
        return b64decode(self.iv)

    @property
    def content_bytes(self) -> bytes:
        return b64decode(self.content)


@dataclass(frozen=True)
class RawFallback:
    """Legacy record content that predates the encrypted format"""
    text: str


@dataclass(frozen=True)
class Envelope:
    """The parts of a packet one recipient needs to decrypt it"""
    iv: bytes
    ciphertext: bytes
    wrapped_key: str


class _KeyUnavailable:
    """No wrapped key in the packet matches the requesting user"""

    def __repr__(self):
        return "KEY_UNAVAILABLE"


KEY_UNAVAILABLE = _KeyUnavailable()


class PacketCodec:
    """
    Serializes and parses wire packets.
    """

    @staticmethod
    def encode(iv: bytes, ciphertext: bytes, recipient_keys: Mapping[str, str]) -> str:
        """
        Serialize a packet deterministically.

        Args:
            iv: 12-byte iv
            ciphertext: Ciphertext with tag
            recipient_keys: Recipient id -> base64 wrapped key

        Returns:
            Compact JSON string
        """
        if len(iv) != IV_BYTES:
            raise PacketFormatError("iv must be 12 bytes")
        if not recipient_keys:
            raise PacketFormatError("Packet needs at least one recipient")
        packet = {
            "iv": b64encode(iv),
            "content": b64encode(ciphertext),
            "keys": {rid: recipient_keys[rid] for rid in sorted(recipient_keys)},
        }
        return json.dumps(packet, separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def decode(raw: Union[str, Mapping[str, Any]]) -> Union[Packet, RawFallback]:
        """
        Parse a stored packet.

        Accepts an already-structured mapping, a JSON string, or legacy
        plaintext. JSON that is not an object, or an object with none of the
        packet fields, is returned as RawFallback.

        Raises:
            PacketFormatError: If the input looks like a packet but is incomplete
                or carries invalid values
        """
        if isinstance(raw, Mapping):
            data = raw
            text = None
        elif isinstance(raw, str):
            text = raw
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                return RawFallback(raw)
            if not isinstance(data, dict):
                return RawFallback(raw)
        else:
            raise PacketFormatError(f"Unsupported packet type: {type(raw).__name__}")

        present = [name for name in PACKET_FIELDS if name in data]
        if not present:
            if text is None:
                raise PacketFormatError("Mapping is not a packet")
            return RawFallback(text)
        if len(present) != len(PACKET_FIELDS):
            missing = sorted(set(PACKET_FIELDS) - set(present))
            raise PacketFormatError(f"Packet missing fields: {', '.join(missing)}")

        iv, content, keys = data["iv"], data["content"], data["keys"]
        if not isinstance(iv, str) or not isinstance(content, str) or not iv or not content:
            raise PacketFormatError("iv and content must be non-empty strings")
        if not isinstance(keys, Mapping) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in keys.items()
        ):
            raise PacketFormatError("keys must map recipient ids to strings")

        try:
            iv_bytes = b64decode(iv)
            ciphertext = b64decode(content)
        except ValueError as e:
            raise PacketFormatError("Packet carries invalid base64") from e
        if len(iv_bytes) != IV_BYTES:
            raise PacketFormatError("iv must be 12 bytes")
        if not ciphertext:
            raise PacketFormatError("Packet content is empty")
        return Packet(iv=iv, content=content, keys=dict(keys))

    @staticmethod
    def select_recipient(packet: Packet, user_id: str) -> Union[Envelope, _KeyUnavailable]:
        """
        Pick the wrapped key addressed to ``user_id``.

        Falls back to a case-insensitive match for ids whose casing drifted
        between packet construction and lookup.
        """
        wrapped = packet.keys.get(user_id)
        if wrapped is None:
            lowered = user_id.lower()
            for recipient_id, candidate in packet.keys.items():
                if recipient_id.lower() == lowered:
                    logger.warning("Recipient key matched only case-insensitively")
                    wrapped = candidate
                    break
        if not wrapped:
            return KEY_UNAVAILABLE
        return Envelope(iv=packet.iv_bytes, ciphertext=packet.content_bytes, wrapped_key=wrapped)
