"""
Message records and lifecycle policies.
"""

import re
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Set


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return parse_timestamp(value).isoformat()


class MediaType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    LOCATION = "location"
    SNAPSHOT = "snapshot"


_TIMESTAMP_FIELDS = ("created_at", "expires_at", "viewed_at", "delivered_at")
_BOOL_FIELDS = ("is_viewed", "is_delivered", "is_view_once", "is_saved")


@dataclass
class MessageRecord:
    """
    A stored message as seen by either participant.

    Attributes:
        encrypted_content: Packet string, None for legacy plaintext records
        content: Legacy plaintext, only set on records predating encryption
        reactions: Emoji -> ids of the users who reacted with it
    """
    id: str
    sender_id: str
    receiver_id: str
    encrypted_content: Optional[str] = None
    content: Optional[str] = None
    media_type: MediaType = MediaType.TEXT
    media_url: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    is_viewed: bool = False
    is_delivered: bool = False
    is_view_once: bool = False
    view_count: int = 0
    is_saved: bool = False
    expires_at: Optional[datetime] = None
    reactions: Dict[str, Set[str]] = field(default_factory=dict)
    viewed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    def is_receiver(self, user_id: str) -> bool:
        return self.receiver_id == user_id

    def with_changes(self, changes: Mapping[str, Any]) -> "MessageRecord":
        """Return a copy with a partial update applied"""
        return replace(self, **coerce_fields(changes))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation"""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        return serialize_fields(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MessageRecord":
        """Build a record from a store row or JSON payload, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        return cls(**coerce_fields({k: v for k, v in data.items() if k in known}))


def serialize_fields(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert record field values to their JSON form"""
    out = {}
    for name, value in changes.items():
        if name in _TIMESTAMP_FIELDS:
            value = format_timestamp(value)
        elif name == "media_type" and isinstance(value, MediaType):
            value = value.value
        elif name == "reactions":
            value = {emoji: sorted(users) for emoji, users in (value or {}).items()}
        out[name] = value
    return out


def coerce_fields(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert JSON field values to their record types"""
    out = {}
    for name, value in changes.items():
        if name in _TIMESTAMP_FIELDS:
            value = parse_timestamp(value)
        elif name in _BOOL_FIELDS:
            value = bool(value)
        elif name == "view_count":
            value = int(value or 0)
        elif name == "media_type":
            value = MediaType(value or MediaType.TEXT)
        elif name == "reactions":
            value = {emoji: set(users) for emoji, users in (value or {}).items() if users}
        out[name] = value
    return out


_DURATION = re.compile(r"^(\d+)\s*([mhd])$")
_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


@dataclass(frozen=True)
class LifecyclePolicy:
    """
    How long a sent message lives.

    Attributes:
        view_once: Content becomes unavailable after the receiver views it
        ttl: Fixed lifetime after creation, None for no expiry
    """
    view_once: bool = False
    ttl: Optional[timedelta] = None

    @classmethod
    def none(cls) -> "LifecyclePolicy":
        return cls()

    @classmethod
    def once(cls) -> "LifecyclePolicy":
        return cls(view_once=True)

    @classmethod
    def expire_after(cls, ttl: timedelta) -> "LifecyclePolicy":
        if ttl <= timedelta(0):
            raise ValueError("Expiry duration must be positive")
        return cls(ttl=ttl)

    @classmethod
    def parse(cls, mode: str) -> "LifecyclePolicy":
        """
        Parse an auto-delete mode: ``none``, ``view``/``view-once``, or a
        duration such as ``1h``, ``3h``, ``30m``, ``2d``.
        """
        mode = (mode or "none").strip().lower()
        if mode == "none":
            return cls.none()
        if mode in ("view", "view-once", "view_once"):
            return cls.once()
        match = _DURATION.match(mode)
        if not match:
            raise ValueError(f"Unknown auto-delete mode: {mode}")
        amount, unit = match.groups()
        return cls.expire_after(timedelta(**{_UNITS[unit]: int(amount)}))

    @property
    def mode(self) -> str:
        """The short form accepted by ``parse``"""
        if self.view_once:
            return "view"
        if self.ttl is None:
            return "none"
        minutes = int(self.ttl.total_seconds() // 60)
        if minutes % (60 * 24) == 0:
            return f"{minutes // (60 * 24)}d"
        if minutes % 60 == 0:
            return f"{minutes // 60}h"
        return f"{minutes}m"

    def expires_at(self, created_at: datetime) -> Optional[datetime]:
        if self.ttl is None:
            return None
        return created_at + self.ttl


@dataclass(frozen=True)
class ConversationFilter:
    """All records exchanged between two users, in either direction"""
    user_a: str
    user_b: str

    def matches(self, record: MessageRecord) -> bool:
        return {record.sender_id, record.receiver_id} == {self.user_a, self.user_b}

    def peer_of(self, user_id: str) -> str:
        return self.user_b if user_id == self.user_a else self.user_a
