"""
Collaborators the conversation session consumes but does not implement.

``chat_client.remote`` provides HTTP/WebSocket implementations backed by
``chat_server``; tests use in-memory fakes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Set

from .models import ConversationFilter, MessageRecord


class EventKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class RealtimeEvent:
    """
    A change to one record of a conversation.

    Attributes:
        kind: insert, update or delete
        record_id: Id of the affected record
        record: Full record for inserts and updates, None for deletes
    """
    kind: EventKind
    record_id: str
    record: Optional[MessageRecord] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RealtimeEvent":
        kind = EventKind(data["type"])
        payload = data.get("record") or {}
        record = MessageRecord.from_dict(payload) if kind != EventKind.DELETE else None
        return cls(kind=kind, record_id=str(payload["id"]), record=record)


class MessageStore(Protocol):
    """Persists opaque message records"""

    async def insert(self, record: MessageRecord) -> MessageRecord:
        ...

    async def update_fields(self, record_id: str, changes: Dict[str, Any]) -> None:
        ...

    async def delete_by_ids(self, ids: Set[str]) -> int:
        ...

    async def delete_by_filter(self, conversation: ConversationFilter) -> int:
        ...

    async def query(self, conversation: ConversationFilter) -> List[MessageRecord]:
        """Records of a conversation ordered by created_at ascending"""
        ...


class Subscription(Protocol):
    """A lazy, non-restartable stream of realtime events"""

    def __aiter__(self) -> AsyncIterator[RealtimeEvent]:
        ...

    async def aclose(self) -> None:
        ...


class RealtimeBus(Protocol):
    """Delivers record changes for one conversation"""

    async def subscribe(self, conversation: ConversationFilter) -> Subscription:
        ...


class Directory(Protocol):
    """Public key discovery"""

    async def get_public_key(self, user_id: str) -> Optional[str]:
        ...

    async def publish_public_key(self, user_id: str, public_key: str) -> None:
        ...
