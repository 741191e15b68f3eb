"""
Client side of the ephemeral chat: message lifecycle, conversation
sessions and the collaborators that connect them to the chat server.
"""

from .errors import (
    ChatError,
    RecipientKeyUnavailableError,
    LocalIdentityUninitializedError,
    ContentPurgedError,
    MessageNotFoundError,
    SessionClosedError,
    StoreError,
)
from .models import MessageRecord, MediaType, LifecyclePolicy, ConversationFilter
from .lifecycle import MessageLifecycle, LifecycleState, Transition
from .interfaces import EventKind, RealtimeEvent
from .session import ConversationSession, SessionConfig, DecryptResult, DecryptStatus, LocalMessage

__all__ = [
    'ChatError',
    'RecipientKeyUnavailableError',
    'LocalIdentityUninitializedError',
    'ContentPurgedError',
    'MessageNotFoundError',
    'SessionClosedError',
    'StoreError',
    'MessageRecord',
    'MediaType',
    'LifecyclePolicy',
    'ConversationFilter',
    'MessageLifecycle',
    'LifecycleState',
    'Transition',
    'EventKind',
    'RealtimeEvent',
    'ConversationSession',
    'SessionConfig',
    'DecryptResult',
    'DecryptStatus',
    'LocalMessage',
]
