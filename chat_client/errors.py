"""
Errors raised by the conversation layer.

Cryptographic failures live in ``e2ee.primitives``; these cover send-time
preconditions, lifecycle violations and collaborator failures.
"""


class ChatError(Exception):
    """Base exception for conversation errors"""
    pass


class RecipientKeyUnavailableError(ChatError):
    """The recipient has no usable public key in the directory"""
    pass


class LocalIdentityUninitializedError(ChatError):
    """Our own key pair has not been loaded yet"""
    pass


class ContentPurgedError(ChatError):
    """The message content is no longer available"""
    pass


class MessageNotFoundError(ChatError):
    """No message with this id is loaded in the session"""
    pass


class SessionClosedError(ChatError):
    """The conversation session has been closed"""
    pass


class StoreError(ChatError):
    """A message store, directory or realtime call failed"""
    pass
