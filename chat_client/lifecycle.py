"""
Ephemeral message lifecycle.

Decides, for one record and one viewer, whether content may be shown and
which fields change as a result. Every transition is pure: it returns the
updated record together with the partial update the caller must persist
to the message store.

Receiver-side states of a view-once message:

    HIDDEN --open--> REVEALED --open--> PURGED
                        |
                      close/save
                        v
                      SAVED

A plain message stays ACTIVE until it expires or is deleted. SAVED is
terminal and exempt from both view-once and expiry purges.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Set

from .errors import ContentPurgedError
from .models import MessageRecord, utc_now

MAX_RECEIVER_VIEWS = 2


class LifecycleState(str, Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"
    REVEALED = "revealed"
    SAVED = "saved"
    PURGED = "purged"


@dataclass
class Transition:
    """
    Attributes:
        record: The record after the transition
        changes: Fields to persist; empty when nothing changed
    """
    record: MessageRecord
    changes: Dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def is_expired(record: MessageRecord, now: Optional[datetime] = None) -> bool:
    """Expired and not saved"""
    if record.is_saved or record.expires_at is None:
        return False
    return record.expires_at <= (now or utc_now())


def is_purgeable(record: MessageRecord, now: Optional[datetime] = None) -> bool:
    """
    Store-wide purge predicate used by the maintenance job:
    (view-once AND viewed AND NOT saved) OR (expires_at < now AND NOT saved).
    """
    if record.is_saved:
        return False
    if record.is_view_once and record.is_viewed:
        return True
    return record.expires_at is not None and record.expires_at < (now or utc_now())


def time_remaining(record: MessageRecord, now: Optional[datetime] = None) -> Optional[str]:
    """Short countdown label for an expiring message"""
    if record.expires_at is None:
        return None
    seconds = (record.expires_at - (now or utc_now())).total_seconds()
    if seconds <= 0:
        return "Expiring..."
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}m left"
    return f"{minutes // 60}h {minutes % 60}m left"


class MessageLifecycle:
    """
    View-once, expiry, delivery and save rules for message records.
    """

    def __init__(self, max_views: int = MAX_RECEIVER_VIEWS):
        """
        Args:
            max_views: Receiver opens allowed for an unsaved view-once message
        """
        self.max_views = max_views

    @staticmethod
    def _apply(record: MessageRecord, changes: Dict[str, Any]) -> Transition:
        if not changes:
            return Transition(record)
        return Transition(record.with_changes(changes), changes)

    def is_exhausted(self, record: MessageRecord) -> bool:
        """A view-once message the receiver has used up"""
        return record.is_view_once and not record.is_saved and record.view_count >= self.max_views

    def state(self, record: MessageRecord, viewer_id: str, now: Optional[datetime] = None) -> LifecycleState:
        """The lifecycle state of a record as observed by ``viewer_id``"""
        if record.is_saved:
            return LifecycleState.SAVED
        if is_expired(record, now):
            return LifecycleState.PURGED
        if not record.is_view_once:
            return LifecycleState.ACTIVE
        if record.is_receiver(viewer_id):
            if record.view_count >= self.max_views:
                return LifecycleState.PURGED
            if record.view_count == 0:
                return LifecycleState.HIDDEN
        return LifecycleState.REVEALED

    def open(self, record: MessageRecord, viewer_id: str, now: Optional[datetime] = None) -> Transition:
        """
        Reveal a message.

        Receiver opens of an unsaved view-once message count towards the
        view limit; the last allowed one marks the message viewed. Senders
        can re-read their own messages until they are deleted.

        Raises:
            ContentPurgedError: If the content is exhausted or expired
        """
        now = now or utc_now()
        if is_expired(record, now):
            raise ContentPurgedError("Content no longer available")
        if not record.is_receiver(viewer_id):
            return Transition(record)
        if self.is_exhausted(record):
            raise ContentPurgedError("Content no longer available")
        if not record.is_view_once or record.is_saved:
            return Transition(record)

        views = record.view_count + 1
        changes: Dict[str, Any] = {"view_count": views, "is_viewed": views >= self.max_views}
        if views >= self.max_views:
            changes["viewed_at"] = now
        return self._apply(record, changes)

    def close(self, record: MessageRecord, viewer_id: str, now: Optional[datetime] = None) -> Transition:
        """
        Dismiss a revealed view-once message.

        Closing as the receiver archives the message, so a single view never
        loses it outright.
        """
        if not record.is_receiver(viewer_id) or not record.is_view_once or record.is_saved:
            return Transition(record)
        changes: Dict[str, Any] = {"is_saved": True, "is_viewed": True}
        if record.viewed_at is None:
            changes["viewed_at"] = now or utc_now()
        return self._apply(record, changes)

    def save(self, record: MessageRecord) -> Transition:
        """Move a message to the vault"""
        if record.is_saved:
            return Transition(record)
        return self._apply(record, {"is_saved": True})

    def acknowledge(self, record: MessageRecord, viewer_id: str, now: Optional[datetime] = None) -> Transition:
        """
        Delivery acknowledgement from the receiver's device.

        Plain messages also get a read receipt. View-once messages are only
        marked viewed by ``open``/``close``: the viewed flag makes them
        eligible for the store-wide purge.
        """
        if not record.is_receiver(viewer_id):
            return Transition(record)
        now = now or utc_now()
        changes: Dict[str, Any] = {}
        if not record.is_delivered:
            changes.update(is_delivered=True, delivered_at=now)
        if not record.is_view_once and not record.is_viewed:
            changes.update(is_viewed=True, viewed_at=now)
        return self._apply(record, changes)

    def expire(self, record: MessageRecord, now: Optional[datetime] = None) -> bool:
        """True when the record has reached its expiry and must be purged"""
        return is_expired(record, now)

    def purge_batch(self, records: Iterable[MessageRecord], now: Optional[datetime] = None) -> Set[str]:
        """Ids of every currently expired, unsaved record"""
        now = now or utc_now()
        return {record.id for record in records if self.expire(record, now)}

    def toggle_reaction(self, record: MessageRecord, emoji: str, user_id: str) -> Transition:
        """Flip ``user_id``'s membership in the reaction set for ``emoji``"""
        reactions = {e: set(users) for e, users in record.reactions.items()}
        users = reactions.setdefault(emoji, set())
        if user_id in users:
            users.discard(user_id)
            if not users:
                del reactions[emoji]
        else:
            users.add(user_id)
        return self._apply(record, {"reactions": reactions})
