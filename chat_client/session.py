"""
Conversation session.

Ties identity keys, the hybrid cipher, the packet codec and the message
lifecycle together for one two-party conversation: builds outgoing
packets, decrypts incoming ones, reconciles realtime events and issues the
follow-up store commands (acknowledge, mark viewed, purge).

All mutations of the local message collection go through one lock, so a
realtime insert can never interleave with an expiry sweep.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from e2ee import (
    DecryptionError,
    HybridCipher,
    IdentityKeyManager,
    KeyFormatError,
    KeyPair,
    KeyUnwrapError,
    PacketCodec,
    PacketFormatError,
    RawFallback,
    KEY_UNAVAILABLE,
)

from .errors import (
    ContentPurgedError,
    LocalIdentityUninitializedError,
    MessageNotFoundError,
    RecipientKeyUnavailableError,
    SessionClosedError,
    StoreError,
)
from .interfaces import Directory, EventKind, MessageStore, RealtimeBus, RealtimeEvent, Subscription
from .lifecycle import MessageLifecycle, Transition
from .models import (
    ConversationFilter,
    LifecyclePolicy,
    MediaType,
    MessageRecord,
    new_message_id,
    utc_now,
)

logger = logging.getLogger(__name__)

MISMATCH_SENTINEL = "__SIGNAL_MISMATCH__"


class DecryptStatus(str, Enum):
    OK = "ok"
    LEGACY = "legacy"
    KEY_UNAVAILABLE = "key-unavailable"
    MISMATCH = "mismatch"
    CORRUPTED = "corrupted"


PLACEHOLDERS = {
    DecryptStatus.KEY_UNAVAILABLE: "🔒 Encrypted signal (key unavailable)",
    DecryptStatus.MISMATCH: MISMATCH_SENTINEL,
    DecryptStatus.CORRUPTED: "🚫 Packet corrupted during transmission",
}


@dataclass(frozen=True)
class DecryptResult:
    """
    Outcome of reading one stored message.

    MISMATCH means the packet was wrapped for a key pair we no longer hold
    and calls for identity repair; CORRUPTED packets are just shown as
    unreadable.
    """
    status: DecryptStatus
    plaintext: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (DecryptStatus.OK, DecryptStatus.LEGACY)

    @property
    def needs_identity_repair(self) -> bool:
        return self.status == DecryptStatus.MISMATCH

    @property
    def text(self) -> str:
        if self.plaintext is not None:
            return self.plaintext
        return PLACEHOLDERS.get(self.status, "")


@dataclass
class LocalMessage:
    """
    A loaded record plus its decrypted content. ``content`` is dropped as
    soon as the receiver has used up a view-once message, and when an open
    finds the message purged.
    """
    record: MessageRecord
    content: Optional[DecryptResult]


@dataclass
class SessionConfig:
    """
    Attributes:
        purge_interval: Seconds between expiry sweeps over loaded messages
        decrypt_timeout: Upper bound for decrypting one incoming message
        clock: Source of the current UTC time
    """
    purge_interval: float = 30.0
    decrypt_timeout: float = 10.0
    clock: Callable[[], datetime] = utc_now


ChangeListener = Callable[[EventKind, str, Optional[LocalMessage]], None]


def _reconcile(current: MessageRecord, incoming: MessageRecord) -> MessageRecord:
    """
    Merge a realtime update into the loaded record. View, delivery and save
    flags only move forward, so an update that left the store before one
    of our own writes cannot undo it.
    """
    return replace(
        incoming,
        view_count=max(current.view_count, incoming.view_count),
        is_viewed=current.is_viewed or incoming.is_viewed,
        is_delivered=current.is_delivered or incoming.is_delivered,
        is_saved=current.is_saved or incoming.is_saved,
        viewed_at=incoming.viewed_at or current.viewed_at,
        delivered_at=incoming.delivered_at or current.delivered_at,
    )


class ConversationSession:
    """
    One participant's view of a two-party conversation.
    """

    def __init__(
        self,
        user_id: str,
        peer_id: str,
        identity: IdentityKeyManager,
        store: MessageStore,
        bus: RealtimeBus,
        directory: Directory,
        config: Optional[SessionConfig] = None,
        cipher: Optional[HybridCipher] = None,
        lifecycle: Optional[MessageLifecycle] = None,
        on_change: Optional[ChangeListener] = None,
    ):
        """
        Args:
            user_id: Our user id
            peer_id: The other participant
            identity: Holder of our key pair
            store: Message persistence
            bus: Realtime change feed
            directory: Public key directory
            config: Timer and clock settings
            on_change: Called after every change to the local collection
        """
        self.user_id = user_id
        self.peer_id = peer_id
        self.conversation = ConversationFilter(user_id, peer_id)
        self.identity = identity
        self.store = store
        self.bus = bus
        self.directory = directory
        self.config = config or SessionConfig()
        self.cipher = cipher or HybridCipher()
        self.codec = PacketCodec()
        self.lifecycle = lifecycle or MessageLifecycle()
        self.on_change = on_change

        self._messages: Dict[str, LocalMessage] = {}
        self._deleted: Set[str] = set()
        self._lock = asyncio.Lock()
        self._subscription: Optional[Subscription] = None
        self._tasks: List[asyncio.Task] = []
        self._closed = False

    async def __aenter__(self) -> "ConversationSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def messages(self) -> List[LocalMessage]:
        """Loaded messages ordered by creation time"""
        return sorted(self._messages.values(), key=lambda m: m.record.created_at)

    def get(self, message_id: str) -> LocalMessage:
        local = self._messages.get(message_id)
        if local is None:
            raise MessageNotFoundError(message_id)
        return local

    def _ensure_open(self):
        if self._closed:
            raise SessionClosedError("Conversation session is closed")

    def _notify(self, kind: EventKind, message_id: str):
        if self.on_change is not None:
            self.on_change(kind, message_id, self._messages.get(message_id))

    # Lifecycle of the session itself

    async def start(self):
        """
        Load history, subscribe to realtime changes and start the expiry timer.

        The subscription is opened before the history query so no change
        between the two is lost; duplicates are reconciled by id.
        """
        self._ensure_open()
        self._subscription = await self.bus.subscribe(self.conversation)
        for record in await self.store.query(self.conversation):
            await self._ingest(record)
        self._tasks = [
            asyncio.create_task(self._consume(self._subscription)),
            asyncio.create_task(self._purge_loop()),
        ]
        logger.info("Conversation %s <-> %s started with %d messages",
                    self.user_id, self.peer_id, len(self._messages))

    async def close(self):
        """Stop the expiry timer and unsubscribe; in-flight results are discarded"""
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._subscription is not None:
            await self._subscription.aclose()
            self._subscription = None

    async def _consume(self, subscription: Subscription):
        async for event in subscription:
            if self._closed:
                break
            try:
                await self.apply_event(event)
            except Exception:
                logger.exception("Failed to apply %s event for %s", event.kind.value, event.record_id)

    async def _purge_loop(self):
        while not self._closed:
            await asyncio.sleep(self.config.purge_interval)
            try:
                await self.purge_expired()
            except StoreError as e:
                logger.warning("Expiry sweep failed: %s", e)
            except Exception:
                logger.exception("Expiry sweep failed")

    # Sending

    async def send(
        self,
        text: str = "",
        policy: Optional[LifecyclePolicy] = None,
        media_type: MediaType = MediaType.TEXT,
        media_url: Optional[str] = None,
        recipient_online: bool = False,
    ) -> MessageRecord:
        """
        Encrypt and store a message for the peer.

        Args:
            text: Message text; media messages may leave it empty
            policy: Auto-delete behaviour for this message
            media_type: Kind of content
            media_url: Location of uploaded media
            recipient_online: Presence hint recorded as ``is_delivered``

        Raises:
            LocalIdentityUninitializedError: If our key pair is not loaded
            RecipientKeyUnavailableError: If the peer has no usable public key
            StoreError: If the record could not be stored
        """
        self._ensure_open()
        policy = policy or LifecyclePolicy.none()
        media_type = MediaType(media_type)
        if not text.strip() and not media_url:
            raise ValueError("Nothing to send")

        key_pair = self.identity.key_pair
        if key_pair is None:
            raise LocalIdentityUninitializedError("Your encryption keys are not initialized")

        # Fetched on every send: the peer may have rotated keys
        published = await self.directory.get_public_key(self.peer_id)
        if not published:
            raise RecipientKeyUnavailableError(f"No public key published for {self.peer_id}")
        try:
            peer_key = IdentityKeyManager.import_public(published)
        except KeyFormatError as e:
            raise RecipientKeyUnavailableError(f"Public key of {self.peer_id} is unusable") from e

        content = text if text.strip() else " "
        encrypted, wrapped = await asyncio.to_thread(
            self.cipher.seal,
            content,
            {self.user_id: key_pair.public_key, self.peer_id: peer_key},
        )
        packet = self.codec.encode(encrypted.iv, encrypted.ciphertext, wrapped)
        if self._closed:
            raise SessionClosedError("Session closed before the message was stored")

        created_at = self.config.clock()
        record = MessageRecord(
            id=new_message_id(),
            sender_id=self.user_id,
            receiver_id=self.peer_id,
            encrypted_content=packet,
            media_type=media_type,
            media_url=media_url,
            created_at=created_at,
            is_delivered=recipient_online,
            is_view_once=policy.view_once or media_type == MediaType.SNAPSHOT,
            view_count=0,
            expires_at=policy.expires_at(created_at),
        )

        try:
            stored = await self.store.insert(record)
        except StoreError as e:
            logger.error("Failed to send message: %s", e)
            raise

        async with self._lock:
            if stored.id not in self._deleted and stored.id not in self._messages:
                self._messages[stored.id] = LocalMessage(stored, DecryptResult(DecryptStatus.OK, content))
        self._notify(EventKind.INSERT, stored.id)
        return stored

    # Receiving

    async def receive(self, raw) -> DecryptResult:
        """
        Decode and decrypt a stored packet with our private key.

        Never raises for malformed or undecryptable input; the status tells
        the caller which remedy applies.
        """
        try:
            decoded = self.codec.decode(raw)
        except PacketFormatError as e:
            logger.warning("Dropping corrupted packet: %s", e)
            return DecryptResult(DecryptStatus.CORRUPTED)
        if isinstance(decoded, RawFallback):
            return DecryptResult(DecryptStatus.LEGACY, decoded.text)

        key_pair = self.identity.key_pair
        envelope = self.codec.select_recipient(decoded, self.user_id)
        if key_pair is None or envelope is KEY_UNAVAILABLE:
            return DecryptResult(DecryptStatus.KEY_UNAVAILABLE)

        try:
            plaintext = await asyncio.to_thread(
                self.cipher.open,
                envelope.ciphertext,
                envelope.iv,
                envelope.wrapped_key,
                key_pair.private_key,
            )
        except (KeyUnwrapError, DecryptionError) as e:
            logger.warning("Signal mismatch, identity repair may be needed: %s", e)
            return DecryptResult(DecryptStatus.MISMATCH)
        return DecryptResult(DecryptStatus.OK, plaintext)

    async def _decrypt_record(self, record: MessageRecord) -> DecryptResult:
        if not record.encrypted_content:
            return DecryptResult(DecryptStatus.LEGACY, record.content or "")
        try:
            return await asyncio.wait_for(
                self.receive(record.encrypted_content), self.config.decrypt_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Timed out decrypting message %s", record.id)
            return DecryptResult(DecryptStatus.KEY_UNAVAILABLE)

    def _exhausted_for_us(self, record: MessageRecord) -> bool:
        return record.is_receiver(self.user_id) and self.lifecycle.is_exhausted(record)

    async def _ingest(self, record: MessageRecord):
        if not self.conversation.matches(record):
            return
        if record.id in self._deleted or record.id in self._messages:
            return
        if self._exhausted_for_us(record):
            content = None
        else:
            content = await self._decrypt_record(record)
        if self._closed:
            return
        async with self._lock:
            if record.id in self._deleted or record.id in self._messages:
                return
            self._messages[record.id] = LocalMessage(record, content)
        self._notify(EventKind.INSERT, record.id)
        await self._acknowledge(record.id)

    async def _acknowledge(self, message_id: str):
        async with self._lock:
            local = self._messages.get(message_id)
            if local is None:
                return
            transition = self.lifecycle.acknowledge(local.record, self.user_id, self.config.clock())
            try:
                changed = await self._commit(message_id, transition)
            except StoreError as e:
                logger.warning("Failed to acknowledge message %s: %s", message_id, e)
                return
        if changed:
            self._notify(EventKind.UPDATE, message_id)

    async def apply_event(self, event: RealtimeEvent):
        """
        Reconcile one realtime event into the local collection.

        Inserts are idempotent by id, updates keep already decrypted
        content, deletes leave a tombstone so late inserts stay deleted.
        """
        if event.kind == EventKind.DELETE:
            async with self._lock:
                self._drop(event.record_id)
            self._notify(EventKind.DELETE, event.record_id)
            return

        record = event.record
        if record is None or not self.conversation.matches(record):
            return
        if event.kind == EventKind.INSERT:
            await self._ingest(record)
            return

        async with self._lock:
            local = self._messages.get(record.id)
            if local is not None:
                local.record = _reconcile(local.record, record)
                self._forget_if_exhausted(local)
        if local is None:
            # Update delivered ahead of its insert
            await self._ingest(record)
        else:
            self._notify(EventKind.UPDATE, record.id)

    def _drop(self, message_id: str):
        self._messages.pop(message_id, None)
        self._deleted.add(message_id)

    def _forget_if_exhausted(self, local: LocalMessage):
        if self._exhausted_for_us(local.record):
            local.content = None

    async def _commit(self, message_id: str, transition: Transition) -> bool:
        """Persist a transition and apply it locally. Caller holds the lock."""
        if not transition.changed:
            return False
        await self.store.update_fields(message_id, transition.changes)
        local = self._messages.get(message_id)
        if local is not None:
            local.record = local.record.with_changes(transition.changes)
            self._forget_if_exhausted(local)
        return True

    async def _update(self, message_id: str, action: Callable[[MessageRecord], Transition]):
        self._ensure_open()
        async with self._lock:
            transition = action(self.get(message_id).record)
            changed = await self._commit(message_id, transition)
        if changed:
            self._notify(EventKind.UPDATE, message_id)

    # Lifecycle actions

    async def open_message(self, message_id: str) -> DecryptResult:
        """
        Reveal a message, counting the view if it is view-once.

        The view is read, counted and stored under the session lock, so
        concurrent opens cannot reveal a message more often than allowed.
        The reveal that uses up a view-once message is the last one that
        returns content.

        Raises:
            ContentPurgedError: If the content is no longer available
        """
        self._ensure_open()
        async with self._lock:
            local = self.get(message_id)
            try:
                transition = self.lifecycle.open(local.record, self.user_id, self.config.clock())
            except ContentPurgedError:
                local.content = None
                raise
            content = local.content
            if content is None:
                raise ContentPurgedError("Content no longer available")
            changed = await self._commit(message_id, transition)
        if changed:
            self._notify(EventKind.UPDATE, message_id)
        return content

    async def close_message(self, message_id: str):
        """Dismiss a revealed message; receivers archive view-once content"""
        await self._update(message_id, lambda record: self.lifecycle.close(record, self.user_id, self.config.clock()))

    async def save_message(self, message_id: str):
        """Save a message to the vault"""
        await self._update(message_id, self.lifecycle.save)
        logger.info("Message %s archived in vault", message_id)

    async def toggle_reaction(self, message_id: str, emoji: str):
        """Add or remove our reaction; the whole reaction map is written back"""
        await self._update(message_id, lambda record: self.lifecycle.toggle_reaction(record, emoji, self.user_id))

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete every loaded message that has expired and is not saved.

        Returns:
            Number of purged messages
        """
        now = now or self.config.clock()
        async with self._lock:
            ids = self.lifecycle.purge_batch((m.record for m in self._messages.values()), now)
            if not ids:
                return 0
            await self.store.delete_by_ids(ids)
            for message_id in ids:
                self._drop(message_id)
        for message_id in ids:
            self._notify(EventKind.DELETE, message_id)
        logger.info("Purged %d expired messages", len(ids))
        return len(ids)

    async def clear(self) -> int:
        """Delete the whole conversation for both participants"""
        self._ensure_open()
        deleted = await self.store.delete_by_filter(self.conversation)
        async with self._lock:
            ids = list(self._messages)
            for message_id in ids:
                self._drop(message_id)
        for message_id in ids:
            self._notify(EventKind.DELETE, message_id)
        return deleted

    # Identity

    async def repair_identity(self) -> str:
        """
        Republish our local public key so future messages are wrapped for
        the key pair this device actually holds.
        """
        public_key = self.identity.public_key_b64
        if public_key is None:
            raise LocalIdentityUninitializedError("Local identity missing")
        await self.directory.publish_public_key(self.user_id, public_key)
        logger.info("Republished public key for %s", self.user_id)
        return public_key

    async def rotate_identity(self, acknowledge_data_loss: bool = False) -> KeyPair:
        """
        Replace our key pair. The new public key is published before it is
        installed; messages received under the old key stay unreadable.
        """
        key_pair = await asyncio.to_thread(self.identity.regenerate, acknowledge_data_loss)
        await self.directory.publish_public_key(
            self.user_id, IdentityKeyManager.export_public(key_pair.public_key)
        )
        self.identity.install(key_pair)
        return key_pair
