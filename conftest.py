"""
Shared fixtures: RSA identities and in-memory collaborators.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import pytest

from e2ee import IdentityKeyManager
from chat_client.errors import StoreError
from chat_client.interfaces import EventKind, RealtimeEvent
from chat_client.models import ConversationFilter, MessageRecord
from chat_client.session import ConversationSession, SessionConfig


@pytest.fixture(scope="session")
def alice_keys():
    return IdentityKeyManager().generate()


@pytest.fixture(scope="session")
def bob_keys():
    return IdentityKeyManager().generate()


@pytest.fixture(scope="session")
def rotated_keys():
    """A second key pair for Bob, as if he regenerated on a new device"""
    return IdentityKeyManager().generate()


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


class QueueSubscription:
    def __init__(self, conversation: ConversationFilter):
        self.conversation = conversation
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> RealtimeEvent:
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def aclose(self):
        self.closed = True
        self.queue.put_nowait(None)


class InMemoryBus:
    def __init__(self):
        self.subscriptions: List[QueueSubscription] = []

    async def subscribe(self, conversation: ConversationFilter) -> QueueSubscription:
        subscription = QueueSubscription(conversation)
        self.subscriptions.append(subscription)
        return subscription

    def publish(self, kind: EventKind, record: MessageRecord):
        event = RealtimeEvent(kind, record.id, None if kind == EventKind.DELETE else record)
        for subscription in self.subscriptions:
            if not subscription.closed and subscription.conversation.matches(record):
                subscription.queue.put_nowait(event)


class InMemoryStore:
    def __init__(self, bus: InMemoryBus):
        self.bus = bus
        self.records: Dict[str, MessageRecord] = {}
        self.fail_writes = False
        self.updates: List[tuple] = []
        self.deleted_batches: List[Set[str]] = []

    def _check(self):
        if self.fail_writes:
            raise StoreError("store unavailable")

    async def insert(self, record: MessageRecord) -> MessageRecord:
        self._check()
        if record.id not in self.records:
            self.records[record.id] = record
            self.bus.publish(EventKind.INSERT, record)
        return self.records[record.id]

    async def update_fields(self, record_id: str, changes) -> None:
        self._check()
        if record_id not in self.records:
            raise StoreError(f"unknown record {record_id}")
        self.updates.append((record_id, dict(changes)))
        self.records[record_id] = self.records[record_id].with_changes(changes)
        self.bus.publish(EventKind.UPDATE, self.records[record_id])

    async def delete_by_ids(self, ids: Set[str]) -> int:
        self._check()
        self.deleted_batches.append(set(ids))
        removed = [self.records.pop(i) for i in ids if i in self.records]
        for record in removed:
            self.bus.publish(EventKind.DELETE, record)
        return len(removed)

    async def delete_by_filter(self, conversation: ConversationFilter) -> int:
        ids = {r.id for r in self.records.values() if conversation.matches(r)}
        return await self.delete_by_ids(ids)

    async def query(self, conversation: ConversationFilter) -> List[MessageRecord]:
        matching = [r for r in self.records.values() if conversation.matches(r)]
        return sorted(matching, key=lambda r: r.created_at)


class InMemoryDirectory:
    def __init__(self):
        self.keys: Dict[str, str] = {}
        self.lookups: List[str] = []

    async def get_public_key(self, user_id: str) -> Optional[str]:
        self.lookups.append(user_id)
        return self.keys.get(user_id)

    async def publish_public_key(self, user_id: str, public_key: str) -> None:
        self.keys[user_id] = public_key


class Network:
    def __init__(self):
        self.bus = InMemoryBus()
        self.store = InMemoryStore(self.bus)
        self.directory = InMemoryDirectory()


@pytest.fixture
def network(alice_keys, bob_keys):
    net = Network()
    net.directory.keys["alice"] = IdentityKeyManager.export_public(alice_keys.public_key)
    net.directory.keys["bob"] = IdentityKeyManager.export_public(bob_keys.public_key)
    return net


@pytest.fixture
async def make_session(network, clock):
    """Build sessions on the shared network; all are closed at teardown"""
    created = []

    def factory(user_id, peer_id, key_pair=None, purge_interval=3600.0, identity=None):
        if identity is None:
            identity = IdentityKeyManager()
            if key_pair is not None:
                identity.install(key_pair)
        session = ConversationSession(
            user_id,
            peer_id,
            identity,
            network.store,
            network.bus,
            network.directory,
            config=SessionConfig(purge_interval=purge_interval, decrypt_timeout=10.0, clock=clock),
        )
        created.append(session)
        return session

    yield factory
    for session in created:
        await session.close()


async def wait_until(predicate, timeout: float = 5.0):
    """Poll until predicate() is true, letting background tasks run"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
