#!/usr/bin/env python3
"""
Tests for view-once, expiry and save rules on message records.
"""

import sys
from datetime import datetime, timedelta, timezone

import pytest

from chat_client.errors import ContentPurgedError
from chat_client.lifecycle import (
    LifecycleState,
    MessageLifecycle,
    is_expired,
    is_purgeable,
    time_remaining,
)
from chat_client.models import LifecyclePolicy, MediaType, MessageRecord


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

lifecycle = MessageLifecycle()


def make_record(**overrides) -> MessageRecord:
    fields = dict(id="m1", sender_id="alice", receiver_id="bob", encrypted_content="{}", created_at=NOW)
    fields.update(overrides)
    return MessageRecord(**fields)


def test_view_once_receiver_flow():
    """HIDDEN -> REVEALED -> PURGED after the second receiver open"""
    record = make_record(is_view_once=True)
    assert lifecycle.state(record, "bob", NOW) == LifecycleState.HIDDEN

    first = lifecycle.open(record, "bob", NOW)
    assert first.changes == {"view_count": 1, "is_viewed": False}
    assert lifecycle.state(first.record, "bob", NOW) == LifecycleState.REVEALED

    second = lifecycle.open(first.record, "bob", NOW)
    assert second.record.view_count == 2
    assert second.record.is_viewed
    assert second.record.viewed_at == NOW
    assert lifecycle.state(second.record, "bob", NOW) == LifecycleState.PURGED

    with pytest.raises(ContentPurgedError):
        lifecycle.open(second.record, "bob", NOW)


def test_sender_open_does_not_count():
    record = make_record(is_view_once=True)

    transition = lifecycle.open(record, "alice", NOW)

    assert not transition.changed
    assert transition.record.view_count == 0
    assert lifecycle.state(record, "alice", NOW) == LifecycleState.REVEALED


def test_close_archives_view_once_message():
    """Closing after one view saves the message instead of losing it"""
    opened = lifecycle.open(make_record(is_view_once=True), "bob", NOW).record

    closed = lifecycle.close(opened, "bob", NOW)

    assert closed.changes == {"is_saved": True, "is_viewed": True, "viewed_at": NOW}
    assert lifecycle.state(closed.record, "bob", NOW) == LifecycleState.SAVED
    assert not is_purgeable(closed.record, NOW)

    # Saved content can be reopened without counting
    reopened = lifecycle.open(closed.record, "bob", NOW)
    assert not reopened.changed


def test_close_is_a_no_op_for_sender_and_plain_messages():
    assert not lifecycle.close(make_record(is_view_once=True), "alice", NOW).changed
    assert not lifecycle.close(make_record(), "bob", NOW).changed


def test_save_is_idempotent():
    saved = lifecycle.save(make_record())
    assert saved.changes == {"is_saved": True}
    assert not lifecycle.save(saved.record).changed


def test_expiry_boundaries():
    record = make_record(expires_at=NOW + timedelta(hours=1))

    assert not is_expired(record, NOW + timedelta(seconds=3599))
    assert is_expired(record, NOW + timedelta(seconds=3600))
    assert is_expired(record, NOW + timedelta(seconds=3601))
    assert lifecycle.state(record, "bob", NOW + timedelta(seconds=3601)) == LifecycleState.PURGED

    with pytest.raises(ContentPurgedError):
        lifecycle.open(record, "alice", NOW + timedelta(seconds=3601))


def test_saved_message_never_expires():
    record = make_record(expires_at=NOW - timedelta(days=1), is_saved=True)

    assert not is_expired(record, NOW)
    assert not is_purgeable(record, NOW)
    assert lifecycle.purge_batch([record], NOW) == set()


def test_purge_batch_selects_expired_unsaved():
    records = [
        make_record(id="expired", expires_at=NOW - timedelta(seconds=1)),
        make_record(id="saved", expires_at=NOW - timedelta(seconds=1), is_saved=True),
        make_record(id="future", expires_at=NOW + timedelta(seconds=1)),
        make_record(id="forever"),
    ]

    assert lifecycle.purge_batch(records, NOW) == {"expired"}


@pytest.mark.parametrize("overrides, expected", [
    (dict(is_view_once=True, is_viewed=True), True),
    (dict(is_view_once=True, is_viewed=True, is_saved=True), False),
    (dict(is_view_once=True, is_viewed=False), False),
    (dict(expires_at=NOW - timedelta(seconds=1)), True),
    (dict(expires_at=NOW), False),
    (dict(expires_at=NOW - timedelta(seconds=1), is_saved=True), False),
    (dict(is_viewed=True), False),
])
def test_store_wide_purge_predicate(overrides, expected):
    assert is_purgeable(make_record(**overrides), NOW) is expected


def test_acknowledge_marks_plain_messages_read():
    transition = lifecycle.acknowledge(make_record(), "bob", NOW)

    assert transition.changes == {
        "is_delivered": True,
        "delivered_at": NOW,
        "is_viewed": True,
        "viewed_at": NOW,
    }
    assert not lifecycle.acknowledge(transition.record, "bob", NOW).changed


def test_acknowledge_leaves_view_once_unviewed():
    """A delivered view-once message must not become purgeable before it is opened"""
    transition = lifecycle.acknowledge(make_record(is_view_once=True), "bob", NOW)

    assert transition.changes == {"is_delivered": True, "delivered_at": NOW}
    assert not is_purgeable(transition.record, NOW)


def test_acknowledge_ignored_for_sender():
    assert not lifecycle.acknowledge(make_record(), "alice", NOW).changed


def test_reaction_toggle():
    record = make_record()

    once = lifecycle.toggle_reaction(record, "🔥", "bob")
    assert once.record.reactions == {"🔥": {"bob"}}

    twice = lifecycle.toggle_reaction(once.record, "🔥", "alice")
    assert twice.record.reactions == {"🔥": {"alice", "bob"}}

    removed = lifecycle.toggle_reaction(
        lifecycle.toggle_reaction(twice.record, "🔥", "bob").record, "🔥", "alice"
    )
    assert removed.record.reactions == {}
    # The source record is untouched
    assert record.reactions == {}


def test_time_remaining_labels():
    record = make_record(expires_at=NOW + timedelta(hours=2, minutes=5))

    assert time_remaining(record, NOW) == "2h 5m left"
    assert time_remaining(record, NOW + timedelta(hours=1, minutes=30)) == "35m left"
    assert time_remaining(record, NOW + timedelta(hours=3)) == "Expiring..."
    assert time_remaining(make_record(), NOW) is None


@pytest.mark.parametrize("mode, view_once, ttl, canonical", [
    ("none", False, None, "none"),
    ("view", True, None, "view"),
    ("View-Once", True, None, "view"),
    ("1h", False, timedelta(hours=1), "1h"),
    ("90m", False, timedelta(minutes=90), "90m"),
    ("2d", False, timedelta(days=2), "2d"),
])
def test_policy_parse(mode, view_once, ttl, canonical):
    policy = LifecyclePolicy.parse(mode)

    assert policy.view_once is view_once
    assert policy.ttl == ttl
    assert policy.mode == canonical


@pytest.mark.parametrize("mode", ["forever", "0h", "-1h", "1w"])
def test_policy_parse_rejects_unknown_modes(mode):
    with pytest.raises(ValueError):
        LifecyclePolicy.parse(mode)


def test_policy_expiry_timestamp():
    assert LifecyclePolicy.expire_after(timedelta(hours=1)).expires_at(NOW) == NOW + timedelta(seconds=3600)
    assert LifecyclePolicy.once().expires_at(NOW) is None


def test_record_dict_round_trip():
    record = make_record(
        media_type=MediaType.SNAPSHOT,
        expires_at=NOW + timedelta(hours=1),
        reactions={"👍": {"bob", "alice"}},
    )

    data = record.to_dict()

    assert data["created_at"] == "2024-05-01T12:00:00+00:00"
    assert data["media_type"] == "snapshot"
    assert data["reactions"] == {"👍": ["alice", "bob"]}
    assert MessageRecord.from_dict(dict(data, unknown="ignored")) == record


def test_record_from_store_row_normalizes_values():
    record = MessageRecord.from_dict({
        "id": "m1",
        "sender_id": "alice",
        "receiver_id": "bob",
        "created_at": "2024-05-01T12:00:00Z",
        "is_saved": None,
        "view_count": None,
        "reactions": {"👍": []},
    })

    assert record.created_at == NOW
    assert record.is_saved is False
    assert record.view_count == 0
    assert record.reactions == {}


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
