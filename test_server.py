#!/usr/bin/env python3
"""
Tests for the chat server: message store, purge job and HTTP/WebSocket API.
"""

import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from chat_server import main
from chat_server.database import Database


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def message(message_id: str, **overrides):
    data = dict(
        id=message_id,
        sender_id="alice",
        receiver_id="bob",
        encrypted_content='{"iv":"","content":"","keys":{}}',
        created_at=NOW,
    )
    data.update(overrides)
    return data


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
    await db.create_tables()
    yield db
    await db.close()


async def test_purge_predicates(database):
    """(view-once AND viewed AND NOT saved) OR (expires_at < now AND NOT saved)"""
    for data in (
        message("consumed", is_view_once=True, is_viewed=True),
        message("archived", is_view_once=True, is_viewed=True, is_saved=True),
        message("unopened", is_view_once=True, is_viewed=False),
        message("expired", expires_at=NOW - timedelta(seconds=1)),
        message("boundary", expires_at=NOW),
        message("saved-expired", expires_at=NOW - timedelta(days=1), is_saved=True),
        message("plain-read", is_viewed=True),
    ):
        await database.insert_message(data)

    purged = await database.purge_expired(NOW)

    assert {row["id"] for row in purged} == {"consumed", "expired"}
    assert purged[0].keys() == {"id", "sender_id", "receiver_id"}
    remaining = {m["id"] for m in await database.query_conversation("alice", "bob")}
    assert remaining == {"archived", "unopened", "boundary", "saved-expired", "plain-read"}

    # Running again finds nothing
    assert await database.purge_expired(NOW) == []


async def test_purge_respects_one_hour_expiry(database):
    await database.insert_message(message("m1", expires_at=NOW + timedelta(hours=1)))

    assert await database.purge_expired(NOW + timedelta(seconds=3599)) == []
    assert [row["id"] for row in await database.purge_expired(NOW + timedelta(seconds=3601))] == ["m1"]


async def test_insert_is_idempotent(database):
    first = await database.insert_message(message("m1", encrypted_content="first"))
    second = await database.insert_message(message("m1", encrypted_content="second"))

    assert first == second
    assert second["encrypted_content"] == "first"
    assert second["created_at"] == "2024-05-01T12:00:00+00:00"


async def test_update_is_limited_to_lifecycle_fields(database):
    await database.insert_message(message("m1", is_view_once=True))

    with pytest.raises(ValueError):
        await database.update_message("m1", {"encrypted_content": "tampered"})

    updated = await database.update_message("m1", {"view_count": 1, "reactions": {"👍": ["bob"]}})
    assert updated["view_count"] == 1
    assert updated["reactions"] == {"👍": ["bob"]}
    assert await database.update_message("missing", {"is_saved": True}) is None


async def test_conversation_query_order_and_scope(database):
    await database.insert_message(message("later", created_at=NOW + timedelta(minutes=1)))
    await database.insert_message(message("reply", sender_id="bob", receiver_id="alice", created_at=NOW))
    await database.insert_message(message("elsewhere", receiver_id="carol"))

    ids = [m["id"] for m in await database.query_conversation("bob", "alice")]

    assert ids == ["reply", "later"]


async def test_delete_limited_to_participants(database):
    await database.insert_message(message("m1"))

    assert await database.delete_messages(["m1"], participant="carol") == []
    assert await database.delete_messages(["m1"], participant="bob") == [
        {"id": "m1", "sender_id": "alice", "receiver_id": "bob"}
    ]
    assert await database.get_message("m1") is None


async def test_public_key_directory(database):
    await database.create_user("alice", "password123", public_key="old")

    assert await database.set_public_key("alice", "new")
    assert await database.get_public_key("alice") == "new"
    assert not await database.set_public_key("nobody", "key")
    assert await database.get_public_key("nobody") is None
    assert await database.authenticate_user("alice", "wrong") is None
    assert (await database.authenticate_user("alice", "password123")).username == "alice"


# HTTP API

@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "db", Database(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"))
    with TestClient(main.app) as test_client:
        yield test_client


def register(client: TestClient, username: str, public_key: str = "cHVibGlj") -> str:
    response = client.post("/api/register", json={
        "username": username,
        "password": "password123",
        "public_key": public_key,
    })
    assert response.status_code == 200
    return response.json()["access_token"]


def auth(token: str):
    return {"Authorization": f"Bearer {token}"}


def api_message(message_id: str, **overrides):
    data = message(message_id, **overrides)
    data["created_at"] = NOW.isoformat()
    return data


def test_register_and_login(client):
    register(client, "alice")

    assert client.post("/api/register", json={"username": "alice", "password": "x"}).status_code == 400
    assert client.post("/api/login", json={"username": "alice", "password": "nope"}).status_code == 401

    response = client.post("/api/login", json={"username": "alice", "password": "password123"})
    assert response.status_code == 200
    assert response.json()["username"] == "alice"


def test_key_directory(client):
    alice = register(client, "alice", public_key="a2V5MQ==")
    bob = register(client, "bob")

    assert client.get("/api/keys/alice").json()["public_key"] == "a2V5MQ=="
    assert client.get("/api/keys/nobody").status_code == 404

    assert client.put("/api/keys/alice", json={"public_key": "x"}, headers=auth(bob)).status_code == 403
    assert client.put("/api/keys/alice", json={"public_key": "a2V5Mg=="}, headers=auth(alice)).status_code == 200
    assert client.get("/api/keys/alice").json()["public_key"] == "a2V5Mg=="


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/messages", params={"peer": "bob"}).status_code == 401
    assert client.get(
        "/api/messages", params={"peer": "bob"}, headers={"Authorization": "Bearer junk"}
    ).status_code == 401


def test_message_round_trip(client):
    alice = register(client, "alice")
    bob = register(client, "bob")
    carol = register(client, "carol")

    assert client.post("/api/messages", json=api_message("m1"), headers=auth(bob)).status_code == 403
    assert client.post(
        "/api/messages", json=api_message("m1", receiver_id="ghost"), headers=auth(alice)
    ).status_code == 404

    response = client.post("/api/messages", json=api_message("m1", is_view_once=True), headers=auth(alice))
    assert response.status_code == 200
    assert response.json()["is_view_once"] is True

    history = client.get("/api/messages", params={"peer": "alice"}, headers=auth(bob)).json()["messages"]
    assert [m["id"] for m in history] == ["m1"]

    changes = {"changes": {"view_count": 1, "is_delivered": True}}
    assert client.patch("/api/messages/m1", json=changes, headers=auth(carol)).status_code == 404
    updated = client.patch("/api/messages/m1", json=changes, headers=auth(bob)).json()
    assert updated["view_count"] == 1
    assert updated["is_delivered"] is True

    deleted = client.post("/api/messages/delete", json={"ids": ["m1"]}, headers=auth(bob)).json()
    assert deleted == {"deleted": 1}


def test_clear_conversation(client):
    alice = register(client, "alice")
    register(client, "bob")
    for message_id in ("m1", "m2"):
        client.post("/api/messages", json=api_message(message_id), headers=auth(alice))

    response = client.delete("/api/messages", params={"peer": "bob"}, headers=auth(alice))

    assert response.json() == {"deleted": 2}
    assert client.get("/api/messages", params={"peer": "bob"}, headers=auth(alice)).json()["messages"] == []


def test_cleanup_endpoint(client):
    alice = register(client, "alice")
    register(client, "bob")
    expired = api_message("old", expires_at="2000-01-01T00:00:00Z")
    client.post("/api/messages", json=expired, headers=auth(alice))
    client.post("/api/messages", json=api_message("fresh"), headers=auth(alice))

    assert client.post("/api/messages/cleanup").json() == {"message": "Messages cleaned up", "deleted": 1}
    assert client.get("/api/messages/cleanup").json() == {"message": "No messages to delete", "deleted": 0}


def test_websocket_pushes_conversation_events(client):
    alice = register(client, "alice")
    bob = register(client, "bob")

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": bob})
        assert websocket.receive_json() == {"type": "auth_success", "username": "bob"}
        websocket.send_json({"type": "subscribe", "peer": "alice"})
        assert websocket.receive_json() == {"type": "subscribed", "peer": "alice"}

        assert client.get("/api/users/online").json() == {"users": ["bob"]}

        client.post("/api/messages", json=api_message("m1"), headers=auth(alice))
        event = websocket.receive_json()
        assert event["type"] == "insert"
        assert event["record"]["id"] == "m1"

        client.post("/api/messages/delete", json={"ids": ["m1"]}, headers=auth(alice))
        event = websocket.receive_json()
        assert event == {"type": "delete", "record": {"id": "m1", "sender_id": "alice", "receiver_id": "bob"}}


def test_websocket_requires_auth(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": "junk"})
        assert websocket.receive_json() == {"type": "error", "message": "Authentication required"}


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
