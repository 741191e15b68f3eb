#!/usr/bin/env python3
"""
Tests for the password-protected local key store.
"""

import sys

import pytest

from chat_client.keystore import KeyStore


def test_identity_survives_reopen(tmp_path):
    store = KeyStore("alice", str(tmp_path))
    assert store.unlock("correct horse")
    assert store.load_identity() is None

    store.save_identity("cHJpdmF0ZQ==", "cHVibGlj")
    store.close()

    reopened = KeyStore("alice", str(tmp_path))
    assert reopened.unlock("correct horse")
    assert reopened.load_identity() == {"private": "cHJpdmF0ZQ==", "public": "cHVibGlj"}
    reopened.close()


def test_wrong_password_is_rejected(tmp_path):
    store = KeyStore("alice", str(tmp_path))
    store.unlock("correct horse")
    store.save_identity("cHJpdmF0ZQ==", "cHVibGlj")
    store.close()

    intruder = KeyStore("alice", str(tmp_path))
    assert not intruder.unlock("battery staple")
    assert intruder.load_identity() is None


def test_private_key_is_not_stored_in_clear(tmp_path):
    store = KeyStore("alice", str(tmp_path))
    store.unlock("correct horse")
    store.save_identity("cHJpdmF0ZQ==", "cHVibGlj")
    store.close()

    assert b"cHJpdmF0ZQ==" not in (tmp_path / "alice.db").read_bytes()


def test_swapped_entries_fail_authentication(tmp_path):
    """A sealed value copied under another entry name does not decrypt"""
    store = KeyStore("alice", str(tmp_path))
    store.unlock("correct horse")
    store.save_preference("auto_delete", "1h")
    store._conn.execute(
        "UPDATE vault SET sealed = (SELECT sealed FROM vault WHERE name = 'pref:auto_delete') "
        "WHERE name = 'check'"
    )
    store._conn.commit()
    store.close()

    assert not KeyStore("alice", str(tmp_path)).unlock("correct horse")


def test_remembered_auto_delete_mode(tmp_path):
    store = KeyStore("alice", str(tmp_path))
    store.unlock("correct horse")

    assert store.load_preference("auto_delete", "none") == "none"
    store.save_preference("auto_delete", "1h")
    assert store.load_preference("auto_delete") == "1h"
    store.close()


def test_locked_store_refuses_writes(tmp_path):
    store = KeyStore("alice", str(tmp_path))

    with pytest.raises(ValueError):
        store.save_identity("cHJpdmF0ZQ==", "cHVibGlj")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
