import sqlite3
from unittest.mock import patch

import pytest

from storage import MomentumStore, StorageError


def test_store_creates_database(store):
    assert store.db_path.exists()


def test_upsert_merges_fields(store):
    store.upsert_repository("acme/widgets", {"status": "ACTIVE", "unblocks": 0})
    merged = store.upsert_repository("acme/widgets", {"status": "FAILED", "error": "boom"})

    assert merged["status"] == "FAILED"
    assert merged["unblocks"] == 0
    assert merged["error"] == "boom"
    assert merged["repo_ref"] == "acme/widgets"
    assert store.get_repository("acme/widgets") == merged


def test_get_unknown_repository(store):
    assert store.get_repository("acme/nothing") is None


def test_list_and_delete(store):
    store.upsert_repository("b/two", {"status": "ACTIVE"})
    store.upsert_repository("a/one", {"status": "ACTIVE"})

    assert [r["repo_ref"] for r in store.list_repositories()] == ["a/one", "b/two"]
    assert store.delete_repository("a/one") is True
    assert store.delete_repository("a/one") is False
    assert [r["repo_ref"] for r in store.list_repositories()] == ["b/two"]


def test_proposal_history(store):
    store.append_proposal("cycle-1", "acme/widgets", {"description": "docs"}, {"score": 8})

    entry = store.get_proposal("cycle-1")
    assert entry["status"] == "PENDING"
    assert entry["proposal"] == {"description": "docs"}
    assert entry["evaluation"] == {"score": 8}

    assert store.update_proposal_status("cycle-1", "ACCEPTED") is True
    assert store.get_proposal("cycle-1")["status"] == "ACCEPTED"
    assert store.update_proposal_status("cycle-404", "ACCEPTED") is False
    assert store.get_proposal("cycle-404") is None


def test_duplicate_cycle_id_is_rejected(store):
    store.append_proposal("cycle-1", "acme/widgets", {})
    with pytest.raises(StorageError):
        store.append_proposal("cycle-1", "acme/widgets", {})


def test_recent_memories_newest_first(store):
    for i in range(5):
        store.add_memory(f"lesson {i}", "tip", embedding=[float(i)])

    recent = store.recent_memories(limit=3)

    assert [m["text"] for m in recent] == ["lesson 4", "lesson 3", "lesson 2"]
    assert recent[0]["embedding"] == [4.0]


def test_recent_memories_scoped_includes_global(store):
    store.add_memory("global tip", "tip")
    store.add_memory("widgets lesson", "negative", repo_ref="acme/widgets")
    store.add_memory("gadgets lesson", "negative", repo_ref="acme/gadgets")

    texts = [m["text"] for m in store.recent_memories(repo_ref="acme/widgets")]

    assert texts == ["widgets lesson", "global tip"]


def test_count_memories(store):
    store.add_memory("a", "negative")
    store.add_memory("b", "negative")
    store.add_memory("c", "positive")

    assert store.count_memories() == 3
    assert store.count_memories("negative") == 2


def test_sqlite_errors_become_storage_errors(store):
    with patch.object(store, "_connect", side_effect=sqlite3.OperationalError("disk I/O error")):
        with pytest.raises(StorageError, match="disk I/O error"):
            store.add_memory("x", "tip")
        with pytest.raises(StorageError):
            store.recent_memories()


def test_unwritable_location(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    with pytest.raises(StorageError):
        MomentumStore(blocker / "momentum.db")
