from __future__ import annotations

import pytest

from adapters.sqlite_storage import SQLiteDocumentStore
from core.models import InsertResult


def _store(tmp_path) -> SQLiteDocumentStore:
    store = SQLiteDocumentStore(str(tmp_path / "store.db"))
    store.init_db()
    return store


def test_insert_is_create_if_absent(tmp_path) -> None:
    store = _store(tmp_path)
    assert store.insert_one("messages", "abc12345", {"text": "първо"}) is InsertResult.CREATED
    assert store.insert_one("messages", "abc12345", {"text": "второ"}) is InsertResult.EXISTS
    assert store.find_by_id("messages", "abc12345") == {"text": "първо", "_id": "abc12345"}


def test_find_many_filters(tmp_path) -> None:
    store = _store(tmp_path)
    store.insert_one("messages", "m1", {"source_document_id": "k1", "notified": False, "locality": "bg.sofia"})
    store.insert_one("messages", "m2", {"source_document_id": "k2", "notified": True, "locality": "bg.sofia"})
    store.insert_one("messages", "m3", {"notified": False, "locality": "bg.plovdiv"})

    assert [doc["_id"] for doc in store.find_many("messages", where={"source_document_id": ["k1", "k2", "k9"]})] == [
        "m1",
        "m2",
    ]
    assert [doc["_id"] for doc in store.find_many("messages", where={"notified": False})] == ["m1", "m3"]
    assert [doc["_id"] for doc in store.find_many("messages", where={"source_document_id": None})] == ["m3"]
    assert [doc["_id"] for doc in store.find_many("messages", where={"_id": ["m2", "m3"]})] == ["m2", "m3"]
    assert store.find_many("messages", where={"source_document_id": []}) == []
    assert len(store.find_many("messages", limit=2)) == 2
    assert store.count("messages", where={"locality": "bg.sofia", "notified": True}) == 1


def test_update_merges_fields(tmp_path) -> None:
    store = _store(tmp_path)
    store.insert_one("notification_matches", "x", {"user_id": "u", "notified": False})

    assert store.update_one("notification_matches", "x", {"notified": True, "notified_at": "2025-12-19T10:00:00+00:00"})
    assert store.find_by_id("notification_matches", "x") == {
        "_id": "x",
        "user_id": "u",
        "notified": True,
        "notified_at": "2025-12-19T10:00:00+00:00",
    }
    assert store.update_one("notification_matches", "missing", {"notified": True}) is False


def test_delete_many_by_ids(tmp_path) -> None:
    store = _store(tmp_path)
    for key in ("a", "b", "c"):
        store.insert_one("ingested_sources", key, {})

    assert store.delete_many_by_ids("ingested_sources", ["a", "c", "zzz"]) == 2
    assert store.delete_many_by_ids("ingested_sources", []) == 0
    assert [doc["_id"] for doc in store.find_many("ingested_sources")] == ["b"]


def test_unknown_collections_are_created_on_use(tmp_path) -> None:
    store = _store(tmp_path)
    assert store.find_many("audit_log") == []
    assert store.insert_one("audit_log", "1", {"ok": True}) is InsertResult.CREATED


def test_unsafe_names_are_rejected(tmp_path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValueError):
        store.find_many("messages; DROP TABLE messages")
    with pytest.raises(ValueError):
        store.find_many("messages", where={"text') OR 1=1 --": "x"})
