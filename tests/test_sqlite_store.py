from __future__ import annotations

import sqlite3

import pytest

from memorybank.errors import StoreUnavailable, StoreWriteError
from memorybank.models import MemoryItemDraft
from memorybank.owner import LOCAL_OWNER, CloudOwner
from memorybank.store import LocalSQLiteStore, MemoryStore


@pytest.fixture()
def store(tmp_path) -> LocalSQLiteStore:
    return LocalSQLiteStore(str(tmp_path / "nested" / "memory.sqlite3"))


def _draft(text: str, next_review_at: int, stage: int = 0, context: str = "Chat") -> MemoryItemDraft:
    return MemoryItemDraft(text=text, next_review_at=next_review_at, stage=stage, context=context)


def test_store_satisfies_protocol(store: LocalSQLiteStore) -> None:
    assert isinstance(store, MemoryStore)


def test_create_assigns_local_id_and_creation_time(store: LocalSQLiteStore) -> None:
    created = store.create_item(LOCAL_OWNER, _draft("你好", 2_000, context="PDF"))

    assert created.id.startswith("local:")
    assert created.added_at > 0
    assert created.context == "PDF"
    assert store.list_items(LOCAL_OWNER) == [created]


def test_local_ids_are_strictly_increasing(store: LocalSQLiteStore) -> None:
    ids = [store.create_item(LOCAL_OWNER, _draft(f"t{i}", 1_000)).id for i in range(5)]

    assert ids == sorted(ids, key=lambda value: int(value.split(":", 1)[1], 16))
    assert len(set(ids)) == 5


def test_list_is_ordered_by_next_review_and_partitioned(store: LocalSQLiteStore) -> None:
    account = CloudOwner("sub-1")
    store.create_item(LOCAL_OWNER, _draft("late", 3_000))
    store.create_item(LOCAL_OWNER, _draft("early", 1_000))
    store.create_item(account, _draft("other", 500))

    assert [item.text for item in store.list_items(LOCAL_OWNER)] == ["early", "late"]
    assert [item.text for item in store.list_items(account)] == ["other"]


def test_update_changes_schedule_only_within_owner(store: LocalSQLiteStore) -> None:
    created = store.create_item(LOCAL_OWNER, _draft("复习", 1_000))

    store.update_item(LOCAL_OWNER, created.id, 3, 9_000)
    (updated,) = store.list_items(LOCAL_OWNER)
    assert (updated.stage, updated.next_review_at) == (3, 9_000)
    assert updated.text == "复习"

    with pytest.raises(StoreWriteError):
        store.update_item(CloudOwner("sub-1"), created.id, 1, 1)
    with pytest.raises(StoreWriteError):
        store.update_item(LOCAL_OWNER, "local:missing", 1, 1)


def test_out_of_range_stage_is_clamped_on_read(store: LocalSQLiteStore) -> None:
    created = store.create_item(LOCAL_OWNER, _draft("阶段", 1_000))
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("UPDATE memory_items SET stage = 42 WHERE id = ?", (created.id,))

    assert store.list_items(LOCAL_OWNER)[0].stage == 4


def test_bulk_create_and_clear_owner(store: LocalSQLiteStore) -> None:
    account = CloudOwner("sub-1")
    store.create_item(account, _draft("keep", 1_000))

    created = store.bulk_create(LOCAL_OWNER, [_draft("a", 1_000, 1), _draft("b", 2_000, 4)])

    assert [item.stage for item in created] == [1, 4]
    assert len(store.list_items(LOCAL_OWNER)) == 2
    assert store.clear_owner(LOCAL_OWNER) == 2
    assert store.list_items(LOCAL_OWNER) == []
    assert [item.text for item in store.list_items(account)] == ["keep"]


def test_bulk_create_is_all_or_nothing(store: LocalSQLiteStore, monkeypatch: pytest.MonkeyPatch) -> None:
    import memorybank.store.sqlite_store as sqlite_module

    ids = iter(["local:dup", "local:dup"])
    monkeypatch.setattr(sqlite_module, "generate_local_item_id", lambda: next(ids))

    with pytest.raises(StoreWriteError):
        store.bulk_create(LOCAL_OWNER, [_draft("a", 1_000), _draft("b", 2_000)])

    assert store.list_items(LOCAL_OWNER) == []


def test_unreadable_database_raises_store_unavailable(tmp_path) -> None:
    db_dir = tmp_path / "as-directory"
    db_dir.mkdir()

    with pytest.raises(StoreUnavailable):
        LocalSQLiteStore(str(db_dir))
