from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from memorybank.backup import export_backup, import_backup, parse_backup
from memorybank.errors import ValidationError
from memorybank.models import MemoryItemDraft
from memorybank.owner import LOCAL_OWNER, CloudOwner
from memorybank.store import LocalSQLiteStore


@pytest.fixture()
def store(tmp_path) -> LocalSQLiteStore:
    return LocalSQLiteStore(str(tmp_path / "backup.sqlite3"))


def test_export_then_import_restores_local_collection(store: LocalSQLiteStore, tmp_path) -> None:
    store.bulk_create(
        LOCAL_OWNER,
        [
            MemoryItemDraft(text="你好", next_review_at=1_000, stage=2, context="Chat", translation="hello"),
            MemoryItemDraft(text="文化", next_review_at=2_000, stage=0, context="Culture"),
        ],
    )
    payload = export_backup(store, now=datetime(2024, 5, 1, tzinfo=UTC))
    assert payload["timestamp"] == "2024-05-01T00:00:00+00:00"
    assert [entry["text"] for entry in payload["memory"]] == ["你好", "文化"]

    target = LocalSQLiteStore(str(tmp_path / "restored.sqlite3"))
    target.create_item(LOCAL_OWNER, MemoryItemDraft(text="旧", next_review_at=1))

    restored = import_backup(target, payload, confirmed=True)

    assert restored == 2
    items = target.list_items(LOCAL_OWNER)
    assert [(i.text, i.context, i.stage, i.translation) for i in items] == [
        ("你好", "Chat", 2, "hello"),
        ("文化", "Culture", 0, None),
    ]


def test_import_accepts_legacy_browser_backup(store: LocalSQLiteStore) -> None:
    """旧フロントエンド形式（memory は localStorage の JSON 文字列、camelCase）も復元できる。"""

    stored = [{"id": "1712", "text": "加油", "context": "Chat", "addedAt": 1, "nextReviewAt": 5_000, "stage": 3}]
    legacy = {
        "memory": json.dumps(stored, ensure_ascii=False),
        "culture": [{"title": "春节"}],
        "trending": [],
        "timestamp": "2024-01-01T00:00:00.000Z",
    }

    assert import_backup(store, legacy, confirmed=True) == 1
    (item,) = store.list_items(LOCAL_OWNER)
    assert (item.text, item.next_review_at, item.stage) == ("加油", 5_000, 3)


def test_import_requires_confirmation(store: LocalSQLiteStore) -> None:
    store.create_item(LOCAL_OWNER, MemoryItemDraft(text="保留", next_review_at=1))

    with pytest.raises(ValidationError):
        import_backup(store, {"memory": []}, confirmed=False)

    assert len(store.list_items(LOCAL_OWNER)) == 1


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"memory": "nope"},
        {"memory": "{\"text\": \"ok\"}"},
        {"memory": ["text"]},
        {"memory": [{"text": "", "next_review_at": 1}]},
        {"memory": [{"text": "ok"}]},
    ],
)
def test_malformed_backup_is_rejected_before_touching_store(store: LocalSQLiteStore, payload: dict) -> None:
    store.create_item(LOCAL_OWNER, MemoryItemDraft(text="保留", next_review_at=1))

    with pytest.raises(ValidationError):
        import_backup(store, payload, confirmed=True)

    assert [item.text for item in store.list_items(LOCAL_OWNER)] == ["保留"]


def test_import_only_touches_local_partition(store: LocalSQLiteStore) -> None:
    account = CloudOwner("sub-1")
    store.create_item(account, MemoryItemDraft(text="账号", next_review_at=1))

    import_backup(store, {"memory": []}, confirmed=True)

    assert [item.text for item in store.list_items(account)] == ["账号"]
    assert parse_backup({"memory": []}) == []
