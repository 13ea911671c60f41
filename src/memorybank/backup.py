"""JSON backup of the local (on-device) memory collection.

エクスポート形式::

    {"memory": [{"id": ..., "text": ..., "context": ..., "stage": ..., ...}],
     "timestamp": "2024-01-01T00:00:00+00:00"}

インポートは旧フロントエンドのバックアップ（memory が JSON 文字列、camelCase の nextReviewAt、
culture/trending キーを含むもの）も受け付ける。memory 以外のキーは無視する。
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Mapping

from .errors import ValidationError
from .logging import logger
from .models import MemoryItem, MemoryItemDraft
from .owner import LOCAL_OWNER
from .store.base import MemoryStore


def _item_to_backup(item: MemoryItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "text": item.text,
        "translation": item.translation,
        "context": item.context,
        "added_at": item.added_at,
        "next_review_at": item.next_review_at,
        "stage": item.stage,
    }


def export_backup(store: MemoryStore, *, now: datetime | None = None) -> dict[str, Any]:
    items = store.list_items(LOCAL_OWNER)
    payload = {
        "memory": [_item_to_backup(item) for item in items],
        "timestamp": (now or datetime.now(UTC)).isoformat(),
    }
    logger.info("memory_backup_exported", count=len(items))
    return payload


def parse_backup(payload: Mapping[str, Any]) -> list[MemoryItemDraft]:
    """Validate a backup document and turn its entries into drafts."""

    if not isinstance(payload, Mapping):
        raise ValidationError("backup must be a JSON object")
    raw_items = payload.get("memory")
    if isinstance(raw_items, str):
        # 旧フロントエンドは localStorage の値（JSON 文字列）をそのまま書き出す
        try:
            raw_items = json.loads(raw_items)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"backup 'memory' string is not valid JSON: {exc.msg}") from exc
    if not isinstance(raw_items, list):
        raise ValidationError("backup must contain a 'memory' list")

    drafts: list[MemoryItemDraft] = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, Mapping):
            raise ValidationError(f"backup entry {index} must be an object")
        try:
            drafts.append(MemoryItemDraft.from_mapping(raw))
        except ValueError as exc:
            raise ValidationError(f"backup entry {index} is invalid: {exc}") from exc
    return drafts


def import_backup(store: MemoryStore, payload: Mapping[str, Any], *, confirmed: bool) -> int:
    """Overwrite the local collection with the backup contents.

    既存のローカルデータは上書きされるため confirmed=True が必須。
    内容の検証はストアへ触れる前に行い、不正なら何も変更しない。
    """

    if not confirmed:
        raise ValidationError("restoring a backup overwrites local data and requires confirmation")
    drafts = parse_backup(payload)
    removed = store.clear_owner(LOCAL_OWNER)
    created = store.bulk_create(LOCAL_OWNER, drafts) if drafts else []
    logger.info("memory_backup_imported", restored=len(created), replaced=removed)
    return len(created)
