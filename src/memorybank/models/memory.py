from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from ..id_factory import is_provisional_id
from ..srs import is_due


DEFAULT_CONTEXT = "General"


class SyncState(str, Enum):
    confirmed = "confirmed"
    pending = "pending"
    unsynced = "unsynced"


@dataclass(frozen=True)
class MemoryItem:
    """A single memorized fragment.

    - text/translation/context は作成後に変更しない
    - next_review_at は stage とレビュー（作成）時刻から導出される
    - sync_state はクライアント側の同期状態で、ストアには保存しない
    """

    id: str
    text: str
    added_at: int
    next_review_at: int
    stage: int = 0
    context: str = DEFAULT_CONTEXT
    translation: str | None = None
    sync_state: SyncState = field(default=SyncState.confirmed, compare=False)

    @property
    def provisional(self) -> bool:
        return is_provisional_id(self.id)

    def is_due(self, at_ms: int) -> bool:
        return is_due(self.next_review_at, at_ms)

    def with_schedule(self, stage: int, next_review_at: int) -> "MemoryItem":
        return replace(self, stage=stage, next_review_at=next_review_at)

    def with_sync_state(self, state: SyncState) -> "MemoryItem":
        return replace(self, sync_state=state)

    def to_draft(self) -> "MemoryItemDraft":
        return MemoryItemDraft(
            text=self.text,
            context=self.context,
            translation=self.translation,
            stage=self.stage,
            next_review_at=self.next_review_at,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["sync_state"] = self.sync_state.value
        payload["provisional"] = self.provisional
        return payload


@dataclass(frozen=True)
class MemoryItemDraft:
    """Store-bound payload for create/bulk create (id and created_at come from the store)."""

    text: str
    next_review_at: int
    stage: int = 0
    context: str = DEFAULT_CONTEXT
    translation: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "MemoryItemDraft":
        """Build a draft from a loosely typed mapping (backup files, API bodies).

        camelCase（旧フロントエンドの localStorage 形式）と snake_case の両方を受け付ける。
        """

        text = str(raw.get("text") or "").strip()
        if not text:
            raise ValueError("memory item text must not be empty")
        next_review_raw = raw.get("next_review_at", raw.get("nextReviewAt"))
        try:
            next_review_at = int(next_review_raw)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValueError("memory item next_review_at must be an integer") from exc
        try:
            stage = int(raw.get("stage") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError("memory item stage must be an integer") from exc
        translation = raw.get("translation")
        return cls(
            text=text,
            next_review_at=next_review_at,
            stage=stage,
            context=str(raw.get("context") or DEFAULT_CONTEXT),
            translation=str(translation) if translation else None,
        )


@dataclass(frozen=True)
class MemoryStats:
    total: int
    due: int
    mastered: int
    unsynced: int


@dataclass(frozen=True)
class MigrationResult:
    migrated: int
    items: tuple[MemoryItem, ...] = ()
