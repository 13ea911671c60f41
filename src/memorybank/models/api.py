from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .memory import MemoryItem, MemoryStats


class MemoryItemOut(BaseModel):
    """A memory item as returned to the UI."""

    id: str
    text: str
    translation: str | None = None
    context: str
    added_at: int
    next_review_at: int
    stage: int
    sync_state: Literal["confirmed", "pending", "unsynced"]
    provisional: bool = False

    @classmethod
    def from_item(cls, item: MemoryItem) -> "MemoryItemOut":
        return cls(**item.to_dict())


class CaptureRequest(BaseModel):
    """テキスト選択（チャット/PDF/カルチャー等）から記憶へ追加するリクエスト。

    - text: 選択された断片（前後空白を除いて空でないこと）
    - context: 取得元ラベル（省略時は既定ラベル）
    """

    model_config = ConfigDict(extra="ignore")

    text: str = Field(..., description="Captured fragment")
    context: str | None = Field(default=None, description="Capture source label")
    translation: str | None = None


class ReviewRequest(BaseModel):
    item_id: str = Field(min_length=1)
    remembered: bool


class MemoryListResponse(BaseModel):
    owner: Literal["local", "cloud"]
    items: list[MemoryItemOut]


class MemoryStatsResponse(BaseModel):
    """進捗の見える化用の統計レスポンス。

    - total: 全件数
    - due: 現在時点で出題すべき件数
    - mastered: stage が 1 以上の件数
    - unsynced: 永続化に失敗して未同期のままの件数
    """

    owner: Literal["local", "cloud"]
    total: int
    due: int
    mastered: int
    unsynced: int

    @classmethod
    def from_stats(cls, owner: Literal["local", "cloud"], stats: MemoryStats) -> "MemoryStatsResponse":
        return cls(
            owner=owner,
            total=stats.total,
            due=stats.due,
            mastered=stats.mastered,
            unsynced=stats.unsynced,
        )


class MigrateRequest(BaseModel):
    confirm: bool = False


class MigrateResponse(BaseModel):
    migrated: int
    items: list[MemoryItemOut] = []


class ResyncResponse(BaseModel):
    resynced: int
    unsynced: int


class BackupImportRequest(BaseModel):
    confirm: bool = False
    backup: dict[str, Any]


class BackupImportResponse(BaseModel):
    restored: int
