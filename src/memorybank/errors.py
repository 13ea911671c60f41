"""Error taxonomy shared by the scheduler, stores and HTTP layer.

ストア実装はバックエンド固有の例外（sqlite3.Error / GoogleAPIError）を
ここで定義した例外へ変換して送出する。呼び出し側はバックエンドの種類を
意識せずに失敗を扱える。
"""

from __future__ import annotations


class MemoryBankError(Exception):
    """Base class for every error raised by the memory bank."""


class ValidationError(MemoryBankError, ValueError):
    """Input rejected before any store interaction (e.g. empty capture text)."""


class ItemNotFound(MemoryBankError, LookupError):
    """A review targeted an id absent from the current collection."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"memory item not found: {item_id}")
        self.item_id = item_id


class StoreError(MemoryBankError):
    """Base class for persistence failures."""


class StoreUnavailable(StoreError):
    """The backing medium could not be reached or read."""


class StoreWriteError(StoreError):
    """A create/update/bulk write did not apply."""
