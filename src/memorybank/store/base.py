from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from ..models import MemoryItem, MemoryItemDraft
from ..owner import Owner


@runtime_checkable
class MemoryStore(Protocol):
    """Durable holder of memory items, partitioned by owner.

    実装は同期 API。失敗時は読み取り系で StoreUnavailable、書き込み系で
    StoreWriteError を送出し、バックエンド固有の例外は外へ漏らさない。
    """

    def list_items(self, owner: Owner) -> list[MemoryItem]:
        """Return the owner's items ordered by ``next_review_at`` ascending."""

    def create_item(self, owner: Owner, draft: MemoryItemDraft) -> MemoryItem:
        """Persist one item and return it with its canonical id and creation time."""

    def update_item(self, owner: Owner, item_id: str, stage: int, next_review_at: int) -> None:
        """Update the schedule of an existing item in the owner's partition."""

    def bulk_create(self, owner: Owner, drafts: Sequence[MemoryItemDraft]) -> list[MemoryItem]:
        """Persist many items at once (all-or-nothing from the caller's view)."""

    def clear_owner(self, owner: Owner) -> int:
        """Remove the owner's whole partition and return how many items were dropped."""
