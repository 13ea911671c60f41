from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Mapping, Sequence

from google.api_core import exceptions as gexc
from google.cloud import firestore

from ..errors import StoreUnavailable, StoreWriteError
from ..id_factory import generate_cloud_item_id
from ..logging import logger
from ..models import DEFAULT_CONTEXT, MemoryItem, MemoryItemDraft
from ..owner import Owner
from ..srs import RetentionSchedule, default_schedule
from .common import normalize_epoch_ms, normalize_stage


def _now() -> datetime:
    return datetime.now(UTC)


class FirestoreBaseStore:
    """Firestore クライアント共通のヘルパー。"""

    def __init__(self, client: firestore.Client):
        self._client = client


class FirestoreUserStore(FirestoreBaseStore):
    """Firestore 上のユーザードキュメントを管理する。"""

    def record_user_login(
        self,
        *,
        google_sub: str,
        email: str,
        display_name: str,
        login_at: datetime | None = None,
    ) -> dict[str, str]:
        login_time = (login_at or _now()).replace(microsecond=0)
        doc_ref = self._client.collection("users").document(google_sub)
        try:
            doc_ref.set(
                {
                    "google_sub": google_sub,
                    "email": email,
                    "display_name": display_name,
                    "last_login_at": login_time.isoformat(),
                },
                merge=True,
            )
        except gexc.GoogleAPIError as exc:
            raise StoreWriteError(f"failed to persist user login: {exc}") from exc
        user = self.get_user_by_google_sub(google_sub)
        if user is None:  # pragma: no cover - defensive fallback
            raise StoreWriteError("failed to persist user login")
        return user

    def get_user_by_google_sub(self, google_sub: str) -> dict[str, str] | None:
        try:
            doc = self._client.collection("users").document(google_sub).get()
        except gexc.GoogleAPIError as exc:
            raise StoreUnavailable(f"failed to load user: {exc}") from exc
        if not doc.exists:
            return None
        data = doc.to_dict() or {}
        return {
            "google_sub": str(data.get("google_sub") or google_sub),
            "email": str(data.get("email") or ""),
            "display_name": str(data.get("display_name") or ""),
            "last_login_at": str(data.get("last_login_at") or ""),
        }


class FirestoreMemoryItemStore(FirestoreBaseStore):
    """Per-account memory items kept in one Firestore collection.

    - ドキュメントは owner_id フィールドでアカウントごとに分離する
    - next_review_at はエポックミリ秒の整数、created_at は ISO 文字列で保存する
    - 一括作成は WriteBatch で行い、バッチ上限（500件）を超えないよう分割する
    """

    _BATCH_SIZE = 450

    def __init__(
        self,
        client: firestore.Client,
        collection_name: str = "memory_items",
        schedule: RetentionSchedule = default_schedule,
    ):
        super().__init__(client)
        self._items = client.collection(collection_name)
        self._schedule = schedule

    def _snapshot_to_item(self, doc_id: str, data: Mapping[str, Any]) -> MemoryItem:
        translation = data.get("translation")
        return MemoryItem(
            id=doc_id,
            text=str(data.get("text") or ""),
            translation=str(translation) if translation else None,
            context=str(data.get("context") or DEFAULT_CONTEXT),
            added_at=normalize_epoch_ms(data.get("created_at")),
            next_review_at=normalize_epoch_ms(data.get("next_review_at")),
            stage=normalize_stage(data.get("stage"), self._schedule),
        )

    def _draft_payload(self, owner: Owner, draft: MemoryItemDraft, created_at: datetime) -> dict[str, Any]:
        return {
            "owner_id": owner.owner_id,
            "text": draft.text,
            "translation": draft.translation,
            "context": draft.context or DEFAULT_CONTEXT,
            "stage": normalize_stage(draft.stage, self._schedule),
            "next_review_at": int(draft.next_review_at),
            "created_at": created_at.isoformat(),
        }

    def list_items(self, owner: Owner) -> list[MemoryItem]:
        query = self._items.where("owner_id", "==", owner.owner_id).order_by(
            "next_review_at", direction=firestore.Query.ASCENDING
        )
        try:
            snapshots = list(query.stream())
        except gexc.GoogleAPIError as exc:
            logger.error(
                "firestore_memory_list_failed",
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            raise StoreUnavailable(f"cloud store could not be read: {exc}") from exc
        return [self._snapshot_to_item(doc.id, doc.to_dict() or {}) for doc in snapshots]

    def create_item(self, owner: Owner, draft: MemoryItemDraft) -> MemoryItem:
        item_id = generate_cloud_item_id()
        payload = self._draft_payload(owner, draft, _now())
        try:
            self._items.document(item_id).set(payload)
        except gexc.GoogleAPIError as exc:
            logger.error(
                "firestore_memory_write_failed",
                op="create",
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            raise StoreWriteError(f"cloud store create failed: {exc}") from exc
        return self._snapshot_to_item(item_id, payload)

    def update_item(self, owner: Owner, item_id: str, stage: int, next_review_at: int) -> None:
        doc_ref = self._items.document(item_id)
        try:
            snapshot = doc_ref.get()
            data = (snapshot.to_dict() or {}) if snapshot.exists else None
            # 他アカウントのドキュメントは存在しないものとして扱う
            if data is None or data.get("owner_id") != owner.owner_id:
                raise StoreWriteError(f"memory item not found in cloud store: {item_id}")
            doc_ref.update(
                {
                    "stage": normalize_stage(stage, self._schedule),
                    "next_review_at": int(next_review_at),
                }
            )
        except gexc.GoogleAPIError as exc:
            logger.error(
                "firestore_memory_write_failed",
                op="update",
                item_id=item_id,
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            raise StoreWriteError(f"cloud store update failed: {exc}") from exc

    def bulk_create(self, owner: Owner, drafts: Sequence[MemoryItemDraft]) -> list[MemoryItem]:
        created_at = _now()
        created: list[MemoryItem] = []
        batch_size = max(1, int(self._BATCH_SIZE))
        try:
            for start in range(0, len(drafts), batch_size):
                batch = self._client.batch()
                chunk_items: list[MemoryItem] = []
                for draft in drafts[start : start + batch_size]:
                    item_id = generate_cloud_item_id()
                    payload = self._draft_payload(owner, draft, created_at)
                    batch.set(self._items.document(item_id), payload)
                    chunk_items.append(self._snapshot_to_item(item_id, payload))
                batch.commit()
                created.extend(chunk_items)
        except gexc.GoogleAPIError as exc:
            logger.error(
                "firestore_memory_write_failed",
                op="bulk_create",
                requested=len(drafts),
                committed=len(created),
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            raise StoreWriteError(f"cloud store bulk create failed: {exc}") from exc
        return created

    def clear_owner(self, owner: Owner) -> int:
        """対象アカウントのドキュメントだけをページングしながら削除する。"""

        batch_size = max(1, int(self._BATCH_SIZE))
        base_query = self._items.where("owner_id", "==", owner.owner_id).order_by("__name__")
        query = base_query.limit(batch_size)
        removed = 0
        try:
            while True:
                snapshots = list(query.stream())
                if not snapshots:
                    break

                batch = self._client.batch()
                for snapshot in snapshots:
                    batch.delete(snapshot.reference)
                batch.commit()
                removed += len(snapshots)

                if len(snapshots) < batch_size:
                    break
                query = base_query.start_after(snapshots[-1]).limit(batch_size)
        except gexc.GoogleAPIError as exc:
            logger.error(
                "firestore_memory_write_failed",
                op="clear",
                removed=removed,
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            raise StoreWriteError(f"cloud store clear failed: {exc}") from exc
        return removed


class AppFirestoreStore:
    """Firestore 版のアプリ永続化ストア（ユーザー + 記憶アイテム）。"""

    def __init__(
        self,
        *,
        client: firestore.Client | None = None,
        collection_name: str = "memory_items",
        schedule: RetentionSchedule = default_schedule,
    ) -> None:
        self._client = client or firestore.Client()
        self.users = FirestoreUserStore(self._client)
        self.memory = FirestoreMemoryItemStore(
            self._client, collection_name=collection_name, schedule=schedule
        )

    # --- Users ---
    def record_user_login(
        self,
        *,
        google_sub: str,
        email: str,
        display_name: str,
        login_at: datetime | None = None,
    ) -> dict[str, str]:
        return self.users.record_user_login(
            google_sub=google_sub,
            email=email,
            display_name=display_name,
            login_at=login_at,
        )

    def get_user_by_google_sub(self, google_sub: str) -> dict[str, str] | None:
        return self.users.get_user_by_google_sub(google_sub)

    # --- Memory items ---
    def list_items(self, owner: Owner) -> list[MemoryItem]:
        return self.memory.list_items(owner)

    def create_item(self, owner: Owner, draft: MemoryItemDraft) -> MemoryItem:
        return self.memory.create_item(owner, draft)

    def update_item(self, owner: Owner, item_id: str, stage: int, next_review_at: int) -> None:
        self.memory.update_item(owner, item_id, stage, next_review_at)

    def bulk_create(self, owner: Owner, drafts: Sequence[MemoryItemDraft]) -> list[MemoryItem]:
        return self.memory.bulk_create(owner, drafts)

    def clear_owner(self, owner: Owner) -> int:
        return self.memory.clear_owner(owner)
