"""In-memory spaced-repetition collection mirrored to a store.

MemoryScheduler はアクティブな所有者（ローカル端末 or 認証済みアカウント）の
記憶アイテムをメモリ上に保持し、追加・レビューを楽観的に反映したうえで
ストアへの永続化をバックグラウンドタスクで行う。

- 同一アイテムへのストア書き込みはアイテム単位の asyncio.Lock で直列化する
- 所有者の切り替えごとに世代番号を進め、古い世代の確定応答は破棄する
- 書き込み失敗時はロールバックせず sync_state=unsynced として可視化する
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from functools import partial
from typing import Any, Awaitable, Callable, Coroutine

import anyio

from .errors import ItemNotFound, StoreError, StoreUnavailable, StoreWriteError, ValidationError
from .id_factory import generate_provisional_id, is_provisional_id
from .logging import logger
from .models import DEFAULT_CONTEXT, MemoryItem, MemoryItemDraft, MemoryStats, MigrationResult, SyncState
from .owner import LOCAL_OWNER, Owner, owner_for_account
from .srs import RetentionSchedule, default_schedule, now_ms
from .store.base import MemoryStore

StoreErrorCallback = Callable[[StoreError, "MemoryItem | None"], None]


async def _run_store_call(func: Callable[..., Any], *args: Any) -> Any:
    # ストア実装は同期 API のためワーカースレッドで実行する
    return await anyio.to_thread.run_sync(partial(func, *args))


class MemoryScheduler:
    """Owner-scoped memory collection with optimistic writes.

    Args:
        local_store: 端末側パーティションのストア
        cloud_store: アカウント側パーティションのストア（None ならクラウド無効）
        schedule: 復習間隔テーブル
        default_context: capture 時に取得元ラベルが空だった場合の既定値
        clock: エポックミリ秒を返す時計（テストで差し替える）
        on_store_error: バックグラウンド書き込み失敗時に呼ばれるコールバック
    """

    def __init__(
        self,
        local_store: MemoryStore,
        cloud_store: MemoryStore | None = None,
        *,
        schedule: RetentionSchedule = default_schedule,
        default_context: str = DEFAULT_CONTEXT,
        clock: Callable[[], int] = now_ms,
        on_store_error: StoreErrorCallback | None = None,
    ) -> None:
        self._local_store = local_store
        self._cloud_store = cloud_store
        self._schedule = schedule
        self._default_context = (default_context or "").strip() or DEFAULT_CONTEXT
        self._clock = clock
        self._on_store_error = on_store_error

        self._owner: Owner = LOCAL_OWNER
        self._items: list[MemoryItem] = []
        self._loaded = False
        self._generation = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._reset_bookkeeping()

    # --- state accessors ---
    @property
    def owner(self) -> Owner:
        return self._owner

    @property
    def loaded(self) -> bool:
        """True once the active owner's collection was read from its store."""

        return self._loaded

    @property
    def schedule(self) -> RetentionSchedule:
        return self._schedule

    @property
    def items(self) -> tuple[MemoryItem, ...]:
        return tuple(self._items)

    def get_item(self, item_id: str) -> MemoryItem | None:
        index = self._locate(item_id)
        return None if index is None else self._items[index]

    # --- bookkeeping ---
    def _reset_bookkeeping(self) -> None:
        # key はアイテムに最初に付いた ID（仮 ID 含む）。確定 ID へ置き換わっても
        # 同じ key のロックを使い続けることで、作成と更新の順序を保証する。
        self._locks: dict[str, asyncio.Lock] = {}
        self._keys: dict[str, str] = {}
        self._current_id: dict[str, str] = {}
        self._inflight: dict[str, int] = {}
        self._failed: set[str] = set()

    def _store_for(self, owner: Owner) -> MemoryStore:
        if owner.is_authenticated:
            if self._cloud_store is None:
                raise StoreUnavailable("cloud store is not configured")
            return self._cloud_store
        return self._local_store

    def _index_of(self, item_id: str) -> int | None:
        for index, item in enumerate(self._items):
            if item.id == item_id:
                return index
        return None

    def _locate(self, item_id: str) -> int | None:
        index = self._index_of(item_id)
        if index is not None:
            return index
        # 確定済みアイテムを仮 ID で参照された場合は確定 ID へ読み替える
        key = self._keys.get(item_id)
        current = self._current_id.get(key) if key is not None else None
        if current is None:
            return None
        return self._index_of(current)

    def _key_for(self, item_id: str) -> str:
        key = self._keys.setdefault(item_id, item_id)
        self._current_id.setdefault(key, item_id)
        return key

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _item_for_key(self, key: str) -> MemoryItem | None:
        index = self._index_of(self._current_id.get(key, key))
        return None if index is None else self._items[index]

    def _set_sync_state(self, item_id: str, state: SyncState) -> None:
        index = self._index_of(item_id)
        if index is not None:
            self._items[index] = self._items[index].with_sync_state(state)

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _begin_write(self, key: str) -> None:
        self._inflight[key] = self._inflight.get(key, 0) + 1

    def _finish_write(self, key: str, generation: int) -> None:
        if self._is_stale(generation):
            return
        remaining = self._inflight.get(key, 0) - 1
        if remaining > 0:
            self._inflight[key] = remaining
            return
        self._inflight.pop(key, None)
        item = self._item_for_key(key)
        if item is not None:
            state = SyncState.unsynced if key in self._failed else SyncState.confirmed
            self._set_sync_state(item.id, state)

    def _report_failure(self, event: str, key: str, owner: Owner, exc: StoreError) -> None:
        self._failed.add(key)
        item = self._item_for_key(key)
        if item is not None:
            self._set_sync_state(item.id, SyncState.unsynced)
            item = self._item_for_key(key)
        logger.error(
            event,
            item_id=item.id if item is not None else key,
            owner=owner.kind,
            error=str(exc),
            error_class=exc.__class__.__name__,
        )
        if self._on_store_error is not None:
            self._on_store_error(exc, item)

    def _log_stale(self, op: str, key: str, owner: Owner) -> None:
        logger.info("memory_confirmation_stale", op=op, item_key=key, owner=owner.kind)

    # --- operations ---
    async def add_item(
        self,
        text: str,
        context: str | None = None,
        translation: str | None = None,
    ) -> MemoryItem:
        """Append a stage-0 item optimistically and persist it in the background."""

        cleaned = (text or "").strip()
        if not cleaned:
            raise ValidationError("memory item text must not be empty")

        created_at = self._clock()
        item = MemoryItem(
            id=generate_provisional_id(),
            text=cleaned,
            translation=(translation or "").strip() or None,
            context=(context or "").strip() or self._default_context,
            added_at=created_at,
            next_review_at=self._schedule.initial_review_at(created_at),
            stage=0,
            sync_state=SyncState.pending,
        )
        self._items.append(item)

        key = self._key_for(item.id)
        self._begin_write(key)
        self._spawn(self._confirm_create(self._owner, self._generation, key, item.to_draft()))
        logger.info(
            "memory_item_captured",
            item_id=item.id,
            context=item.context,
            owner=self._owner.kind,
        )
        return item

    async def capture(self, text: str, context_label: str | None = None) -> MemoryItem:
        """Capture a fragment selected in a UI surface (chat, PDF, culture page)."""

        return await self.add_item(text, context=context_label)

    async def _confirm_create(
        self, owner: Owner, generation: int, key: str, draft: MemoryItemDraft
    ) -> None:
        try:
            async with self._lock_for(key):
                try:
                    store = self._store_for(owner)
                    created: MemoryItem = await _run_store_call(store.create_item, owner, draft)
                except StoreError as exc:
                    if self._is_stale(generation):
                        self._log_stale("create", key, owner)
                        return
                    self._report_failure("memory_create_failed", key, owner, exc)
                    return
                if self._is_stale(generation):
                    self._log_stale("create", key, owner)
                    return
                self._reconcile_created(key, created)
        finally:
            self._finish_write(key, generation)

    def _reconcile_created(self, key: str, created: MemoryItem) -> None:
        provisional_id = self._current_id.get(key, key)
        index = self._index_of(provisional_id)
        if index is None:
            return
        # レビューで進んだ stage/next_review_at はメモリ側の値を保持する
        current = self._items[index]
        self._items[index] = replace(current, id=created.id, added_at=created.added_at)
        self._current_id[key] = created.id
        self._keys[created.id] = key
        self._failed.discard(key)
        logger.info("memory_item_confirmed", provisional_id=provisional_id, item_id=created.id)

    async def review_item(self, item_id: str, remembered: bool) -> MemoryItem:
        """Apply one review outcome optimistically and persist it in the background.

        未知の ID は ItemNotFound を送出する（状態は変えない）。
        """

        index = self._locate(item_id)
        if index is None:
            logger.warning("memory_review_unknown_item", item_id=item_id, owner=self._owner.kind)
            raise ItemNotFound(item_id)

        current = self._items[index]
        reviewed_at = self._clock()
        stage, next_review_at = self._schedule.review(current.stage, remembered, reviewed_at)
        updated = current.with_schedule(stage, next_review_at).with_sync_state(SyncState.pending)
        self._items[index] = updated

        key = self._key_for(updated.id)
        self._begin_write(key)
        self._spawn(
            self._confirm_update(self._owner, self._generation, key, stage, next_review_at)
        )
        logger.info(
            "memory_item_reviewed",
            item_id=updated.id,
            remembered=remembered,
            stage_from=current.stage,
            stage_to=stage,
            owner=self._owner.kind,
        )
        return updated

    async def _confirm_update(
        self, owner: Owner, generation: int, key: str, stage: int, next_review_at: int
    ) -> None:
        try:
            async with self._lock_for(key):
                if self._is_stale(generation):
                    self._log_stale("update", key, owner)
                    return
                target_id = self._current_id.get(key, key)
                if is_provisional_id(target_id):
                    # 作成に失敗したアイテムは更新先が存在しない（resync_unsynced で作成し直す）
                    self._failed.add(key)
                    logger.warning("memory_update_skipped", item_id=target_id, reason="not_persisted")
                    return
                try:
                    store = self._store_for(owner)
                    await _run_store_call(store.update_item, owner, target_id, stage, next_review_at)
                except StoreError as exc:
                    if self._is_stale(generation):
                        self._log_stale("update", key, owner)
                        return
                    self._report_failure("memory_update_failed", key, owner, exc)
                    return
                if not self._is_stale(generation):
                    self._failed.discard(key)
        finally:
            self._finish_write(key, generation)

    def get_due_items(self, now: int | None = None) -> list[MemoryItem]:
        """Return items with ``next_review_at <= now``, earliest due first."""

        at = self._clock() if now is None else int(now)
        due = [item for item in self._items if item.is_due(at)]
        due.sort(key=lambda item: (item.next_review_at, item.added_at))
        return due

    def stats(self, now: int | None = None) -> MemoryStats:
        at = self._clock() if now is None else int(now)
        return MemoryStats(
            total=len(self._items),
            due=sum(1 for item in self._items if item.is_due(at)),
            mastered=sum(1 for item in self._items if item.stage > 0),
            unsynced=sum(1 for item in self._items if item.sync_state is SyncState.unsynced),
        )

    async def load_owner_collection(self, owner: Owner) -> list[MemoryItem]:
        """Activate ``owner`` and replace the collection with its stored items.

        - 所有者が変わる場合は保留中の確定応答を待たずに切り替え、古い応答は破棄する
        - 同じ所有者の再読み込みは保留中の書き込みが終わってから行う
        - 読み込み失敗時、切り替えなら空のコレクション、再読み込みなら直前の状態を保つ
        - 読み込みに成功するまで loaded は False のままで、呼び出し側は再試行できる
        """

        switching = owner != self._owner
        if not switching:
            await self.wait_for_pending()

        self._generation += 1
        generation = self._generation
        previous = list(self._items)
        was_loaded = self._loaded
        self._owner = owner
        self._items = []
        self._loaded = False
        self._reset_bookkeeping()
        if switching:
            logger.info("memory_owner_switched", owner=owner.kind, generation=generation)

        try:
            store = self._store_for(owner)
            loaded: list[MemoryItem] = await _run_store_call(store.list_items, owner)
        except StoreError as exc:
            logger.error(
                "memory_owner_load_failed",
                owner=owner.kind,
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            if not switching and not self._is_stale(generation):
                self._items = previous + self._items
                self._loaded = was_loaded
            raise

        if self._is_stale(generation):
            logger.info("memory_owner_load_superseded", owner=owner.kind, generation=generation)
            return list(self._items)

        dropped = sum(1 for item in previous if item.sync_state is SyncState.unsynced)
        if not switching and dropped:
            logger.warning("memory_unsynced_dropped", owner=owner.kind, count=dropped)

        # 読み込み中に追加されたアイテムはストア側の結果に含まれていなければ残す
        loaded_ids = {item.id for item in loaded}
        captured_meanwhile = [item for item in self._items if item.id not in loaded_ids]
        self._items = list(loaded) + captured_meanwhile
        self._loaded = True
        logger.info("memory_owner_loaded", owner=owner.kind, count=len(loaded))
        return list(self._items)

    async def switch_account(self, account_id: str | None) -> list[MemoryItem]:
        """Reload for a sign-in (account id) or sign-out (None)."""

        return await self.load_owner_collection(owner_for_account(account_id))

    async def migrate_local_to_cloud(self, confirmed: bool) -> MigrationResult:
        """Copy the local collection into the signed-in account, then clear it.

        ローカル側の削除は一括作成が成功した後にだけ行う。失敗時はローカルの
        データに手を付けずにエラーを送出する。
        """

        owner = self._owner
        if not owner.is_authenticated:
            raise ValidationError("sign in before migrating the local collection")
        if not confirmed:
            raise ValidationError("migration requires explicit confirmation")

        cloud_store = self._store_for(owner)
        # サインイン直前に追加したアイテムの作成がローカルへ届いてから読む
        await self.wait_for_pending()
        local_items: list[MemoryItem] = await _run_store_call(
            self._local_store.list_items, LOCAL_OWNER
        )
        if not local_items:
            logger.info("memory_migration_skipped", reason="empty_local_collection")
            return MigrationResult(migrated=0)

        drafts = [item.to_draft() for item in local_items]
        try:
            created: list[MemoryItem] = await _run_store_call(cloud_store.bulk_create, owner, drafts)
        except StoreError as exc:
            logger.error(
                "memory_migration_failed",
                stage="bulk_create",
                requested=len(drafts),
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            raise

        try:
            await _run_store_call(self._local_store.clear_owner, LOCAL_OWNER)
        except StoreError as exc:
            # クラウドには既に複製済み。再実行すると重複するためログに残す
            logger.error(
                "memory_migration_failed",
                stage="clear_local",
                migrated=len(created),
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            raise StoreWriteError(
                f"items were copied to the account but the local collection could not be cleared: {exc}"
            ) from exc

        logger.info("memory_migration_completed", migrated=len(created))
        if self._owner == owner:
            await self.load_owner_collection(owner)
        return MigrationResult(migrated=len(created), items=tuple(created))

    async def resync_unsynced(self) -> int:
        """Retry the durable write of every unsynced item once.

        仮 ID のままのアイテムは作成し直し、確定済みのものは現在の
        stage/next_review_at で更新する。成功した件数を返す。
        """

        owner, generation = self._owner, self._generation
        targets = [item for item in self._items if item.sync_state is SyncState.unsynced]
        resynced = 0
        for target in targets:
            key = self._key_for(target.id)
            async with self._lock_for(key):
                if self._is_stale(generation):
                    break
                current = self._item_for_key(key)
                if current is None or current.sync_state is not SyncState.unsynced:
                    continue
                try:
                    store = self._store_for(owner)
                    if current.provisional:
                        created = await _run_store_call(store.create_item, owner, current.to_draft())
                    else:
                        created = None
                        await _run_store_call(
                            store.update_item, owner, current.id, current.stage, current.next_review_at
                        )
                except StoreError as exc:
                    logger.warning(
                        "memory_resync_failed",
                        item_id=current.id,
                        error=str(exc),
                        error_class=exc.__class__.__name__,
                    )
                    continue
                if self._is_stale(generation):
                    break
                if created is not None:
                    self._reconcile_created(key, created)
                self._failed.discard(key)
                if self._inflight.get(key, 0) == 0:
                    item = self._item_for_key(key)
                    if item is not None:
                        self._set_sync_state(item.id, SyncState.confirmed)
                resynced += 1

        logger.info("memory_resync_completed", resynced=resynced, attempted=len(targets))
        return resynced

    async def wait_for_pending(self) -> None:
        """Await every in-flight background confirmation."""

        while True:
            pending: list[Awaitable[None]] = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending)
