from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from ..errors import StoreUnavailable, StoreWriteError
from ..id_factory import generate_local_item_id
from ..logging import logger
from ..models import DEFAULT_CONTEXT, MemoryItem, MemoryItemDraft
from ..owner import Owner
from ..srs import RetentionSchedule, default_schedule, now_ms
from .common import normalize_epoch_ms, normalize_stage


_SELECT_COLUMNS = "id, text, translation, context, stage, next_review_at, created_at"


class LocalSQLiteStore:
    """SQLite-backed persistence for the on-device memory collection.

    - 行は owner_id 列でパーティション分割し、list/update/clear は常に owner で絞り込む
    - id は作成時にタイムスタンプ由来のトークン（local:...）を採番する
    - created_at / next_review_at はエポックミリ秒の整数で保存する
    """

    def __init__(self, db_path: str, schedule: RetentionSchedule = default_schedule) -> None:
        self.db_path = db_path
        self._schedule = schedule
        self._ensure_dirs()
        self._init_db()

    # --- low-level helpers ---
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=10.0, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        with conn:  # autocommit on pragma
            conn.execute("pragma journal_mode=WAL;")
            conn.execute("pragma foreign_keys=ON;")
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        try:
            with self._conn() as conn:
                with conn:
                    self._ensure_memory_items_table(conn)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"local store could not be initialised: {exc}") from exc

    def _ensure_memory_items_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_items (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                text TEXT NOT NULL,
                translation TEXT,
                context TEXT NOT NULL,
                stage INTEGER NOT NULL DEFAULT 0,
                next_review_at INTEGER NOT NULL,
                created_at INTEGER NOT NULL
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_memory_items_owner_due ON memory_items(owner_id, next_review_at);"
        )

    def _row_to_item(self, row: sqlite3.Row) -> MemoryItem:
        return MemoryItem(
            id=str(row["id"]),
            text=str(row["text"]),
            translation=row["translation"],
            context=str(row["context"] or DEFAULT_CONTEXT),
            added_at=normalize_epoch_ms(row["created_at"]),
            next_review_at=normalize_epoch_ms(row["next_review_at"]),
            stage=normalize_stage(row["stage"], self._schedule),
        )

    def _insert(self, conn: sqlite3.Connection, owner: Owner, draft: MemoryItemDraft, created_at: int) -> MemoryItem:
        item = MemoryItem(
            id=generate_local_item_id(),
            text=draft.text,
            translation=draft.translation,
            context=draft.context or DEFAULT_CONTEXT,
            added_at=created_at,
            next_review_at=int(draft.next_review_at),
            stage=normalize_stage(draft.stage, self._schedule),
        )
        conn.execute(
            """
            INSERT INTO memory_items (id, owner_id, text, translation, context, stage, next_review_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                item.id,
                owner.owner_id,
                item.text,
                item.translation,
                item.context,
                item.stage,
                item.next_review_at,
                item.added_at,
            ),
        )
        return item

    # --- public API ---
    def list_items(self, owner: Owner) -> list[MemoryItem]:
        try:
            with self._conn() as conn:
                cur = conn.execute(
                    f"SELECT {_SELECT_COLUMNS} FROM memory_items WHERE owner_id = ? "
                    "ORDER BY next_review_at ASC, created_at ASC, id ASC;",
                    (owner.owner_id,),
                )
                rows = cur.fetchall()
        except sqlite3.Error as exc:
            logger.error("local_store_read_failed", owner=owner.kind, error=str(exc))
            raise StoreUnavailable(f"local store could not be read: {exc}") from exc
        return [self._row_to_item(row) for row in rows]

    def create_item(self, owner: Owner, draft: MemoryItemDraft) -> MemoryItem:
        try:
            with self._conn() as conn:
                with conn:
                    return self._insert(conn, owner, draft, now_ms())
        except sqlite3.Error as exc:
            logger.error("local_store_write_failed", op="create", error=str(exc))
            raise StoreWriteError(f"local store create failed: {exc}") from exc

    def update_item(self, owner: Owner, item_id: str, stage: int, next_review_at: int) -> None:
        try:
            with self._conn() as conn:
                with conn:
                    cur = conn.execute(
                        "UPDATE memory_items SET stage = ?, next_review_at = ? WHERE id = ? AND owner_id = ?;",
                        (normalize_stage(stage, self._schedule), int(next_review_at), item_id, owner.owner_id),
                    )
                    updated = cur.rowcount
        except sqlite3.Error as exc:
            logger.error("local_store_write_failed", op="update", item_id=item_id, error=str(exc))
            raise StoreWriteError(f"local store update failed: {exc}") from exc
        if updated == 0:
            raise StoreWriteError(f"memory item not found in local store: {item_id}")

    def bulk_create(self, owner: Owner, drafts: Sequence[MemoryItemDraft]) -> list[MemoryItem]:
        created_at = now_ms()
        try:
            with self._conn() as conn:
                # isolation_level=None（autocommit）のため明示的に BEGIN する。
                # 途中で失敗した場合は 1 件も残さない。
                conn.execute("BEGIN IMMEDIATE;")
                try:
                    created = [self._insert(conn, owner, draft, created_at) for draft in drafts]
                except sqlite3.Error:
                    conn.execute("ROLLBACK;")
                    raise
                conn.execute("COMMIT;")
                return created
        except sqlite3.Error as exc:
            logger.error("local_store_write_failed", op="bulk_create", count=len(drafts), error=str(exc))
            raise StoreWriteError(f"local store bulk create failed: {exc}") from exc

    def clear_owner(self, owner: Owner) -> int:
        try:
            with self._conn() as conn:
                with conn:
                    cur = conn.execute(
                        "DELETE FROM memory_items WHERE owner_id = ?;",
                        (owner.owner_id,),
                    )
                    return cur.rowcount
        except sqlite3.Error as exc:
            logger.error("local_store_write_failed", op="clear", error=str(exc))
            raise StoreWriteError(f"local store clear failed: {exc}") from exc
