from __future__ import annotations

from functools import partial

import anyio
from fastapi import APIRouter, Depends

from ..backup import export_backup, import_backup
from ..dependencies import get_local_store, get_scheduler
from ..models.api import BackupImportRequest, BackupImportResponse
from ..owner import LOCAL_OWNER
from ..scheduler import MemoryScheduler
from ..store.base import MemoryStore

router = APIRouter(tags=["backup"])


@router.get("/export")
async def export(store: MemoryStore = Depends(get_local_store)) -> dict:
    """Download the on-device collection as a JSON document."""

    return await anyio.to_thread.run_sync(partial(export_backup, store))


@router.post("/import", response_model=BackupImportResponse)
async def restore(
    req: BackupImportRequest,
    store: MemoryStore = Depends(get_local_store),
    scheduler: MemoryScheduler = Depends(get_scheduler),
) -> BackupImportResponse:
    """Overwrite the on-device collection with an uploaded backup.

    ゲスト（ローカル）表示中なら復元後にコレクションを読み込み直す。
    """

    # 読み込み直す前に、旧データへの書き込みが終わるのを待つ
    await scheduler.wait_for_pending()
    restored = await anyio.to_thread.run_sync(
        partial(import_backup, store, req.backup, confirmed=req.confirm)
    )
    if scheduler.owner == LOCAL_OWNER:
        await scheduler.load_owner_collection(LOCAL_OWNER)
    return BackupImportResponse(restored=restored)
