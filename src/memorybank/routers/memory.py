from __future__ import annotations

from http import HTTPStatus

from fastapi import APIRouter, Depends

from ..auth import require_account
from ..dependencies import get_scheduler
from ..models.api import (
    CaptureRequest,
    MemoryItemOut,
    MemoryListResponse,
    MemoryStatsResponse,
    MigrateRequest,
    MigrateResponse,
    ResyncResponse,
    ReviewRequest,
)
from ..scheduler import MemoryScheduler

router = APIRouter(tags=["memory"])


@router.post(
    "/capture",
    response_model=MemoryItemOut,
    status_code=HTTPStatus.CREATED,
)
async def capture(
    req: CaptureRequest,
    scheduler: MemoryScheduler = Depends(get_scheduler),
) -> MemoryItemOut:
    """Add a captured fragment to the active collection.

    アイテムは仮 ID で即座に返り、ストアへの保存はバックグラウンドで行われる。
    保存の失敗は以後の一覧で sync_state="unsynced" として見える。
    """

    item = await scheduler.add_item(req.text, context=req.context, translation=req.translation)
    return MemoryItemOut.from_item(item)


@router.post("/review", response_model=MemoryItemOut)
async def review(
    req: ReviewRequest,
    scheduler: MemoryScheduler = Depends(get_scheduler),
) -> MemoryItemOut:
    item = await scheduler.review_item(req.item_id, req.remembered)
    return MemoryItemOut.from_item(item)


@router.get("/items", response_model=MemoryListResponse)
async def list_items(scheduler: MemoryScheduler = Depends(get_scheduler)) -> MemoryListResponse:
    return MemoryListResponse(
        owner=scheduler.owner.kind,
        items=[MemoryItemOut.from_item(item) for item in scheduler.items],
    )


@router.get("/due", response_model=MemoryListResponse)
async def due_items(scheduler: MemoryScheduler = Depends(get_scheduler)) -> MemoryListResponse:
    """Items whose next review time has passed, earliest first."""

    return MemoryListResponse(
        owner=scheduler.owner.kind,
        items=[MemoryItemOut.from_item(item) for item in scheduler.get_due_items()],
    )


@router.get("/stats", response_model=MemoryStatsResponse)
async def stats(scheduler: MemoryScheduler = Depends(get_scheduler)) -> MemoryStatsResponse:
    return MemoryStatsResponse.from_stats(scheduler.owner.kind, scheduler.stats())


@router.post(
    "/migrate",
    response_model=MigrateResponse,
    dependencies=[Depends(require_account)],
)
async def migrate(
    req: MigrateRequest,
    scheduler: MemoryScheduler = Depends(get_scheduler),
) -> MigrateResponse:
    """Move the on-device collection into the signed-in account (one shot)."""

    result = await scheduler.migrate_local_to_cloud(confirmed=req.confirm)
    return MigrateResponse(
        migrated=result.migrated,
        items=[MemoryItemOut.from_item(item) for item in result.items],
    )


@router.post("/resync", response_model=ResyncResponse)
async def resync(scheduler: MemoryScheduler = Depends(get_scheduler)) -> ResyncResponse:
    resynced = await scheduler.resync_unsynced()
    return ResyncResponse(resynced=resynced, unsynced=scheduler.stats().unsynced)
