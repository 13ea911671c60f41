"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Request

from .auth import session_account_id
from .owner import owner_for_account
from .scheduler import MemoryScheduler
from .store.base import MemoryStore


async def get_scheduler(request: Request) -> MemoryScheduler:
    """Return the app scheduler, reloaded for the caller's session owner.

    セッションから解決した所有者がアクティブな所有者と異なる場合は
    コレクションを丸ごと読み込み直す（サインイン/サインアウトの反映）。
    直前の読み込みが失敗していた場合も読み込みを再試行し、失敗は
    StoreUnavailable として呼び出し側へ伝える。
    """

    scheduler: MemoryScheduler = request.app.state.scheduler
    owner = owner_for_account(session_account_id(request))
    if owner != scheduler.owner or not scheduler.loaded:
        await scheduler.load_owner_collection(owner)
    return scheduler


def get_local_store(request: Request) -> MemoryStore:
    return request.app.state.local_store
