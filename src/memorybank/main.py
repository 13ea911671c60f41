from __future__ import annotations

from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from . import store as store_module
from .config import settings
from .errors import ItemNotFound, StoreError, StoreUnavailable, StoreWriteError, ValidationError
from .logging import configure_logging, logger
from .middleware import AccessLogMiddleware, RequestIDMiddleware
from .owner import LOCAL_OWNER
from .routers import auth as auth_router
from .routers import backup as backup_router
from .routers import health
from .routers import memory as memory_router
from .scheduler import MemoryScheduler
from .srs import RetentionSchedule


def build_scheduler() -> MemoryScheduler:
    """Wire the app-wide scheduler to the configured stores.

    on_store_error は渡さない。HTTP アプリではバックグラウンド書き込みの
    失敗を memory_create_failed / memory_update_failed のログと、
    アイテムの sync_state="unsynced"（/api/memory/stats の unsynced 件数）で知らせる。
    """

    return MemoryScheduler(
        store_module.get_local_store(),
        store_module.get_cloud_store(),
        schedule=RetentionSchedule.from_days(settings.memory_intervals_days),
        default_context=settings.memory_default_context,
    )


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    scheduler = build_scheduler()
    app.state.scheduler = scheduler
    app.state.local_store = store_module.get_local_store()
    app.state.cloud_store = store_module.get_cloud_store()
    try:
        await scheduler.load_owner_collection(LOCAL_OWNER)
    except StoreError as exc:
        # 起動は継続し、次のリクエストで読み込みを再試行する
        logger.warning("memory_initial_load_failed", error=str(exc))
    logger.info(
        "app_started",
        environment=settings.environment,
        cloud_store=app.state.cloud_store is not None,
        intervals_days=list(scheduler.schedule.intervals_days),
    )
    try:
        yield
    finally:
        # 未確定の書き込みを失わないよう、終了前に確定を待つ
        await scheduler.wait_for_pending()
        logger.info("app_stopped")


def _error_response(status: HTTPStatus, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": str(exc)})


def _register_exception_handlers(app: FastAPI) -> None:
    """Map the memory bank error taxonomy onto HTTP status codes."""

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(HTTPStatus.UNPROCESSABLE_ENTITY, exc)

    @app.exception_handler(ItemNotFound)
    async def _not_found(request: Request, exc: ItemNotFound) -> JSONResponse:
        return _error_response(HTTPStatus.NOT_FOUND, exc)

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
        logger.warning("store_unavailable", path=request.url.path, error=str(exc))
        return _error_response(HTTPStatus.SERVICE_UNAVAILABLE, exc)

    @app.exception_handler(StoreWriteError)
    async def _store_write_error(request: Request, exc: StoreWriteError) -> JSONResponse:
        logger.warning("store_write_failed", path=request.url.path, error=str(exc))
        return _error_response(HTTPStatus.BAD_GATEWAY, exc)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    configure_logging()
    app = FastAPI(title="Memory Bank API", version="0.1.0", lifespan=_lifespan)

    configured_origins = list(settings.allowed_cors_origins)
    allow_credentials = bool(configured_origins)
    if not configured_origins:
        configured_origins = ["*"]

    # ワイルドカード許可時はクレデンシャル付き CORS を無効化する
    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Starlette では後から追加したミドルウェアが外側で実行される（RequestID → AccessLog）
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)

    _register_exception_handlers(app)

    app.include_router(auth_router.router, prefix="/api/auth")
    app.include_router(memory_router.router, prefix="/api/memory")
    app.include_router(backup_router.router, prefix="/api/backup")
    app.include_router(health.router)

    return app


app = create_app()
