from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from functools import partial
from http import HTTPStatus

import anyio
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pydantic import BaseModel, Field

from ..auth import issue_session_token, session_max_age
from ..config import settings
from ..logging import logger
from ..scheduler import MemoryScheduler

router = APIRouter(tags=["auth"])
_google_request = google_requests.Request()


class GoogleAuthRequest(BaseModel):
    """Payload containing a Google-issued ID token from the frontend."""

    id_token: str = Field(..., description="Google ID token generated on the client")


class GoogleAuthResponse(BaseModel):
    """Response carrying the persisted user profile and the active owner."""

    user: dict[str, str]
    owner: str
    items: int


def _hash_for_log(value: str | None) -> str | None:
    """Hash sensitive identifiers before logging to avoid leaking PII."""

    if not value:
        return None
    digest = hashlib.sha256(value.lower().encode("utf-8")).hexdigest()
    return digest[:12]


def _verify_google_token(raw_token: str) -> dict:
    skew = max(0, int(settings.google_clock_skew_seconds or 0))
    return id_token.verify_oauth2_token(
        raw_token,
        _google_request,
        settings.google_client_id,
        clock_skew_in_seconds=skew,
    )


@router.post("/google", response_model=GoogleAuthResponse)
async def authenticate_with_google(payload: GoogleAuthRequest, request: Request) -> JSONResponse:
    """Verify a Google ID token, record the user, issue a session and load their collection."""

    if not settings.google_client_id:
        logger.error("google_auth_failed", user_id=None, reason="missing_client_id")
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Google authentication is not configured",
        )
    user_store = request.app.state.cloud_store
    if user_store is None:
        logger.error("google_auth_failed", user_id=None, reason="cloud_store_disabled")
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Account storage is not available",
        )

    try:
        id_info = _verify_google_token(payload.id_token)
    except ValueError as exc:
        logger.warning(
            "google_auth_failed",
            user_id=None,
            reason="invalid_token",
            error=repr(exc),
        )
        raise HTTPException(status_code=HTTPStatus.UNAUTHORIZED, detail="Invalid ID token") from exc

    google_sub = id_info.get("sub")
    email = id_info.get("email")
    display_name = id_info.get("name") or email
    if not google_sub or not email:
        logger.warning(
            "google_auth_failed",
            user_id=google_sub,
            reason="missing_claims",
            email_hash=_hash_for_log(email),
        )
        raise HTTPException(
            status_code=HTTPStatus.UNAUTHORIZED,
            detail="ID token is missing required claims",
        )

    user = await anyio.to_thread.run_sync(
        partial(
            user_store.record_user_login,
            google_sub=google_sub,
            email=email,
            display_name=display_name,
            login_at=datetime.now(UTC),
        )
    )
    session_token = issue_session_token(google_sub)

    # サインインはコレクション所有者の切り替えイベント
    scheduler: MemoryScheduler = request.app.state.scheduler
    items = await scheduler.switch_account(google_sub)

    response = JSONResponse(
        status_code=HTTPStatus.OK,
        content={"user": user, "owner": scheduler.owner.kind, "items": len(items)},
    )
    response.set_cookie(
        key=settings.session_cookie_name or "mb_session",
        value=session_token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        max_age=session_max_age(),
    )
    request.state.user_id = google_sub
    logger.info(
        "google_auth_succeeded",
        user_id=google_sub,
        reason="authenticated",
        email_hash=_hash_for_log(email),
        display_name_hash=_hash_for_log(display_name),
    )
    return response


@router.post("/logout")
async def logout(request: Request) -> JSONResponse:
    """Drop the session cookie and switch back to the on-device collection."""

    scheduler: MemoryScheduler = request.app.state.scheduler
    items = await scheduler.switch_account(None)
    response = JSONResponse(
        status_code=HTTPStatus.OK,
        content={"owner": scheduler.owner.kind, "items": len(items)},
    )
    response.delete_cookie(
        key=settings.session_cookie_name or "mb_session",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )
    logger.info("session_logged_out", user_id=getattr(request.state, "user_id", None))
    return response
