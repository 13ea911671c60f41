from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import HTTPException, Request, status
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import settings
from .logging import logger

_SESSION_SALT = "memorybank.session"


class SessionError(Exception):
    """Session cookie could not be turned into an account id."""

    def __init__(self, reason: str, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


def _build_serializer() -> URLSafeTimedSerializer:
    """Construct a serializer for signing and verifying session tokens."""

    secret = settings.session_secret_key.strip()
    if not secret:
        raise RuntimeError("SESSION_SECRET_KEY is not configured")
    return URLSafeTimedSerializer(secret, salt=_SESSION_SALT)


def session_max_age() -> int:
    """Return the configured session lifetime in seconds."""

    try:
        max_age = int(getattr(settings, "session_max_age_seconds", 0))
    except (TypeError, ValueError):  # pragma: no cover - defensive fallback
        max_age = 0
    return max(60, max_age or 60 * 60 * 24 * 14)


def issue_session_token(google_sub: str) -> str:
    """Generate a signed session token tied to the Google subject identifier."""

    serializer = _build_serializer()
    payload = {
        "sid": uuid.uuid4().hex,
        "sub": google_sub,
        "issued_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
    }
    return serializer.dumps(payload)


def verify_session_token(token: str) -> dict:
    """Decode a signed session token and return the embedded payload."""

    serializer = _build_serializer()
    return serializer.loads(token, max_age=session_max_age())


def _session_log_context(
    request: Request, *, reason: str, user_id: str | None
) -> dict[str, object]:
    """Compose structured log context aligned with the access log fields."""

    client_ip = request.client.host if request.client else "unknown"
    return {
        "user_id": user_id,
        "reason": reason,
        "path": request.url.path,
        "client_ip": client_ip,
        "user_agent": request.headers.get("user-agent"),
        "request_id": getattr(request.state, "request_id", None),
    }


def read_session_cookie(request: Request, cookie_name: str) -> str | None:
    """Read the session cookie even when other cookies are not RFC compliant.

    Google Identity Services の `g_state` などが Cookie ヘッダーを壊していると
    `request.cookies` が空になるため、その場合は生のヘッダーを手動で分解する。
    """

    value = request.cookies.get(cookie_name)
    if value:
        return value

    raw_header = request.headers.get("cookie")
    if not raw_header:
        return None
    for part in raw_header.split(";"):
        part = part.strip()
        if not part or "=" not in part:
            continue
        name, raw_value = part.split("=", 1)
        if name.strip() == cookie_name:
            return raw_value.strip()
    return None


def _account_from_cookie(request: Request) -> str:
    raw_token = read_session_cookie(request, settings.session_cookie_name or "mb_session")
    if not raw_token:
        raise SessionError("missing_cookie", "Session cookie is missing")
    try:
        payload = verify_session_token(raw_token)
    except SignatureExpired as exc:
        raise SessionError("expired", "Session expired") from exc
    except BadSignature as exc:
        raise SessionError("bad_signature", "Invalid session token") from exc

    sub = payload.get("sub") if isinstance(payload, dict) else None
    if not sub:
        raise SessionError("missing_sub", "Invalid session payload")
    return str(sub)


def session_account_id(request: Request) -> str | None:
    """Return the signed-in account id, or None for guests.

    無効なセッションはゲスト扱い（ローカルコレクション）とし、理由をログに残す。
    """

    try:
        account_id = _account_from_cookie(request)
    except SessionError as exc:
        if exc.reason != "missing_cookie":
            logger.warning(
                "session_validation_failed",
                **_session_log_context(request, reason=exc.reason, user_id=None),
            )
        return None
    request.state.user_id = account_id
    return account_id


async def require_account(request: Request) -> str:
    """FastAPI dependency: reject requests without a valid session with 401."""

    try:
        account_id = _account_from_cookie(request)
    except SessionError as exc:
        logger.warning(
            "session_validation_failed",
            **_session_log_context(request, reason=exc.reason, user_id=None),
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.detail,
        ) from exc
    request.state.user_id = account_id
    return account_id
