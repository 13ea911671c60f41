"""セッショントークンとセッションからの所有者解決を検証するテスト。"""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi import HTTPException
from itsdangerous import BadSignature
from starlette.requests import Request

from memorybank.auth import (
    issue_session_token,
    read_session_cookie,
    require_account,
    session_account_id,
    verify_session_token,
)
from memorybank.config import settings
from memorybank.logging import configure_logging


@pytest.fixture(autouse=True)
def _configure_structlog() -> None:
    """Structlog を JSON 出力に統一し、caplog で検証しやすくする。"""

    configure_logging()


def _structlog_events(caplog: pytest.LogCaptureFixture, event: str) -> list[dict[str, object]]:
    matches: list[dict[str, object]] = []
    for record in caplog.records:
        try:
            payload = json.loads(record.getMessage())
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(payload, dict) and payload.get("event") == event:
            matches.append(payload)
    return matches


def _build_request(cookie_header: str | None = None, path: str = "/api/memory/items") -> Request:
    headers = [(b"host", b"testserver"), (b"user-agent", b"pytest-agent")]
    if cookie_header:
        headers.append((b"cookie", cookie_header.encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": headers,
        "query_string": b"",
        "client": ("203.0.113.5", 12345),
        "server": ("testserver", 80),
        "scheme": "http",
        "app": None,
    }
    request = Request(scope)
    request.state.request_id = "req-123"
    return request


def test_issued_token_round_trips_subject() -> None:
    token = issue_session_token("sub-123")

    payload = verify_session_token(token)

    assert payload["sub"] == "sub-123"
    assert payload["sid"]


def test_token_signed_with_other_secret_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    token = issue_session_token("sub-123")
    monkeypatch.setattr(settings, "session_secret_key", "another-secret-value-with-32-chars!")

    with pytest.raises(BadSignature):
        verify_session_token(token)


def test_session_account_id_reads_valid_cookie() -> None:
    token = issue_session_token("sub-abc")
    request = _build_request(f"{settings.session_cookie_name}={token}")

    assert session_account_id(request) == "sub-abc"
    assert request.state.user_id == "sub-abc"


def test_missing_cookie_means_guest_without_warning(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level("INFO")

    assert session_account_id(_build_request()) is None
    assert _structlog_events(caplog, "session_validation_failed") == []


def test_tampered_cookie_means_guest_and_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level("INFO")
    request = _build_request(f"{settings.session_cookie_name}=forged.value")

    assert session_account_id(request) is None

    (event,) = _structlog_events(caplog, "session_validation_failed")
    assert event["reason"] == "bad_signature"
    assert event["request_id"] == "req-123"
    assert event["client_ip"] == "203.0.113.5"


def test_require_account_rejects_guests_with_401() -> None:
    with pytest.raises(HTTPException) as exc:
        asyncio.run(require_account(_build_request()))

    assert exc.value.status_code == 401


def test_require_account_returns_subject() -> None:
    token = issue_session_token("sub-xyz")

    assert asyncio.run(require_account(_build_request(f"{settings.session_cookie_name}={token}"))) == "sub-xyz"


def test_session_cookie_survives_malformed_neighbour_cookie() -> None:
    """g_state のような非 RFC 準拠 Cookie が混在してもセッションは読める。"""

    token = issue_session_token("sub-1")
    header = f'g_state={{"i_l":0}}; {settings.session_cookie_name}={token}'

    assert read_session_cookie(_build_request(header), settings.session_cookie_name) == token
