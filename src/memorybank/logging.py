"""Structured logging for the memory bank service.

structlog を標準 logging の上に載せ、1 行 1 JSON で出力する。
セッション Cookie・ID トークン・署名鍵がログに残らないよう、レンダリング
直前のプロセッサでキー名と既知の値の両方からマスクする。
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import structlog
from structlog import contextvars as structlog_contextvars

from .config import settings

_SECRET_KEY_PARTS = ("token", "secret", "cookie", "authorization", "password", "api_key")
_HIDDEN = "***"


def _mask(raw: object) -> str:
    # 9 文字以上なら先頭と末尾 4 文字だけ残す
    text = "" if raw is None else str(raw).strip()
    if len(text) <= 8:
        return _HIDDEN
    return f"{text[:4]}…{text[-4:]}"


def _looks_secret(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SECRET_KEY_PARTS)


def _known_secrets() -> tuple[str, ...]:
    return tuple(value for value in (settings.session_secret_key,) if value)


class _SecretMasker:
    """Rewrite one event dict so no secret value reaches the renderer."""

    def __init__(self, literals: Iterable[str]) -> None:
        self._literals = tuple(literals)

    def _scrub_text(self, text: str) -> str:
        for literal in self._literals:
            text = text.replace(literal, _mask(literal))
        return text

    def clean(self, value: Any, key: str | None = None) -> Any:
        if isinstance(value, dict):
            return {k: self.clean(v, str(k)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.clean(v, key) for v in value]
        secret_key = key is not None and _looks_secret(key)
        if isinstance(value, str):
            value = self._scrub_text(value)
            return _mask(value) if secret_key else value
        return _mask(value) if secret_key else value


def _mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    masker = _SecretMasker(_known_secrets())
    return {key: masker.clean(value, str(key)) for key, value in event_dict.items()}


def _init_sentry() -> None:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.logging import LoggingIntegration
    except ImportError:
        logger.warning("sentry_unavailable", reason="sentry_sdk_not_installed")
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
    )


def configure_logging() -> None:
    """Configure stdlib logging and structlog for JSON output.

    何度呼んでもハンドラが重複しないよう basicConfig(force=True) で
    初期化し直す。SENTRY_DSN があれば ERROR 以上を Sentry に送る。
    """

    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    structlog.configure(
        processors=[
            structlog_contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _mask_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    if settings.sentry_dsn:
        _init_sentry()


logger = structlog.get_logger()
