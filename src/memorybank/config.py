from typing import Annotated

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources.types import NoDecode

from .srs import DEFAULT_INTERVALS_DAYS


DEFAULT_DB_PATH = ".data/memorybank.sqlite3"
_MIN_SESSION_SECRET_KEY_LENGTH = 32
_PLACEHOLDER_SESSION_SECRETS = frozenset({
    "change-me",
    "changeme",
    "change-me-to-random-value",
    "please-change-me",
})


def _split_csv(raw: object) -> list[object] | None:
    """カンマ区切り文字列/シーケンスを候補リストへ展開する（不正型は None）。"""

    if raw is None:
        return []
    if isinstance(raw, str):
        return raw.split(",")
    try:
        return list(raw)  # type: ignore[call-overload]
    except TypeError:
        return None


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれるアプリ設定クラス。
    - environment: 実行環境（development/staging/production など）
    - memory_intervals_days: 復習間隔テーブル（日数、stage の添字に対応）
    - local_db_path: ローカル（端末側）コレクションの SQLite パス
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )

    # --- 復習スケジュール ---
    memory_intervals_days: Annotated[tuple[int, ...], NoDecode] = Field(
        default=DEFAULT_INTERVALS_DAYS,
        description=(
            "Retention intervals in days, indexed by stage (comma separated) / "
            "stage ごとの復習間隔（日数・カンマ区切り）"
        ),
        validation_alias=AliasChoices("memory_intervals_days", "memory_intervals"),
    )
    memory_default_context: str = Field(
        default="General",
        description="Context label used when capture omits one / 取得元ラベルの既定値",
    )

    # --- データ永続化設定 ---
    local_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SQLite database for the local collection / ローカル保存用SQLite DBパス",
    )
    disable_cloud_store: bool = Field(
        default=False,
        description="Run without Firestore (local collection only) / Firestore を使わずローカルのみで動作",
    )
    memory_collection_name: str = Field(
        default="memory_items",
        description="Firestore collection holding memory items / 記憶アイテムのコレクション名",
    )
    firestore_project_id: str | None = Field(
        default=None,
        description="Firestore project ID / Firestore のプロジェクトID",
        validation_alias=AliasChoices("firestore_project_id", "gcp_project_id", "google_cloud_project"),
    )
    firestore_emulator_host: str | None = Field(
        default=None,
        description="Firestore emulator host (host:port) / Firestore エミュレータのホスト",
    )

    # --- 認証 ---
    google_client_id: str = Field(
        default="",
        description="Google OAuth client ID / Googleサインイン用クライアントID",
    )
    google_clock_skew_seconds: int = Field(
        default=60,
        description=(
            "Allowed clock skew when verifying Google ID tokens (seconds) / "
            "Google ID トークン検証時に許容する時計ずれ（秒）"
        ),
    )
    session_secret_key: str = Field(
        default="",
        description="Secret key for signing session cookies / セッションクッキー署名用シークレット",
    )
    session_cookie_name: str = Field(
        default="mb_session",
        description="Session cookie name / セッションクッキー名",
    )
    session_cookie_secure: bool = Field(
        default=False,
        description="Whether to mark session cookie as Secure / セッションクッキーにSecure属性を付与するか",
    )
    session_max_age_seconds: int = Field(
        default=60 * 60 * 24 * 14,
        description="Session lifetime in seconds / セッションの寿命（秒）",
    )

    # --- Operations/Observability ---
    allowed_cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description=(
            "Comma separated CORS origins / CORS で許可するオリジンのカンマ区切り一覧"
        ),
        validation_alias=AliasChoices("allowed_cors_origins", "cors_allowed_origins"),
    )
    sentry_dsn: str | None = Field(
        default=None, description="Sentry DSN (enable if set)"
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: .env に存在する未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("session_secret_key", mode="after")
    @classmethod
    def _validate_session_secret(
        cls, value: str
    ) -> str:
        """Reject empty, placeholder or short session secrets.

        セッション署名鍵は空・既知のプレースホルダー・32文字未満のいずれも受け付けない。
        """

        secret = (value or "").strip()
        if not secret:
            raise ValueError(
                "SESSION_SECRET_KEY must be a non-empty random string",
            )

        if secret.casefold() in _PLACEHOLDER_SESSION_SECRETS:
            raise ValueError(
                "SESSION_SECRET_KEY must not use placeholder values like 'change-me'",
            )

        if len(secret) < _MIN_SESSION_SECRET_KEY_LENGTH:
            raise ValueError(
                "SESSION_SECRET_KEY must be at least 32 characters long",
            )

        return secret

    @field_validator("memory_intervals_days", mode="before")
    @classmethod
    def _parse_intervals(cls, raw_intervals: object) -> tuple[int, ...] | object:
        """Parse the interval table into a tuple of positive day counts.

        `1,2,4,7,15` のような文字列でも、数値のシーケンスでも受け付ける。
        順序は stage の添字そのものなので並べ替えない。
        """

        candidates = _split_csv(raw_intervals)
        if candidates is None:
            return raw_intervals

        intervals: list[int] = []
        for candidate in candidates:
            text = str(candidate).strip()
            if not text:
                continue
            try:
                days = int(text)
            except ValueError as exc:
                raise ValueError(
                    f"MEMORY_INTERVALS_DAYS contains a non-integer value: {text!r}",
                ) from exc
            if days <= 0:
                raise ValueError("MEMORY_INTERVALS_DAYS values must be positive")
            intervals.append(days)

        if not intervals:
            raise ValueError("MEMORY_INTERVALS_DAYS must contain at least one interval")
        return tuple(intervals)

    @field_validator("allowed_cors_origins", mode="before")
    @classmethod
    def _normalise_allowed_cors_origins(
        cls, raw_origins: object
    ) -> tuple[str, ...] | object:  # pragma: no cover - pydantic handles typing
        """Convert environment input into a deduplicated tuple of origins."""

        candidates = _split_csv(raw_origins)
        if candidates is None:
            return raw_origins

        normalised: list[str] = []
        seen: set[str] = set()
        for candidate in candidates:
            if not isinstance(candidate, str):
                continue
            trimmed = candidate.strip()
            if not trimmed or trimmed in seen:
                continue
            seen.add(trimmed)
            normalised.append(trimmed)

        return tuple(normalised)

    @field_validator("memory_default_context", mode="after")
    @classmethod
    def _normalise_default_context(cls, value: str) -> str:
        return (value or "").strip() or "General"

    @model_validator(mode="after")
    def _apply_environment_sensitive_defaults(self) -> "Settings":
        """Harmonise environment defaults without overriding explicit choices.

        ENVIRONMENT=production のときだけ Secure を既定で有効化し、環境変数や
        テストから明示的に設定された値は上書きしない。
        """

        environment_name = (self.environment or "").lower()
        is_secure_explicitly_configured = "session_cookie_secure" in self.model_fields_set
        if environment_name == "production" and not is_secure_explicitly_configured:
            self.session_cookie_secure = True

        return self


settings = Settings()
