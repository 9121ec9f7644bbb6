from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _normalize_database_url(value: str | None, fallback: str) -> str:
    raw = (value or fallback).strip() or fallback
    # Some dashboards accidentally store quoted values.
    if (raw.startswith('"') and raw.endswith('"')) or (raw.startswith("'") and raw.endswith("'")):
        raw = raw[1:-1].strip()

    if "://" not in raw:
        return raw

    scheme, suffix = raw.split("://", 1)
    scheme = scheme.lower()

    if scheme in {
        "postgres",
        "postgresql",
        "postgresql+psycopg",
        "postgresql+psycopg2",
    }:
        url = f"postgresql+psycopg2://{suffix}"
        if "sslmode" not in url:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}sslmode=require"
        return url

    return raw


DEFAULT_REACTION_EMOJIS = ("🔥", "😎", "🤔", "😰", "👏", "😂", "🤯", "💀", "🎉", "❤️")


@dataclass(frozen=True)
class Settings:
    env: str
    secret_key: str
    jwt_algorithm: str
    jwt_exp_minutes: int
    port: int
    database_url: str
    db_pool_size: int
    db_max_overflow: int
    db_pool_timeout: int
    db_pool_recycle: int
    cors_origins: list[str]
    debug: bool
    log_level: str
    rate_limit_requests_per_min: int
    join_max_attempts: int
    join_window_ms: int
    answer_max_attempts: int
    answer_window_ms: int
    reaction_max_attempts: int
    reaction_window_ms: int
    countdown_seconds: int
    question_seconds: int
    answer_grace_seconds: int
    max_reactions_per_question: int
    reaction_history_size: int
    reaction_display_seconds: float
    reaction_emojis: tuple[str, ...]
    speed_demon_ms: int
    base_points: int
    max_name_length: int
    pin_attempts: int
    enable_auto_advance: bool
    admin_nicknames: set[str]
    host_access_key: str
    enable_prometheus_metrics: bool
    leaderboard_top_n: int

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_production(self) -> bool:
        return self.env.lower() not in {"development", "dev", "test", "testing"}

    @property
    def countdown_ms(self) -> int:
        return self.countdown_seconds * 1000

    @property
    def question_ms(self) -> int:
        return self.question_seconds * 1000

    @property
    def answer_grace_ms(self) -> int:
        return self.answer_grace_seconds * 1000

    def validate(self) -> None:
        """Raise early on dangerous mis-configurations in non-dev environments."""
        if self.is_production and self.secret_key == _DEFAULT_SECRET_KEY:
            raise RuntimeError(
                "SECRET_KEY must be explicitly set in production. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )
        if self.is_production and self.host_access_key == _DEFAULT_HOST_ACCESS_KEY:
            raise RuntimeError("HOST_ACCESS_KEY must be explicitly set in production.")


_DEFAULT_SECRET_KEY = "change-me-in-production-min-32-bytes-key"
_DEFAULT_HOST_ACCESS_KEY = "change-me-host-key"


settings = Settings(
    env=os.getenv("ENV", "development"),
    secret_key=os.getenv("SECRET_KEY", _DEFAULT_SECRET_KEY),
    jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
    jwt_exp_minutes=_as_int(os.getenv("JWT_EXP_MINUTES"), 60 * 12),
    port=_as_int(os.getenv("PORT"), 8000),
    database_url=_normalize_database_url(
        os.getenv("DATABASE_URL"),
        "sqlite:///./quizroom.db",
    ),
    db_pool_size=max(1, _as_int(os.getenv("DB_POOL_SIZE"), 5)),
    db_max_overflow=max(0, _as_int(os.getenv("DB_MAX_OVERFLOW"), 10)),
    db_pool_timeout=max(1, _as_int(os.getenv("DB_POOL_TIMEOUT"), 30)),
    db_pool_recycle=max(60, _as_int(os.getenv("DB_POOL_RECYCLE"), 1800)),
    cors_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", os.getenv("FRONTEND_URL", "http://localhost:3000")).split(",")
        if origin.strip()
    ],
    debug=_as_bool(os.getenv("DEBUG"), False),
    log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    rate_limit_requests_per_min=_as_int(os.getenv("RATE_LIMIT_REQUESTS_PER_MIN"), 240),
    join_max_attempts=max(1, _as_int(os.getenv("JOIN_MAX_ATTEMPTS"), 3)),
    join_window_ms=max(1000, _as_int(os.getenv("JOIN_WINDOW_MS"), 60_000)),
    answer_max_attempts=max(1, _as_int(os.getenv("ANSWER_MAX_ATTEMPTS"), 1)),
    answer_window_ms=max(1, _as_int(os.getenv("ANSWER_WINDOW_MS"), 1000)),
    reaction_max_attempts=max(1, _as_int(os.getenv("REACTION_MAX_ATTEMPTS"), 10)),
    reaction_window_ms=max(1000, _as_int(os.getenv("REACTION_WINDOW_MS"), 60_000)),
    countdown_seconds=max(1, _as_int(os.getenv("COUNTDOWN_SECONDS"), 3)),
    question_seconds=max(1, _as_int(os.getenv("QUESTION_SECONDS"), 25)),
    answer_grace_seconds=max(0, _as_int(os.getenv("ANSWER_GRACE_SECONDS"), 3)),
    max_reactions_per_question=max(0, _as_int(os.getenv("MAX_REACTIONS_PER_QUESTION"), 5)),
    reaction_history_size=max(1, _as_int(os.getenv("REACTION_HISTORY_SIZE"), 15)),
    reaction_display_seconds=max(0.1, _as_float(os.getenv("REACTION_DISPLAY_SECONDS"), 3.0)),
    reaction_emojis=tuple(
        item.strip()
        for item in os.getenv("REACTION_EMOJIS", ",".join(DEFAULT_REACTION_EMOJIS)).split(",")
        if item.strip()
    ),
    speed_demon_ms=_as_int(os.getenv("SPEED_DEMON_MS"), 3000),
    base_points=max(1, _as_int(os.getenv("BASE_POINTS"), 100)),
    max_name_length=max(1, _as_int(os.getenv("MAX_NAME_LENGTH"), 30)),
    pin_attempts=max(1, _as_int(os.getenv("PIN_ATTEMPTS"), 12)),
    enable_auto_advance=_as_bool(os.getenv("ENABLE_AUTO_ADVANCE"), True),
    admin_nicknames={
        item.strip().lower()
        for item in os.getenv("ADMIN_NICKNAMES", "admin").split(",")
        if item.strip()
    },
    host_access_key=os.getenv("HOST_ACCESS_KEY", _DEFAULT_HOST_ACCESS_KEY),
    enable_prometheus_metrics=_as_bool(os.getenv("ENABLE_PROMETHEUS_METRICS"), True),
    leaderboard_top_n=max(1, _as_int(os.getenv("LEADERBOARD_TOP_N"), 20)),
)

settings.validate()
