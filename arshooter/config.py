"""Runtime configuration, read from the environment once at startup."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError


DEVELOPMENT = "development"
PRODUCTION = "production"
TEST = "test"
ENVIRONMENTS = (DEVELOPMENT, PRODUCTION, TEST)

GAME_MODES = ("endless", "timed", "accuracy", "survival")
DEFAULT_GAME_MODE = "endless"
LEADERBOARD_TYPES = ("score", "hits", "accuracy")


def _flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer") from exc


def _origins(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(o.strip() for o in raw.split(",") if o.strip())


@dataclass(frozen=True)
class GameLimits:
    """Bounds and anti-cheat ceilings applied to submitted results."""

    max_score: int = 10_000_000
    max_targets_hit: int = 10_000
    max_shots_fired: int = 50_000
    max_combo: int = 100
    min_duration_ms: int = 1_000
    max_duration_ms: int = 3_600_000
    # Rate checks only run for games at least this long.
    anticheat_min_duration_ms: int = 10_000
    max_score_per_minute: int = 100_000
    max_hits_per_minute: int = 120
    min_shots_for_accuracy: int = 10
    game_modes: Tuple[str, ...] = GAME_MODES

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "GameLimits":
        defaults = cls()
        return cls(
            max_score=_int(env, "MAX_SCORE", defaults.max_score),
            max_combo=_int(env, "MAX_COMBO", defaults.max_combo),
            min_duration_ms=_int(env, "MIN_DURATION_MS", defaults.min_duration_ms),
            max_duration_ms=_int(env, "MAX_DURATION_MS", defaults.max_duration_ms),
            anticheat_min_duration_ms=_int(
                env, "ANTICHEAT_MIN_DURATION_MS", defaults.anticheat_min_duration_ms
            ),
            max_score_per_minute=_int(
                env, "MAX_SCORE_PER_MINUTE", defaults.max_score_per_minute
            ),
            max_hits_per_minute=_int(
                env, "MAX_HITS_PER_MINUTE", defaults.max_hits_per_minute
            ),
            min_shots_for_accuracy=_int(
                env, "MIN_SHOTS_FOR_ACCURACY", defaults.min_shots_for_accuracy
            ),
        )


@dataclass(frozen=True)
class Settings:
    environment: str = PRODUCTION
    bot_token: Optional[str] = None
    skip_verify: bool = False
    allow_session_auth: bool = False
    auth_max_age_seconds: int = 86400

    database_path: str = "leaderboard.db"
    db_pool_size: int = 5
    db_pool_timeout_seconds: float = 10.0

    allowed_origins: Tuple[str, ...] = ()
    trust_proxy: bool = False
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 100
    score_rate_limit_max: int = 10

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    telegram_log_enabled: bool = False
    telegram_log_chat_id: Optional[str] = None
    app_url: str = "https://t.me/arshooter_bot/game"
    bot_health_port: int = 10000

    limits: GameLimits = field(default_factory=GameLimits)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``env`` (``os.environ`` after loading ``.env``)."""
        if env is None:
            load_dotenv()
            env = os.environ

        environment = (env.get("APP_ENV") or PRODUCTION).strip().lower()
        if environment not in ENVIRONMENTS:
            raise ConfigurationError(
                f"APP_ENV must be one of {', '.join(ENVIRONMENTS)}"
            )

        return cls(
            environment=environment,
            bot_token=(env.get("BOT_TOKEN") or "").strip() or None,
            skip_verify=_flag(env, "SKIP_PLATFORM_VERIFY"),
            allow_session_auth=_flag(env, "ALLOW_SESSION_AUTH"),
            auth_max_age_seconds=_int(env, "AUTH_MAX_AGE_SECONDS", 86400),
            database_path=env.get("DATABASE_PATH") or "leaderboard.db",
            db_pool_size=_int(env, "DB_POOL_SIZE", 5),
            db_pool_timeout_seconds=float(_int(env, "DB_POOL_TIMEOUT_SECONDS", 10)),
            allowed_origins=_origins(env.get("ALLOWED_ORIGINS")),
            trust_proxy=_flag(env, "TRUST_PROXY"),
            rate_limit_window_seconds=_int(env, "RATE_LIMIT_WINDOW_SECONDS", 60),
            rate_limit_max_requests=_int(env, "RATE_LIMIT_MAX_REQUESTS", 100),
            score_rate_limit_max=_int(env, "SCORE_RATE_LIMIT_MAX", 10),
            host=env.get("HOST") or "0.0.0.0",
            port=_int(env, "PORT", 8080),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            telegram_log_enabled=_flag(env, "TELEGRAM_LOG_ENABLED"),
            telegram_log_chat_id=(env.get("TELEGRAM_LOG_CHAT_ID") or "").strip() or None,
            app_url=env.get("APP_URL") or cls.app_url,
            bot_health_port=_int(env, "BOT_HEALTH_PORT", 10000),
            limits=GameLimits.from_env(env),
        )

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    @property
    def is_dev(self) -> bool:
        return self.environment == DEVELOPMENT

    @property
    def verification_bypassed(self) -> bool:
        """True when signed payloads are trusted without checking the hash.

        Never true in production, whatever the flags say.
        """
        if self.is_production:
            return False
        return self.is_dev or self.skip_verify

    @property
    def session_auth_allowed(self) -> bool:
        return self.is_dev or self.allow_session_auth

    def validate(self) -> None:
        """Refuse configurations that must not reach a running server."""
        if self.db_pool_size < 1:
            raise ConfigurationError("DB_POOL_SIZE must be at least 1")
        if self.is_production:
            if not self.bot_token:
                raise ConfigurationError(
                    "BOT_TOKEN is required in production for initData verification"
                )
            if self.skip_verify:
                raise ConfigurationError(
                    "SKIP_PLATFORM_VERIFY cannot be enabled in production"
                )
