"""FastAPI server providing the AR shooter leaderboard API."""

from __future__ import annotations

import logging
import re
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .auth import MAX_PLATFORM_USER_ID, METHOD_PLATFORM, AuthContext, AuthResolver
from .config import DEFAULT_GAME_MODE, LEADERBOARD_TYPES, Settings
from .db import Database
from .errors import (
    AuthenticationError,
    ConfigurationError,
    LeaderboardError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from .models import GameResult, User, UserStats
from .notifier import TelegramNotifier
from .ratelimit import RateLimiter
from .store import ScoreStore
from .users import UserReconciler
from .validation import ResultCandidate, ResultValidator


logger = logging.getLogger("arshooter")

MAX_BODY_BYTES = 10 * 1024
SERVER_ERROR_BODY = {"ok": False, "error": "server_error", "reason": "server_error"}
SESSION_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)
USERNAME_RE = re.compile(r"^\w+$")
USERNAME_MIN_LENGTH = 2
USERNAME_MAX_LENGTH = 32
CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


class InitDataIn(BaseModel):
    initData: str = Field(..., min_length=1)


class DevAuthIn(BaseModel):
    sessionId: str
    mockPlatformId: Optional[int] = Field(default=None, ge=1, le=MAX_PLATFORM_USER_ID)


class ScoreIn(BaseModel):
    initData: Optional[str] = None
    platformId: Optional[int] = Field(default=None, ge=1, le=MAX_PLATFORM_USER_ID)
    sessionId: Optional[str] = None
    score: int
    targetsHit: int
    shotsFired: int = 0
    maxCombo: int
    durationMs: int
    gameMode: Optional[str] = None


class UsernameIn(BaseModel):
    username: str


@dataclass
class Services:
    """Everything a request needs, built once per application."""

    settings: Settings
    db: Database
    store: ScoreStore
    resolver: AuthResolver
    reconciler: UserReconciler
    validator: ResultValidator
    api_limiter: RateLimiter
    score_limiter: RateLimiter
    notifier: TelegramNotifier


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_client_ip(request: Request, settings: Settings) -> str:
    if settings.trust_proxy:
        forwarded = (request.headers.get("x-forwarded-for") or "").strip()
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "-"


def api_rate_limit(request: Request, services: Services = Depends(get_services)) -> None:
    ip = get_client_ip(request, services.settings)
    agent = request.headers.get("user-agent") or "unknown"
    services.api_limiter.check(f"{ip}-{agent}")


def score_rate_limit(request: Request, services: Services = Depends(get_services)) -> None:
    services.score_limiter.check(get_client_ip(request, services.settings))


def check_session_id(session_id: str) -> str:
    if not SESSION_ID_RE.match(session_id or ""):
        raise ValidationError("Invalid sessionId", reason="invalid_field", rule="sessionId")
    return session_id.lower()


def sanitize_username(raw: str) -> str:
    value = CONTROL_CHARS_RE.sub("", raw.strip()).replace("<", "").replace(">", "")
    if not USERNAME_MIN_LENGTH <= len(value) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Name must be {USERNAME_MIN_LENGTH} to {USERNAME_MAX_LENGTH} characters",
            reason="invalid_field",
            rule="username",
        )
    if not USERNAME_RE.match(value):
        raise ValidationError(
            "Name may only contain letters, digits and _",
            reason="invalid_field",
            rule="username",
        )
    return value


def percent(ratio: float) -> float:
    return round(ratio * 100, 1)


def stats_to_dict(stats: UserStats) -> dict:
    return {
        "totalGames": stats.total_games,
        "bestScore": stats.best_score,
        "totalHits": stats.total_hits,
        "avgAccuracy": percent(stats.avg_accuracy),
        "bestCombo": stats.best_combo,
        "totalPlaytimeMs": stats.total_playtime_ms,
    }


def result_to_dict(result: GameResult) -> dict:
    return {
        "score": result.score,
        "targetsHit": result.targets_hit,
        "shotsFired": result.shots_fired,
        "accuracy": percent(result.accuracy),
        "maxCombo": result.max_combo,
        "durationMs": result.duration_ms,
        "gameMode": result.game_mode,
        "playedAt": result.created_at,
    }


async def build_profile(services: Services, user: User) -> dict:
    store = services.store
    stats = await store.user_stats(user.id)
    recent = await store.recent_results(user.id)
    return {
        "username": user.public_name,
        "rank": await store.user_rank(user.id),
        "stats": stats_to_dict(stats),
        "recentGames": [result_to_dict(r) for r in recent],
        "memberSince": user.created_at,
    }


auth_router = APIRouter(prefix="/api/auth", dependencies=[Depends(api_rate_limit)])
scores_router = APIRouter(prefix="/api/scores", dependencies=[Depends(api_rate_limit)])


@auth_router.post("/platform")
async def auth_platform(payload: InitDataIn, services: Services = Depends(get_services)):
    auth = services.resolver.resolve(init_data=payload.initData)
    identity = auth.identity
    user = await services.reconciler.for_platform(identity)
    stats = await services.store.user_stats(user.id)
    return {
        "ok": True,
        "data": {
            "userId": user.id,
            "platformId": identity.platform_user_id,
            "username": identity.username or user.display_name,
            "firstName": identity.first_name,
            "languageCode": identity.language_code,
            "isPremium": identity.is_premium,
            "stats": stats_to_dict(stats),
        },
    }


@auth_router.post("/dev")
async def auth_dev(payload: DevAuthIn, services: Services = Depends(get_services)):
    if not services.settings.is_dev:
        raise NotFoundError("Not available", reason="not_found")
    session_id = check_session_id(payload.sessionId)
    user = await services.reconciler.ensure_dev_user(session_id, payload.mockPlatformId)
    return {
        "ok": True,
        "data": {
            "userId": user.id,
            "sessionId": user.session_id,
            "platformId": user.platform_user_id,
            "username": user.display_name or "dev_user",
            "isDev": True,
        },
    }


@auth_router.get("/me")
async def auth_me(
    platformId: Optional[int] = Query(default=None, ge=1, le=MAX_PLATFORM_USER_ID),
    sessionId: Optional[str] = None,
    services: Services = Depends(get_services),
):
    store = services.store
    if platformId is not None:
        user = await store.get_user_by_platform(platformId)
    elif sessionId:
        user = await store.get_user_by_session(check_session_id(sessionId))
    else:
        raise ValidationError("platformId or sessionId required", reason="missing_identity")
    if user is None:
        raise NotFoundError("User not found", reason="user_not_found")

    stats = await store.user_stats(user.id)
    return {
        "ok": True,
        "data": {
            "userId": user.id,
            "platformId": user.platform_user_id,
            "username": user.public_name,
            "stats": stats_to_dict(stats),
        },
    }


@scores_router.post("", status_code=201, dependencies=[Depends(score_rate_limit)])
async def submit_score(
    payload: ScoreIn,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    ip = get_client_ip(request, services.settings)
    user_id = "-"
    reason = "ok"
    status = 201
    init_len = len(payload.initData) if payload.initData else 0
    try:
        session_id = check_session_id(payload.sessionId) if payload.sessionId else None

        auth = services.resolver.resolve(payload.initData, session_id)
        if auth.method == METHOD_PLATFORM and payload.platformId is not None:
            if payload.platformId != auth.platform_user_id:
                raise AuthenticationError(
                    "platformId does not match the signed identity", reason="identity_mismatch"
                )

        user = await services.reconciler.reconcile(auth, session_id=session_id)
        user_id = str(user.id)

        candidate = ResultCandidate(
            score=payload.score,
            targets_hit=payload.targetsHit,
            shots_fired=payload.shotsFired,
            max_combo=payload.maxCombo,
            duration_ms=payload.durationMs,
            game_mode=payload.gameMode,
        )
        services.validator.validate(candidate).raise_for_reason()

        result = await services.store.insert_result(
            user.id, candidate, payload.gameMode or DEFAULT_GAME_MODE
        )
        rank = await services.store.rank_for_score(result.score, user.id)
        background_tasks.add_task(services.notifier.notify_score, user, result, rank)

        return {
            "ok": True,
            "data": {
                "scoreId": result.id,
                "rank": rank,
                "score": result.score,
                "targetsHit": result.targets_hit,
                "accuracy": percent(result.accuracy),
                "maxCombo": result.max_combo,
            },
        }
    except LeaderboardError as exc:
        status = exc.status_code
        reason = exc.reason
        if isinstance(exc, ValidationError) and exc.rule:
            reason = f"{exc.reason}:{exc.rule}"
        raise
    except Exception as exc:
        status = 500
        reason = "server_error"
        logger.exception("score handler error")
        background_tasks.add_task(services.notifier.notify_error, "POST /api/scores", exc)
        return JSONResponse(
            status_code=500,
            content=SERVER_ERROR_BODY,
            background=background_tasks,
        )
    finally:
        logger.info(
            "%s %s user=%s reason=%s init_len=%s",
            ip,
            status,
            user_id,
            reason,
            init_len,
        )


@scores_router.get("/leaderboard")
async def get_leaderboard(
    kind: str = Query(default="score", alias="type"),
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    x_telegram_init_data: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    if kind not in LEADERBOARD_TYPES:
        raise ValidationError(
            f"type must be one of: {', '.join(LEADERBOARD_TYPES)}",
            reason="invalid_field",
            rule="type",
        )

    me_id = await _optional_user_id(services, x_telegram_init_data, x_session_id)
    page = await services.store.leaderboard(kind, limit, offset)

    leaders = []
    for entry in page.entries:
        item = {"rank": entry.rank, "username": entry.username}
        item.update(result_to_dict(entry.result))
        item["isMe"] = me_id is not None and entry.user_id == me_id
        leaders.append(item)

    return {
        "ok": True,
        "data": {
            "type": page.kind,
            "leaders": leaders,
            "pagination": {
                "total": page.total,
                "limit": page.limit,
                "offset": page.offset,
                "hasMore": page.has_more,
            },
        },
    }


async def _optional_user_id(
    services: Services, init_data: Optional[str], session_id: Optional[str]
) -> Optional[int]:
    if session_id and not SESSION_ID_RE.match(session_id):
        session_id = None
    auth: Optional[AuthContext] = services.resolver.resolve_optional(init_data, session_id)
    if auth is None:
        return None
    if auth.identity is not None:
        user = await services.store.get_user_by_platform(auth.identity.platform_user_id)
    else:
        user = await services.store.get_user_by_session(auth.session_id.lower())
    return user.id if user else None


@scores_router.get("/user/platform/{platform_id}")
async def get_platform_profile(
    platform_id: int = Path(..., le=MAX_PLATFORM_USER_ID),
    services: Services = Depends(get_services),
):
    if platform_id <= 0:
        raise ValidationError("Invalid platformId", reason="invalid_field", rule="platformId")
    user = await services.store.get_user_by_platform(platform_id)
    if user is None:
        raise NotFoundError("User not found", reason="user_not_found")
    return {"ok": True, "data": await build_profile(services, user)}


@scores_router.get("/user/{session_id}")
async def get_session_profile(session_id: str, services: Services = Depends(get_services)):
    user = await services.store.get_user_by_session(check_session_id(session_id))
    if user is None:
        raise NotFoundError("User not found", reason="user_not_found")
    return {"ok": True, "data": await build_profile(services, user)}


@scores_router.put("/user/{session_id}")
async def update_username(
    session_id: str, payload: UsernameIn, services: Services = Depends(get_services)
):
    session_id = check_session_id(session_id)
    username = sanitize_username(payload.username)

    store = services.store
    user = await store.get_user_by_session(session_id)
    if user is None:
        raise NotFoundError("User not found", reason="user_not_found")
    if await store.display_name_taken(username, exclude_user_id=user.id):
        raise ValidationError("This name is already taken", reason="name_taken", rule="username")

    await store.set_display_name(user.id, username)
    logger.info("display name updated user=%s", user.id)
    return {"ok": True, "data": {"username": username}}


def build_services(
    settings: Settings,
    *,
    database: Optional[Database] = None,
    notifier: Optional[TelegramNotifier] = None,
    api_limiter: Optional[RateLimiter] = None,
    score_limiter: Optional[RateLimiter] = None,
) -> Services:
    db = database or Database(
        settings.database_path,
        size=settings.db_pool_size,
        acquire_timeout=settings.db_pool_timeout_seconds,
    )
    store = ScoreStore(db, min_shots_for_accuracy=settings.limits.min_shots_for_accuracy)
    return Services(
        settings=settings,
        db=db,
        store=store,
        resolver=AuthResolver(settings),
        reconciler=UserReconciler(store),
        validator=ResultValidator(settings.limits),
        api_limiter=api_limiter
        or RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds),
        score_limiter=score_limiter
        or RateLimiter(settings.score_rate_limit_max, settings.rate_limit_window_seconds),
        notifier=notifier or TelegramNotifier.from_settings(settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    await services.db.open()
    await services.notifier.start()
    logger.info("server started env=%s", services.settings.environment)
    try:
        yield
    finally:
        await services.notifier.close()
        await services.db.close()
        logger.info("server stopped")


def create_app(settings: Optional[Settings] = None, **overrides) -> FastAPI:
    """Build the application. Raises ``ConfigurationError`` on unsafe settings."""
    settings = settings or Settings.from_env()
    settings.validate()

    app = FastAPI(title="AR Shooter Leaderboard", version=__version__, lifespan=lifespan)
    app.state.services = build_services(settings, **overrides)

    origins = list(settings.allowed_origins)
    if not origins and not settings.is_production:
        origins = ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Session-Id", "X-Telegram-Init-Data"],
        max_age=86400,
    )

    @app.middleware("http")
    async def limit_request_body(request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_BODY_BYTES:
            return JSONResponse(
                status_code=413,
                content={"ok": False, "error": "payload_too_large", "reason": "payload_too_large"},
            )
        return await call_next(request)

    @app.exception_handler(LeaderboardError)
    async def leaderboard_error_handler(_request: Request, exc: LeaderboardError):
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError):
        # Only field names and messages; raw input may hold initData.
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": "invalid_payload", "reason": "invalid_payload", "details": details},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        context = f"{request.method} {request.url.path}"
        logger.exception("unhandled error in %s", context)
        tasks = BackgroundTasks()
        tasks.add_task(request.app.state.services.notifier.notify_error, context, exc)
        return JSONResponse(status_code=500, content=SERVER_ERROR_BODY, background=tasks)

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True, "version": __version__}

    @app.get("/")
    async def root() -> dict:
        return {"ok": True, "service": "arshooter-leaderboard"}

    @app.get("/api")
    async def api_info() -> dict:
        return {
            "name": "AR Shooter Leaderboard API",
            "version": __version__,
            "endpoints": {
                "POST /api/auth/platform": "Authenticate with Telegram initData",
                "GET /api/auth/me": "Current user and stats",
                "POST /api/scores": "Submit a game result",
                "GET /api/scores/leaderboard": "Leaderboard",
                "GET /api/scores/user/{sessionId}": "User profile",
                "GET /api/scores/user/platform/{platformId}": "User profile by Telegram id",
                "PUT /api/scores/user/{sessionId}": "Change display name",
            },
        }

    app.include_router(auth_router)
    app.include_router(scores_router)
    return app


def main() -> None:
    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.critical("invalid configuration: %s", exc)
        sys.exit(1)

    logging.basicConfig(
        level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s"
    )
    try:
        app = create_app(settings)
    except ConfigurationError as exc:
        logger.critical("refusing to start: %s", exc)
        sys.exit(1)

    try:
        uvicorn.run(app, host=settings.host, port=settings.port)
    except Exception:
        logger.exception("server crashed")
        sys.exit(1)


if __name__ == "__main__":
    main()
