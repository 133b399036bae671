"""Telegram WebApp ``initData`` verification and per-request auth resolution."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl

from .config import Settings
from .errors import (
    AuthenticationError,
    AuthorizationPolicyError,
    ConfigurationError,
    IdentityDataError,
    LeaderboardError,
)


logger = logging.getLogger("arshooter.auth")

HASH_FIELD = "hash"
WEBAPP_KEY_CONSTANT = b"WebAppData"
DEFAULT_LANGUAGE = "en"
# Largest value a SQLite INTEGER column holds.
MAX_PLATFORM_USER_ID = 2**63 - 1

METHOD_PLATFORM = "platform"
METHOD_SESSION = "session"


@dataclass(frozen=True)
class PlatformIdentity:
    platform_user_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language_code: str = DEFAULT_LANGUAGE
    is_premium: bool = False
    auth_date: Optional[int] = None

    @property
    def display_name(self) -> str:
        return (
            self.username
            or self.first_name
            or self.last_name
            or f"Player {str(self.platform_user_id)[-4:]}"
        )


@dataclass(frozen=True)
class AuthContext:
    """Outcome of auth resolution, attached to a single request."""

    method: str
    identity: Optional[PlatformIdentity] = None
    session_id: Optional[str] = None

    @property
    def platform_user_id(self) -> Optional[int]:
        return self.identity.platform_user_id if self.identity else None


def _parse_pairs(init_data: str) -> Dict[str, str]:
    pairs = parse_qsl(init_data, keep_blank_values=True, strict_parsing=True)
    parsed: Dict[str, str] = {}
    for key, value in pairs:
        if key in parsed:
            raise ValueError(f"duplicate key {key!r}")
        parsed[key] = value
    return parsed


def data_check_string(fields: Dict[str, str]) -> str:
    """Canonical string signed by the platform: sorted ``key=value`` lines."""
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields))


def compute_signature(fields: Dict[str, str], bot_token: str) -> str:
    secret_key = hmac.new(WEBAPP_KEY_CONSTANT, bot_token.encode(), hashlib.sha256).digest()
    return hmac.new(
        secret_key, data_check_string(fields).encode(), hashlib.sha256
    ).hexdigest()


def check_init_data(init_data: Optional[str], bot_token: Optional[str]) -> Tuple[bool, str]:
    """Verify ``init_data`` and return ``(ok, reason)``; never raises."""
    if not init_data:
        return False, "no_init_data"
    if not bot_token:
        return False, "no_secret"
    try:
        fields = _parse_pairs(init_data)
        recv_hash = fields.pop(HASH_FIELD, None)
        if not recv_hash:
            return False, "no_hash"

        try:
            provided = bytes.fromhex(recv_hash)
        except ValueError:
            return False, "bad_hash_encoding"

        expected = bytes.fromhex(compute_signature(fields, bot_token))
        if len(provided) != len(expected):
            return False, "bad_hash_length"
        if not hmac.compare_digest(provided, expected):
            return False, "hash_mismatch"
        return True, "ok"
    except Exception:
        return False, "parse_error"


def verify_init_data(init_data: Optional[str], bot_token: Optional[str]) -> bool:
    ok, _ = check_init_data(init_data, bot_token)
    return ok


def _optional_str(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_identity(init_data: Optional[str]) -> Optional[PlatformIdentity]:
    """Pull the user identity out of ``init_data``; ``None`` if it is unusable."""
    if not init_data:
        return None
    try:
        fields = dict(parse_qsl(init_data, keep_blank_values=True))
        user_raw = fields.get("user")
        if not user_raw:
            return None
        user = json.loads(user_raw)
        if not isinstance(user, dict):
            return None

        raw_id = user.get("id")
        if isinstance(raw_id, bool):
            return None
        if isinstance(raw_id, str) and raw_id.strip().isdigit():
            raw_id = int(raw_id.strip())
        if not isinstance(raw_id, int) or not 0 < raw_id <= MAX_PLATFORM_USER_ID:
            return None

        auth_date = fields.get("auth_date")
        return PlatformIdentity(
            platform_user_id=raw_id,
            username=_optional_str(user.get("username")),
            first_name=_optional_str(user.get("first_name")),
            last_name=_optional_str(user.get("last_name")),
            language_code=_optional_str(user.get("language_code")) or DEFAULT_LANGUAGE,
            is_premium=user.get("is_premium") is True,
            auth_date=int(auth_date) if auth_date and auth_date.isdigit() else None,
        )
    except Exception:
        return None


class AuthResolver:
    """Decides which identity scheme applies to a request.

    A signed payload wins over a session id. Verification is skipped only
    when ``Settings.verification_bypassed`` allows it, which is never the case
    in production.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock

    def resolve(self, init_data: Optional[str] = None, session_id: Optional[str] = None) -> AuthContext:
        if init_data:
            return AuthContext(method=METHOD_PLATFORM, identity=self._platform_identity(init_data))

        if session_id:
            if not self._settings.session_auth_allowed:
                raise AuthorizationPolicyError(
                    "Session authentication is disabled on this server",
                    reason="session_auth_disabled",
                )
            return AuthContext(method=METHOD_SESSION, session_id=session_id)

        raise AuthenticationError("Authentication required", reason="no_credentials")

    def resolve_optional(
        self, init_data: Optional[str] = None, session_id: Optional[str] = None
    ) -> Optional[AuthContext]:
        """Like :meth:`resolve`, but any failure means an anonymous request."""
        if not init_data and not session_id:
            return None
        try:
            return self.resolve(init_data, session_id)
        except LeaderboardError as exc:
            logger.debug("optional auth ignored: %s init_len=%s", exc.reason, len(init_data or ""))
            return None

    def _platform_identity(self, init_data: str) -> PlatformIdentity:
        settings = self._settings
        if not settings.verification_bypassed:
            if not settings.bot_token:
                logger.error("BOT_TOKEN is not configured, cannot verify initData")
                raise ConfigurationError("BOT_TOKEN is not configured")
            ok, reason = check_init_data(init_data, settings.bot_token)
            if not ok:
                logger.warning("initData rejected reason=%s init_len=%s", reason, len(init_data))
                raise AuthenticationError("Invalid Telegram authentication", reason="invalid_init_data")

        identity = extract_identity(init_data)
        if identity is None:
            raise IdentityDataError("Could not extract user data", reason="bad_identity")

        if not settings.verification_bypassed and settings.auth_max_age_seconds > 0:
            if identity.auth_date is None:
                raise AuthenticationError("initData has no auth_date", reason="invalid_init_data")
            if self._clock() - identity.auth_date > settings.auth_max_age_seconds:
                raise AuthenticationError("initData has expired", reason="expired_init_data")

        return identity
