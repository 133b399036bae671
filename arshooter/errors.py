"""Error taxonomy shared by the API layer and the core components."""

from __future__ import annotations

from typing import Optional


class LeaderboardError(Exception):
    """Base error; carries the HTTP status and a machine-readable code."""

    status_code = 500
    error = "server_error"

    def __init__(self, message: str = "", *, reason: Optional[str] = None) -> None:
        super().__init__(message or self.error)
        self.message = message or self.error
        self.reason = reason or self.error

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.error, "reason": self.reason, "message": self.message}


class AuthenticationError(LeaderboardError):
    status_code = 401
    error = "unauthorized"


class AuthorizationPolicyError(LeaderboardError):
    status_code = 403
    error = "forbidden"


class IdentityDataError(LeaderboardError):
    status_code = 400
    error = "invalid_identity"


class ValidationError(LeaderboardError):
    """Rejected payload. ``reason`` distinguishes the failure category."""

    status_code = 400
    error = "validation_failed"

    def __init__(self, message: str, *, reason: str, rule: Optional[str] = None) -> None:
        super().__init__(message, reason=reason)
        self.rule = rule

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.rule:
            data["rule"] = self.rule
        return data


class NotFoundError(LeaderboardError):
    status_code = 404
    error = "not_found"


class RateLimitError(LeaderboardError):
    status_code = 429
    error = "too_many_requests"

    def __init__(self, message: str = "Too many requests, try again later", *, retry_after: int = 1) -> None:
        super().__init__(message, reason="rate_limited")
        self.retry_after = max(1, int(retry_after))

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryAfter"] = self.retry_after
        return data


class ConfigurationError(LeaderboardError):
    status_code = 500
    error = "server_misconfigured"

    def to_dict(self) -> dict:
        # Configuration details stay in the server log.
        return {"ok": False, "error": self.error, "reason": self.error, "message": "Server configuration error"}


class ServiceUnavailableError(LeaderboardError):
    status_code = 503
    error = "service_unavailable"
