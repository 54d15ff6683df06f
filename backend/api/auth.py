import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from fastapi import Request, status
from sqlalchemy.exc import SQLAlchemyError
from starlette.types import ASGIApp

from db.account_store import AccountStore
from .errors import (
    QUOTA_UNAVAILABLE,
    RATE_LIMITED,
    UNAUTHORIZED,
    ApiError,
    error_response,
    internal_error_response,
)

logger = logging.getLogger(__name__)

PROTECTED_PATH_PREFIX = "/api/v1/"
RATE_LIMIT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    tier: str


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    remaining: int
    limit: int
    degraded: bool = False


class QuotaChecker:
    """
    Sliding-window request ceiling per caller.

    When the usage count cannot be read, `fail_open` decides whether the
    request goes through (remaining reported as 0) or is refused.
    """

    def __init__(
        self,
        account_store: AccountStore,
        rate_limits: Dict[str, int],
        *,
        fail_open: bool = True,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    ) -> None:
        self.account_store = account_store
        self.rate_limits = dict(rate_limits)
        self.fail_open = fail_open
        self.window_seconds = window_seconds

    def limit_for(self, tier: str) -> int:
        return int(self.rate_limits.get(tier, self.rate_limits.get("free", 10)))

    async def check(self, user_id: str, tier: str) -> QuotaStatus:
        limit = self.limit_for(tier)
        try:
            used = await self.account_store.count_recent_usage(
                user_id, window_seconds=self.window_seconds
            )
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Quota check failed for user %s: %s", user_id, exc)
            return QuotaStatus(
                allowed=self.fail_open, remaining=0, limit=limit, degraded=True
            )
        return QuotaStatus(allowed=used < limit, remaining=max(0, limit - used), limit=limit)


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    value = authorization.strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def _rate_limit_reset_epoch(window_seconds: int = RATE_LIMIT_WINDOW_SECONDS) -> int:
    return math.ceil(time.time() + window_seconds)


def _unauthorized(message: str):
    return error_response(
        status.HTTP_401_UNAUTHORIZED,
        UNAUTHORIZED,
        message,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _rate_limited(tier: str, window_seconds: int):
    return error_response(
        status.HTTP_429_TOO_MANY_REQUESTS,
        RATE_LIMITED,
        "Rate limit exceeded",
        details={"retry_after_seconds": window_seconds, "tier": tier},
        headers={
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(_rate_limit_reset_epoch(window_seconds)),
            "Retry-After": str(window_seconds),
        },
    )


def apply_api_key_middleware(
    app: ASGIApp, *, protected_prefix: str = PROTECTED_PATH_PREFIX
) -> ASGIApp:
    """
    Guard every path under `protected_prefix` with bearer-key auth and quota.

    Expects `app.state.account_store` and `app.state.quota_checker`.
    """

    async def _auth_middleware(request: Request, call_next: Callable[[Request], Awaitable]):
        if not request.url.path.startswith(protected_prefix):
            return await call_next(request)

        api_key = _extract_bearer_token(request.headers.get("Authorization"))
        if not api_key:
            return _unauthorized("Missing or invalid Authorization header")

        account_store: AccountStore = request.app.state.account_store
        quota_checker: QuotaChecker = request.app.state.quota_checker
        endpoint = request.url.path

        try:
            validation = await account_store.validate_api_key(api_key)
            if not validation.valid or validation.user is None:
                return _unauthorized(validation.error or "Invalid API key")
            user = validation.user

            quota = await quota_checker.check(user.id, user.tier)
            if not quota.allowed:
                if quota.degraded:
                    return error_response(
                        status.HTTP_503_SERVICE_UNAVAILABLE,
                        QUOTA_UNAVAILABLE,
                        "Rate limit check unavailable",
                        headers={"Retry-After": str(quota_checker.window_seconds)},
                    )
                return _rate_limited(user.tier, quota_checker.window_seconds)

            await account_store.log_usage(user.id, endpoint)
        except SQLAlchemyError:
            logger.exception("Authentication failed on %s", endpoint)
            return internal_error_response()

        request.state.auth = AuthContext(user_id=user.id, tier=user.tier)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Handler error on %s", endpoint)
            return internal_error_response()

        remaining = await quota_checker.check(user.id, user.tier)
        response.headers["X-RateLimit-Remaining"] = str(remaining.remaining)
        response.headers["X-RateLimit-Reset"] = str(
            _rate_limit_reset_epoch(quota_checker.window_seconds)
        )
        return response

    app.middleware("http")(_auth_middleware)
    return app


def get_auth_context(request: Request) -> AuthContext:
    """Dependency: the caller identity established by the auth middleware."""
    auth = getattr(request.state, "auth", None)
    if not isinstance(auth, AuthContext):
        raise ApiError(
            status.HTTP_401_UNAUTHORIZED,
            UNAUTHORIZED,
            "Missing or invalid Authorization header",
        )
    return auth
