from __future__ import annotations

from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from trafficsafety.api.schemas import (
    LoginRequest,
    LogoutRequest,
    PruneResponse,
    RefreshRequest,
    TokenResponse,
    UserResponse,
)
from trafficsafety.logging import get_logger
from trafficsafety.service.errors import RateLimitedError
from trafficsafety.service.guard import AuthenticatedUser, RequestContext, RoleLike
from trafficsafety.service.runtime import check_rate_limit, get_runtime
from trafficsafety.service.timeouts import call_with_timeout
from trafficsafety.storage.models import UserRole

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _request_context(request: Request, authorization: Optional[str]) -> RequestContext:
    """Return the guard context for this request, creating it on first use."""
    ctx = getattr(request.state, "auth_context", None)
    if ctx is None:
        ctx = RequestContext(
            method=request.method,
            path=request.url.path,
            authorization=authorization,
        )
        request.state.auth_context = ctx
    return ctx


def require_auth(allowed_roles: Optional[Iterable[RoleLike]] = None):
    """Build a dependency that authorizes the caller, optionally by role."""
    roles = tuple(allowed_roles or ())

    async def _authorize(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> AuthenticatedUser:
        runtime = get_runtime()
        return await runtime.guard.authorize(
            _request_context(request, authorization), roles or None
        )

    return _authorize


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded",
            detail={"retry_after": reset_seconds, "remaining": remaining},
        )


@router.post("/auth/login", response_model=TokenResponse, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If credentials are invalid
        403: If the account is inactive
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.authenticator.login(body.email, body.password)
    return TokenResponse.from_result(result)


@router.post("/auth/refresh", response_model=TokenResponse, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Rotate a refresh token and mint a new access token."""
    runtime = get_runtime()
    result = await runtime.authenticator.refresh(body.refresh_token)
    return TokenResponse.from_result(result)


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthenticatedUser = Depends(require_auth()),
):
    body = body or LogoutRequest()
    runtime = get_runtime()
    await runtime.authenticator.logout(
        principal,
        refresh_token=body.refresh_token,
        invalidate_all=body.invalidate_all,
    )
    return Response(status_code=204)


@router.get("/auth/me", response_model=UserResponse, tags=["auth"])
async def me(principal: AuthenticatedUser = Depends(require_auth())):
    return UserResponse.from_user(principal.user)


@router.post(
    "/admin/access-tokens/prune", response_model=PruneResponse, tags=["admin"]
)
async def prune_access_tokens(
    principal: AuthenticatedUser = Depends(require_auth([UserRole.ADMIN])),
):
    """Delete expired access-token records."""
    runtime = get_runtime()
    pruned = await call_with_timeout(
        runtime.settings.store_timeout_seconds, runtime.registry.prune_expired
    )
    logger.info("access_tokens_prune_requested", user_id=principal.user_id, pruned=pruned)
    return PruneResponse(pruned=pruned)
