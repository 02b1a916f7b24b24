from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from trafficsafety.logging import get_logger
from trafficsafety.service.access_registry import AccessTokenRegistry
from trafficsafety.service.clock import Clock
from trafficsafety.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    InvalidCredentialsError,
    ValidationError,
)
from trafficsafety.service.refresh_tokens import RefreshToken, RefreshTokenManager
from trafficsafety.service.timeouts import call_with_timeout
from trafficsafety.service.token_codec import IssuedToken, TokenCodec
from trafficsafety.service.users import UserDirectory
from trafficsafety.storage.models import User

if TYPE_CHECKING:
    from trafficsafety.service.guard import AuthenticatedUser

T = TypeVar("T")


@dataclass(frozen=True)
class AuthResult:
    access: IssuedToken
    refresh: RefreshToken
    user: User
    expires_in: int


class Authenticator:
    """Login, refresh and logout flows.

    Store-touching steps run in worker threads bounded by ``timeout_seconds``
    so a stalled database surfaces as ``PersistenceTimeoutError`` instead of
    hanging the request.
    """

    def __init__(
        self,
        users: UserDirectory,
        codec: TokenCodec,
        registry: AccessTokenRegistry,
        refresh_tokens: RefreshTokenManager,
        clock: Clock,
        *,
        access_ttl_seconds: int = 3600,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.users = users
        self.codec = codec
        self.registry = registry
        self.refresh_tokens = refresh_tokens
        self.clock = clock
        self.access_ttl_seconds = access_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)

    async def _call(
        self, timeout: Optional[float], func: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T:
        return await call_with_timeout(
            timeout if timeout is not None else self.timeout_seconds,
            func,
            *args,
            **kwargs,
        )

    async def _issue_access(self, user: User, timeout: Optional[float]) -> IssuedToken:
        issued = self.codec.issue(user, self.access_ttl_seconds)
        await self._call(
            timeout, self.registry.register, user.id, issued.token_id, issued.expires_at
        )
        return issued

    async def _revoke_access_quietly(self, token_id: str, timeout: Optional[float]) -> None:
        try:
            await self._call(timeout, self.registry.revoke, token_id)
        except Exception as exc:  # noqa: BLE001 - original failure is re-raised by caller
            self.logger.warning(
                "access_token_rollback_failed", token_id=token_id[:8], error=str(exc)
            )

    def _result(self, access: IssuedToken, refresh: RefreshToken, user: User) -> AuthResult:
        return AuthResult(
            access=access,
            refresh=refresh,
            user=user,
            expires_in=self.access_ttl_seconds,
        )

    async def login(
        self, email: str, password: str, *, timeout: Optional[float] = None
    ) -> AuthResult:
        user = await self._call(timeout, self.users.find_by_email, email)
        valid = await self._call(timeout, self.users.verify_password, user, password)
        if user is None or not valid:
            self.logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError("invalid email or password")
        if not user.is_active:
            self.logger.info("login_failed", user_id=user.id, reason="user_inactive")
            raise AccountInactiveError("account is inactive")

        logged_in_at = await self._call(timeout, self.users.record_login, user.id)
        user = replace(user, last_login_at=logged_in_at)
        access = await self._issue_access(user, timeout)
        try:
            refresh = await self._call(timeout, self.refresh_tokens.issue, user)
        except Exception:
            await self._revoke_access_quietly(access.token_id, timeout)
            raise
        self.logger.info("login_succeeded", user_id=user.id, role=user.role)
        return self._result(access, refresh, user)

    async def refresh(
        self, refresh_token_value: str, *, timeout: Optional[float] = None
    ) -> AuthResult:
        record = await self._call(
            timeout, self.refresh_tokens.get_active_token, refresh_token_value
        )
        user = await self._call(timeout, self.users.find_by_id, record.user_id)
        if user is None or not user.is_active:
            await self._call(
                timeout, self.refresh_tokens.revoke_chain, record.id, reason="user_invalid"
            )
            if user is None:
                self.logger.warning(
                    "refresh_user_missing", user_id=record.user_id, token_id=record.id
                )
                raise AuthenticationError(
                    "user not found", reason="user_not_found"
                )
            self.logger.info("refresh_user_inactive", user_id=user.id)
            raise AccountInactiveError("account is inactive")

        # bookkeeping runs before rotation so a failure here leaves the presented token usable
        logged_in_at = await self._call(timeout, self.users.record_login, user.id)
        user = replace(user, last_login_at=logged_in_at)
        access = await self._issue_access(user, timeout)
        try:
            refresh = await self._call(
                timeout, self.refresh_tokens.rotate_existing, record, user
            )
        except Exception:
            await self._revoke_access_quietly(access.token_id, timeout)
            raise
        self.logger.info("refresh_succeeded", user_id=user.id)
        return self._result(access, refresh, user)

    async def logout(
        self,
        principal: "AuthenticatedUser",
        *,
        refresh_token: Optional[str] = None,
        invalidate_all: bool = False,
        timeout: Optional[float] = None,
    ) -> None:
        user_id = principal.user_id
        if invalidate_all:
            refresh_count = await self._call(
                timeout, self.refresh_tokens.revoke_all_for_user, user_id
            )
            access_count = await self._call(
                timeout, self.registry.revoke_all_for_user, user_id
            )
            self.logger.info(
                "logout_everywhere",
                user_id=user_id,
                refresh_tokens=refresh_count,
                access_tokens=access_count,
            )
        else:
            if not refresh_token:
                raise ValidationError(
                    "refreshToken or invalidateAll is required",
                    reason="missing_refresh_token",
                )
            revoked = await self._call(
                timeout, self.refresh_tokens.revoke_for_user, user_id, refresh_token
            )
            if not revoked:
                existing = await self._call(timeout, self.refresh_tokens.find, refresh_token)
                if existing is None or existing.user_id != user_id:
                    raise AuthenticationError(
                        "refresh token is invalid",
                        reason="refresh_token_invalid",
                    )
            self.logger.info("logout", user_id=user_id)

        token_id = principal.token_id
        if token_id:
            try:
                await self._call(timeout, self.registry.revoke, token_id)
            except Exception as exc:  # noqa: BLE001 - logout already succeeded
                self.logger.warning(
                    "logout_access_revoke_failed", user_id=user_id, error=str(exc)
                )
