from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence, Union

from trafficsafety.logging import get_logger
from trafficsafety.service.access_registry import AccessTokenRegistry
from trafficsafety.service.audit import AuditLogger
from trafficsafety.service.errors import (
    AuthenticationError,
    CredentialError,
    ForbiddenError,
    PersistenceTimeoutError,
    ServiceError,
)
from trafficsafety.service.timeouts import call_with_timeout
from trafficsafety.service.token_codec import TokenCodec
from trafficsafety.service.users import UserDirectory
from trafficsafety.storage.models import User, UserRole

USER_ATTRIBUTE = "auth.user"
CLAIMS_ATTRIBUTE = "auth.token.claims"

RoleLike = Union[UserRole, str]


def _role_value(role: RoleLike) -> str:
    if isinstance(role, UserRole):
        return role.value
    return str(role).lower()


@dataclass
class RequestContext:
    """The parts of an inbound request the guard inspects."""

    method: str
    path: str
    authorization: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthenticatedUser:
    user: User
    claims: dict[str, Any]

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def token_id(self) -> Optional[str]:
        jti = self.claims.get("jti")
        return jti if isinstance(jti, str) and jti else None

    @property
    def role(self) -> str:
        return self.user.role

    @property
    def expires_at(self) -> Optional[datetime]:
        return TokenCodec.expires_at(self.claims)

    def has_role(self, role: RoleLike) -> bool:
        return (self.user.role or "").lower() == _role_value(role)

    def has_any_role(self, roles: Iterable[RoleLike]) -> bool:
        return any(self.has_role(role) for role in roles)


def _parse_subject(sub: Any) -> Optional[int]:
    if isinstance(sub, bool):
        return None
    if isinstance(sub, int):
        return sub
    if isinstance(sub, str) and sub.isdigit():
        return int(sub)
    return None


class AuthGuard:
    """Per-request authentication and role check.

    Runs header parsing, token verification, registry lookup, user state
    and role checks in a fixed order, stopping at the first failure. Every
    decision is written to the audit logger.
    """

    def __init__(
        self,
        codec: TokenCodec,
        registry: AccessTokenRegistry,
        users: UserDirectory,
        audit: AuditLogger,
        *,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.codec = codec
        self.registry = registry
        self.users = users
        self.audit = audit
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)

    def _audit(self, level: str, event: str, **ctx: Any) -> None:
        try:
            getattr(self.audit, level)(event, **ctx)
        except Exception as exc:  # noqa: BLE001 - audit sink must not decide the request
            self.logger.warning("audit_write_failed", audit_event=event, error=str(exc))

    async def _revoke_quietly(self, token_id: str, bound: float, reason: str) -> None:
        try:
            await call_with_timeout(bound, self.registry.revoke, token_id)
        except Exception as exc:  # noqa: BLE001 - the denial stands either way
            self.logger.warning(
                "token_hygiene_revoke_failed",
                token_id=token_id[:8],
                reason=reason,
                error=str(exc),
            )

    def _deny(
        self,
        request: RequestContext,
        error: ServiceError,
        *,
        user_id: Optional[int] = None,
        required_roles: Sequence[str] = (),
    ) -> ServiceError:
        self._audit(
            "error",
            "request_denied",
            method=request.method,
            path=request.path,
            user_id=user_id,
            reason=error.reason,
            required_roles=list(required_roles),
        )
        return error

    @staticmethod
    def _unauthenticated(message: str, reason: str) -> AuthenticationError:
        return AuthenticationError(message, reason=reason)

    async def authorize(
        self,
        request: RequestContext,
        allowed_roles: Optional[Iterable[RoleLike]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> AuthenticatedUser:
        required = [_role_value(role) for role in allowed_roles or ()]
        bound = timeout if timeout is not None else self.timeout_seconds

        existing = request.attributes.get(USER_ATTRIBUTE)
        if isinstance(existing, AuthenticatedUser):
            if required and not existing.has_any_role(required):
                raise self._deny(
                    request,
                    ForbiddenError("insufficient role", reason="insufficient_role"),
                    user_id=existing.user_id,
                    required_roles=required,
                )
            return existing

        header = (request.authorization or "").strip()
        if not header:
            raise self._deny(
                request,
                self._unauthenticated("authorization header missing", "missing_authorization"),
                required_roles=required,
            )
        scheme, _, credential = header.partition(" ")
        if scheme.lower() != "bearer":
            raise self._deny(
                request,
                self._unauthenticated("bearer token required", "invalid_scheme"),
                required_roles=required,
            )
        credential = credential.strip()
        if not credential:
            raise self._deny(
                request,
                self._unauthenticated("bearer token is empty", "empty_token"),
                required_roles=required,
            )

        try:
            claims = self.codec.verify(credential)
        except CredentialError as exc:
            raise self._deny(
                request,
                self._unauthenticated("access token rejected", exc.reason),
                required_roles=required,
            ) from exc

        user_id = _parse_subject(claims.get("sub"))
        if user_id is None:
            raise self._deny(
                request,
                self._unauthenticated("token subject is invalid", "invalid_subject"),
                required_roles=required,
            )
        token_id = claims.get("jti")
        if not isinstance(token_id, str) or not token_id:
            raise self._deny(
                request,
                self._unauthenticated("token id missing", "missing_token_id"),
                user_id=user_id,
                required_roles=required,
            )

        try:
            record = await call_with_timeout(bound, self.registry.find, token_id)
        except PersistenceTimeoutError as exc:
            self.logger.error("token_registry_unavailable", error=exc.message)
            raise self._deny(
                request,
                self._unauthenticated("token registry unavailable", "registry_unavailable"),
                user_id=user_id,
                required_roles=required,
            ) from exc
        if record is None:
            raise self._deny(
                request,
                self._unauthenticated("token is not registered", "token_not_registered"),
                user_id=user_id,
                required_roles=required,
            )
        if record.is_revoked():
            raise self._deny(
                request,
                self._unauthenticated("token has been revoked", "token_revoked"),
                user_id=user_id,
                required_roles=required,
            )
        if record.is_expired(self.registry.clock.now()):
            await self._revoke_quietly(token_id, bound, "token_expired")
            raise self._deny(
                request,
                self._unauthenticated("token has expired", "token_expired"),
                user_id=user_id,
                required_roles=required,
            )

        try:
            user = await call_with_timeout(bound, self.users.find_by_id, user_id)
        except ServiceError as exc:
            raise self._deny(request, exc, user_id=user_id, required_roles=required)
        if user is None:
            raise self._deny(
                request,
                self._unauthenticated("user not found", "user_not_found"),
                user_id=user_id,
                required_roles=required,
            )
        if not user.is_active:
            raise self._deny(
                request,
                ForbiddenError("account is inactive", reason="user_inactive"),
                user_id=user_id,
                required_roles=required,
            )

        principal = AuthenticatedUser(user=user, claims=claims)
        if required and not principal.has_any_role(required):
            raise self._deny(
                request,
                ForbiddenError("insufficient role", reason="insufficient_role"),
                user_id=user_id,
                required_roles=required,
            )

        if record.user_id != user.id:
            await self._revoke_quietly(token_id, bound, "token_user_mismatch")
            raise self._deny(
                request,
                self._unauthenticated("token does not match user", "token_user_mismatch"),
                user_id=user_id,
                required_roles=required,
            )

        request.attributes[USER_ATTRIBUTE] = principal
        request.attributes[CLAIMS_ATTRIBUTE] = claims
        self._audit(
            "info",
            "request_granted",
            method=request.method,
            path=request.path,
            user_id=user.id,
            role=user.role,
        )
        return principal
