from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from trafficsafety.logging import get_logger
from trafficsafety.service.clock import Clock
from trafficsafety.service.errors import (
    AuthenticationError,
    ReplayDetectedError,
    TokenExpiredError,
    TokenRevokedError,
    UnknownTokenError,
)
from trafficsafety.storage.models import RefreshTokenRecord, User

DEFAULT_REFRESH_TTL_SECONDS = 14 * 24 * 60 * 60


class RefreshTokenStore(Protocol):
    def create_refresh_token(
        self, user_id: int, token_hash: str, issued_at: datetime, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def get_refresh_token_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self,
        token_id: int,
        successor_hash: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(
        self, token_id: int, revoked_at: datetime, reason: str = "revoked"
    ) -> bool: ...

    def revoke_refresh_token_for_user(
        self, user_id: int, token_hash: str, revoked_at: datetime, reason: str = "logout"
    ) -> bool: ...

    def revoke_user_refresh_tokens(
        self, user_id: int, revoked_at: datetime, reason: str = "logout"
    ) -> int: ...

    def revoke_refresh_chain(
        self, token_id: int, revoked_at: datetime, reason: str = "replay"
    ) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class RefreshToken:
    """A freshly minted refresh token; ``token`` is the only copy of the secret."""

    token: str
    token_id: int
    user_id: int
    expires_at: datetime


def hash_token(token_value: str) -> str:
    return hashlib.sha256(token_value.encode()).hexdigest()


class RefreshTokenManager:
    """Opaque refresh tokens with single-use rotation.

    Each rotation supersedes the presented token and links it to its
    successor. Presenting a superseded token again is treated as theft: the
    whole chain is revoked so neither the attacker nor the victim can keep
    refreshing.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        clock: Clock,
        *,
        default_ttl_seconds: int = DEFAULT_REFRESH_TTL_SECONDS,
    ) -> None:
        if default_ttl_seconds <= 0:
            raise ValueError("default TTL must be greater than zero")
        self.store = store
        self.clock = clock
        self.default_ttl_seconds = default_ttl_seconds
        self.logger = get_logger(__name__)

    def _resolve_ttl(self, ttl_seconds: Optional[int]) -> int:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("refresh token TTL must be greater than zero")
        return ttl

    @staticmethod
    def _generate_secret() -> str:
        return secrets.token_hex(64)

    def issue(self, user: User, ttl_seconds: Optional[int] = None) -> RefreshToken:
        if user is None or user.id is None:
            raise ValueError("refresh tokens require a persisted user")
        ttl = self._resolve_ttl(ttl_seconds)
        now = self.clock.now()
        secret = self._generate_secret()
        record = self.store.create_refresh_token(
            user.id, hash_token(secret), now, now + timedelta(seconds=ttl)
        )
        self.logger.info("refresh_token_issued", user_id=user.id, token_id=record.id)
        return RefreshToken(
            token=secret,
            token_id=record.id,
            user_id=record.user_id,
            expires_at=record.expires_at,
        )

    def find(self, token_value: str) -> Optional[RefreshTokenRecord]:
        if not token_value:
            return None
        return self.store.get_refresh_token_by_hash(hash_token(token_value))

    def get_active_token(self, token_value: str) -> RefreshTokenRecord:
        record = self.find(token_value)
        if record is None:
            raise UnknownTokenError("refresh token is invalid")
        if record.revoked_at is not None:
            if record.replaced_by_token_id is not None:
                revoked = self.revoke_chain(record.id, reason="replay")
                self.logger.warning(
                    "refresh_token_replay_detected",
                    user_id=record.user_id,
                    token_id=record.id,
                    chain_revoked=revoked,
                )
                raise ReplayDetectedError("refresh token has been revoked")
            self.logger.info(
                "refresh_token_rejected",
                user_id=record.user_id,
                token_id=record.id,
                revoked_reason=record.revoked_reason,
            )
            raise TokenRevokedError("refresh token has been revoked")
        if record.is_expired(self.clock.now()):
            self.revoke_by_id(record.id, reason="expired")
            raise TokenExpiredError("refresh token has expired")
        return record

    def rotate_existing(
        self,
        record: RefreshTokenRecord,
        user: User,
        ttl_seconds: Optional[int] = None,
    ) -> RefreshToken:
        if record.user_id != user.id:
            self.revoke_by_id(record.id, reason="revoked")
            self.logger.warning(
                "refresh_token_owner_mismatch",
                token_id=record.id,
                token_user_id=record.user_id,
                user_id=user.id,
            )
            raise AuthenticationError(
                "refresh token does not belong to user",
                reason="refresh_token_invalid",
            )
        ttl = self._resolve_ttl(ttl_seconds)
        now = self.clock.now()
        secret = self._generate_secret()
        successor = self.store.rotate_refresh_token(
            record.id, hash_token(secret), now, now + timedelta(seconds=ttl)
        )
        if successor is None:
            revoked = self.revoke_chain(record.id, reason="replay")
            self.logger.warning(
                "refresh_token_replay_detected",
                user_id=record.user_id,
                token_id=record.id,
                chain_revoked=revoked,
                concurrent=True,
            )
            raise ReplayDetectedError("refresh token has been revoked")
        self.logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            token_id=record.id,
            successor_id=successor.id,
        )
        return RefreshToken(
            token=secret,
            token_id=successor.id,
            user_id=successor.user_id,
            expires_at=successor.expires_at,
        )

    def revoke_by_id(self, token_id: int, reason: str = "revoked") -> bool:
        return self.store.revoke_refresh_token(token_id, self.clock.now(), reason)

    def revoke_for_user(self, user_id: int, token_value: str) -> bool:
        if not token_value:
            return False
        revoked = self.store.revoke_refresh_token_for_user(
            user_id, hash_token(token_value), self.clock.now(), "logout"
        )
        if revoked:
            self.logger.info("refresh_token_revoked", user_id=user_id)
        return revoked

    def revoke_all_for_user(self, user_id: int) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, self.clock.now(), "logout")
        self.logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    def revoke_chain(self, token_id: int, reason: str = "replay") -> int:
        return self.store.revoke_refresh_chain(token_id, self.clock.now(), reason)

    def prune_expired(self) -> int:
        count = self.store.delete_expired_refresh_tokens(self.clock.now())
        if count:
            self.logger.info("refresh_tokens_pruned", count=count)
        return count
