from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from trafficsafety.logging import get_logger
from trafficsafety.service.clock import Clock
from trafficsafety.storage.models import AccessTokenRecord


class AccessTokenStore(Protocol):
    def upsert_access_token(
        self, user_id: int, token_id: str, issued_at: datetime, expires_at: datetime
    ) -> AccessTokenRecord: ...

    def get_access_token(self, token_id: str) -> Optional[AccessTokenRecord]: ...

    def revoke_access_token(self, token_id: str, revoked_at: datetime) -> bool: ...

    def revoke_user_access_tokens(self, user_id: int, revoked_at: datetime) -> int: ...

    def delete_expired_access_tokens(self, now: datetime) -> int: ...


class AccessTokenRegistry:
    """Server-side record of issued access tokens, making them revocable."""

    def __init__(self, store: AccessTokenStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock
        self.logger = get_logger(__name__)

    def register(
        self, user_id: int, token_id: str, expires_at: datetime
    ) -> AccessTokenRecord:
        """Record ``token_id``; an existing record is overwritten and un-revoked."""
        record = self.store.upsert_access_token(
            user_id, token_id, self.clock.now(), expires_at
        )
        self.logger.info(
            "access_token_registered",
            user_id=user_id,
            token_id=token_id[:8],
            expires_at=expires_at.isoformat(),
        )
        return record

    def find(self, token_id: str) -> Optional[AccessTokenRecord]:
        return self.store.get_access_token(token_id)

    def revoke(self, token_id: str) -> bool:
        revoked = self.store.revoke_access_token(token_id, self.clock.now())
        if revoked:
            self.logger.info("access_token_revoked", token_id=token_id[:8])
        return revoked

    def revoke_all_for_user(self, user_id: int) -> int:
        count = self.store.revoke_user_access_tokens(user_id, self.clock.now())
        self.logger.info("access_tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    def prune_expired(self) -> int:
        count = self.store.delete_expired_access_tokens(self.clock.now())
        if count:
            self.logger.info("access_tokens_pruned", count=count)
        return count
