from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Roles recognised by the access guard."""

    ADMIN = "admin"
    MANAGER = "manager"
    ANALYST = "analyst"
    VIEWER = "viewer"


@dataclass
class User:
    id: int
    email: str
    role: str = UserRole.VIEWER.value
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else self.email


@dataclass
class AccessTokenRecord:
    """Server-side metadata of one issued access token, keyed by ``token_id``."""

    id: int
    user_id: int
    token_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked() and not self.is_expired(now)


@dataclass
class RefreshTokenRecord:
    """Stored refresh token; only the SHA-256 digest of the secret is kept."""

    id: int
    user_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by_token_id: Optional[int] = None
    revoked_reason: Optional[str] = None

    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked() and not self.is_expired(now)
