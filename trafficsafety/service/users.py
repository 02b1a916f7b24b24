from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trafficsafety.logging import get_logger
from trafficsafety.service.clock import Clock
from trafficsafety.service.errors import ValidationError
from trafficsafety.storage.models import User, UserRole

PASSWORD_ALGO = "argon2id"


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        role: str = ...,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...

    def record_login(self, user_id: int, at: datetime) -> None: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class UserDirectory:
    """User lookup, argon2id password checks and login bookkeeping."""

    def __init__(self, store: UserStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against when the email is unknown so both paths cost one argon2 run
        self._dummy_hash = self._pwd_hasher.hash("traffic-safety-dummy-password")

    def find_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.store.get_user_by_email(normalized)

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self.store.get_user(user_id)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user: Optional[User], password: str) -> bool:
        if user is None:
            self._burn_dummy_verify(password)
            return False
        record = self.store.get_password_record(user.id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user.id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    def record_login(self, user_id: int) -> datetime:
        at = self.clock.now()
        self.store.record_login(user_id, at)
        return at

    def create_user(
        self,
        email: str,
        password: str,
        *,
        role: str = UserRole.VIEWER.value,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        if not password:
            raise ValidationError("password required", detail={"field": "password"})
        try:
            role_value = UserRole(role.lower()).value
        except ValueError as exc:
            raise ValidationError("unknown role", detail={"field": "role"}) from exc
        user = self.store.create_user(
            normalized,
            role=role_value,
            first_name=first_name,
            last_name=last_name,
            is_active=is_active,
        )
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_created", user_id=user.id, role=role_value)
        return user
