from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from trafficsafety.logging import get_logger
from trafficsafety.storage.errors import ConstraintViolation
from trafficsafety.storage.models import (
    AccessTokenRecord,
    RefreshTokenRecord,
    User,
    UserRole,
    utcnow,
)


class MemoryStore:
    """In-process store for users, access-token records and refresh tokens.

    Every read and write happens under one re-entrant lock, so each method is
    an atomic compare-and-set with respect to the others. Callers receive
    copies of the stored records. State is mirrored to
    ``<fs_root>/state/memory_store.json`` after each mutation.
    """

    def __init__(self, fs_root: str = "/tmp/traffic-safety") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.access_tokens: Dict[str, AccessTokenRecord] = {}
        self.refresh_tokens: Dict[int, RefreshTokenRecord] = {}
        self._sequences: Dict[str, int] = {"user": 0, "access_token": 0, "refresh_token": 0}
        # RLock so helpers can re-acquire while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _next_id(self, sequence: str) -> int:
        with self._data_lock:
            self._sequences[sequence] += 1
            return self._sequences[sequence]

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        """Memory store is always reachable; present for health checks."""

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = UserRole.VIEWER.value,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=self._next_id("user"),
                email=email,
                role=role,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def _update_user(self, user_id: int, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, updated_at=utcnow(), **changes)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def record_login(self, user_id: int, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            self.users[user_id] = replace(user, last_login_at=at)
            self._persist_state()

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # access tokens
    def upsert_access_token(
        self, user_id: int, token_id: str, issued_at: datetime, expires_at: datetime
    ) -> AccessTokenRecord:
        with self._data_lock:
            existing = self.access_tokens.get(token_id)
            record = AccessTokenRecord(
                id=existing.id if existing else self._next_id("access_token"),
                user_id=user_id,
                token_id=token_id,
                issued_at=issued_at,
                expires_at=expires_at,
                revoked_at=None,
            )
            self.access_tokens[token_id] = record
            self._persist_state()
            return replace(record)

    def get_access_token(self, token_id: str) -> Optional[AccessTokenRecord]:
        with self._data_lock:
            record = self.access_tokens.get(token_id)
            return replace(record) if record else None

    def revoke_access_token(self, token_id: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            record = self.access_tokens.get(token_id)
            if not record or record.revoked_at is not None:
                return False
            self.access_tokens[token_id] = replace(record, revoked_at=revoked_at)
            self._persist_state()
            return True

    def revoke_user_access_tokens(self, user_id: int, revoked_at: datetime) -> int:
        with self._data_lock:
            targets = [
                token_id
                for token_id, record in self.access_tokens.items()
                if record.user_id == user_id and record.revoked_at is None
            ]
            for token_id in targets:
                self.access_tokens[token_id] = replace(
                    self.access_tokens[token_id], revoked_at=revoked_at
                )
            if targets:
                self._persist_state()
            return len(targets)

    def delete_expired_access_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token_id
                for token_id, record in self.access_tokens.items()
                if record.expires_at <= now
            ]
            for token_id in stale:
                self.access_tokens.pop(token_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # refresh tokens
    def _insert_refresh_token(
        self, user_id: int, token_hash: str, issued_at: datetime, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
            if any(r.token_hash == token_hash for r in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
            record = RefreshTokenRecord(
                id=self._next_id("refresh_token"),
                user_id=user_id,
                token_hash=token_hash,
                issued_at=issued_at,
                expires_at=expires_at,
            )
            self.refresh_tokens[record.id] = record
            return record

    def create_refresh_token(
        self, user_id: int, token_hash: str, issued_at: datetime, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            record = self._insert_refresh_token(user_id, token_hash, issued_at, expires_at)
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token_id: int) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.refresh_tokens.values() if r.token_hash == token_hash),
                None,
            )
            return replace(record) if record else None

    def rotate_refresh_token(
        self,
        token_id: int,
        successor_hash: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Optional[RefreshTokenRecord]:
        """Supersede an active token with a new one, or return None if it is no longer active."""
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or not current.is_active(issued_at):
                return None
            successor = self._insert_refresh_token(
                current.user_id, successor_hash, issued_at, expires_at
            )
            self.refresh_tokens[token_id] = replace(
                current,
                revoked_at=issued_at,
                revoked_reason="rotated",
                replaced_by_token_id=successor.id,
            )
            self._persist_state()
            return replace(successor)

    def revoke_refresh_token(
        self, token_id: int, revoked_at: datetime, reason: str = "revoked"
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked_at is not None:
                return False
            self.refresh_tokens[token_id] = replace(
                record, revoked_at=revoked_at, revoked_reason=reason
            )
            self._persist_state()
            return True

    def revoke_refresh_token_for_user(
        self, user_id: int, token_hash: str, revoked_at: datetime, reason: str = "logout"
    ) -> bool:
        with self._data_lock:
            record = next(
                (
                    r
                    for r in self.refresh_tokens.values()
                    if r.token_hash == token_hash
                    and r.user_id == user_id
                    and r.revoked_at is None
                ),
                None,
            )
            if record is None:
                return False
            return self.revoke_refresh_token(record.id, revoked_at, reason)

    def revoke_user_refresh_tokens(
        self, user_id: int, revoked_at: datetime, reason: str = "logout"
    ) -> int:
        with self._data_lock:
            targets = [
                r.id
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.revoked_at is None
            ]
            for token_id in targets:
                self.refresh_tokens[token_id] = replace(
                    self.refresh_tokens[token_id],
                    revoked_at=revoked_at,
                    revoked_reason=reason,
                )
            if targets:
                self._persist_state()
            return len(targets)

    def revoke_refresh_chain(
        self, token_id: int, revoked_at: datetime, reason: str = "replay"
    ) -> int:
        """Revoke ``token_id`` and every successor linked through ``replaced_by_token_id``."""
        with self._data_lock:
            revoked = 0
            seen: set[int] = set()
            current_id: Optional[int] = token_id
            while current_id is not None and current_id not in seen:
                seen.add(current_id)
                record = self.refresh_tokens.get(current_id)
                if record is None:
                    break
                if record.revoked_at is None:
                    self.refresh_tokens[current_id] = replace(
                        record, revoked_at=revoked_at, revoked_reason=reason
                    )
                    revoked += 1
                current_id = record.replaced_by_token_id
            if revoked:
                self._persist_state()
            return revoked

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        """Drop expired tokens, keeping those whose successor is still live for replay checks."""
        with self._data_lock:
            stale = set()
            for record in self.refresh_tokens.values():
                if record.expires_at > now:
                    continue
                successor = self.refresh_tokens.get(record.replaced_by_token_id or -1)
                if successor is None or successor.expires_at <= now:
                    stale.add(record.id)
            if not stale:
                return 0
            for token_id in stale:
                self.refresh_tokens.pop(token_id, None)
            for token_id, record in self.refresh_tokens.items():
                if record.replaced_by_token_id in stale:
                    self.refresh_tokens[token_id] = replace(record, replaced_by_token_id=None)
            self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "sequences": self._sequences,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "access_tokens": [
                self._serialize_access_token(r) for r in self.access_tokens.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            int(entry["user_id"]): (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.access_tokens = {
            r["token_id"]: self._deserialize_access_token(r)
            for r in data.get("access_tokens", [])
        }
        self.refresh_tokens = {
            int(r["id"]): self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self._sequences.update(data.get("sequences", {}))
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            access_tokens=len(self.access_tokens),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            email=data["email"],
            role=data.get("role", UserRole.VIEWER.value),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_access_token(self, record: AccessTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_id": record.token_id,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
        }

    def _deserialize_access_token(self, data: dict) -> AccessTokenRecord:
        return AccessTokenRecord(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            token_id=data["token_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "replaced_by_token_id": record.replaced_by_token_id,
            "revoked_reason": record.revoked_reason,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        replaced_by = data.get("replaced_by_token_id")
        return RefreshTokenRecord(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            token_hash=data["token_hash"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by_token_id=int(replaced_by) if replaced_by is not None else None,
            revoked_reason=data.get("revoked_reason"),
        )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.id)[:limit]
            return [replace(u) for u in results]
