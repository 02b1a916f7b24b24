from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from trafficsafety.logging import get_logger
from trafficsafety.service.clock import Clock, SystemClock
from trafficsafety.service.errors import (
    ExpiredCredentialError,
    InvalidSignatureError,
    MalformedCredentialError,
)
from trafficsafety.storage.models import User

logger = get_logger(__name__)

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


class TokenCodec:
    """Compact HS256 signer and verifier for access tokens.

    Holds only immutable configuration, so one instance can be shared across
    threads. The claim set carries ``sub``, ``iat``, ``exp``, ``jti``,
    ``email``, ``role``, ``isActive``, ``iss`` and ``aud``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        default_ttl_seconds: int = 3600,
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        if default_ttl_seconds <= 0:
            raise ValueError("default TTL must be greater than zero")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.default_ttl_seconds = default_ttl_seconds
        self.clock = clock or SystemClock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    @staticmethod
    def _serialize(data: dict[str, Any]) -> bytes:
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, user: User, ttl_seconds: Optional[int] = None) -> IssuedToken:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("token TTL must be greater than zero")
        now = self.clock.now()
        issued_at = int(now.timestamp())
        expires_at = issued_at + ttl
        token_id = secrets.token_hex(32)
        claims = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "iat": issued_at,
            "exp": expires_at,
            "jti": token_id,
            "email": user.email,
            "role": user.role,
            "isActive": user.is_active,
        }
        header_enc = self._encode_segment(
            self._serialize({"alg": _ALGORITHM, "typ": "JWT"})
        )
        payload_enc = self._encode_segment(self._serialize(claims))
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(
            token=token,
            token_id=token_id,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )

    def _decode_json_segment(self, segment: str, part: str) -> dict[str, Any]:
        try:
            decoded = json.loads(self._decode_segment(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            raise MalformedCredentialError(f"token {part} is not valid JSON") from exc
        if not isinstance(decoded, dict):
            raise MalformedCredentialError(f"token {part} must be an object")
        return decoded

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of ``token`` or raise a ``CredentialError`` subclass."""

        if not isinstance(token, str):
            raise MalformedCredentialError("token must be a string")
        segments = token.split(".")
        if len(segments) != 3 or not all(segments):
            raise MalformedCredentialError("token must have three segments")
        header_b64, payload_b64, sig_b64 = segments

        header = self._decode_json_segment(header_b64, "header")
        payload = self._decode_json_segment(payload_b64, "payload")
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedCredentialError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignatureError("token signature mismatch")

        if payload.get("iss") != self.issuer:
            raise InvalidSignatureError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidSignatureError("token audience mismatch")

        exp = payload.get("exp")
        if exp is None or isinstance(exp, bool):
            raise MalformedCredentialError("token has no expiry")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError) as exc:
            raise MalformedCredentialError("token expiry is not numeric") from exc
        if exp_ts <= self.clock.now().timestamp():
            raise ExpiredCredentialError("token expired")
        return payload

    @staticmethod
    def expires_at(claims: dict[str, Any]) -> Optional[datetime]:
        exp = claims.get("exp")
        try:
            return datetime.fromtimestamp(float(exp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None
