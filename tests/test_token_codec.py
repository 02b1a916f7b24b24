"""Tests for the HS256 access-token codec."""

import base64
import json

import pytest

from trafficsafety.service.errors import (
    ExpiredCredentialError,
    InvalidSignatureError,
    MalformedCredentialError,
)
from trafficsafety.service.token_codec import TokenCodec
from trafficsafety.storage.models import User

SECRET = "codec-test-secret-with-plenty-of-entropy-0123456789"


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def codec(clock):
    return TokenCodec(
        SECRET,
        issuer="traffic-safety-api",
        audience="traffic-safety-clients",
        default_ttl_seconds=3600,
        clock=clock,
    )


@pytest.fixture
def user():
    return User(id=42, email="analyst@example.com", role="analyst")


class TestIssue:
    def test_issue_produces_verifiable_token(self, codec, user, clock):
        issued = codec.issue(user)
        claims = codec.verify(issued.token)

        assert claims["sub"] == 42
        assert claims["jti"] == issued.token_id
        assert claims["email"] == "analyst@example.com"
        assert claims["role"] == "analyst"
        assert claims["isActive"] is True
        assert claims["iss"] == "traffic-safety-api"
        assert claims["aud"] == "traffic-safety-clients"
        assert claims["exp"] - claims["iat"] == 3600
        assert issued.expires_at.timestamp() == claims["exp"]

    def test_token_id_is_64_hex_chars(self, codec, user):
        issued = codec.issue(user)
        assert len(issued.token_id) == 64
        int(issued.token_id, 16)

    def test_token_ids_are_unique(self, codec, user):
        assert codec.issue(user).token_id != codec.issue(user).token_id

    def test_custom_ttl(self, codec, user):
        issued = codec.issue(user, ttl_seconds=60)
        claims = codec.verify(issued.token)
        assert claims["exp"] - claims["iat"] == 60

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_non_positive_ttl_rejected(self, codec, user, ttl):
        with pytest.raises(ValueError):
            codec.issue(user, ttl_seconds=ttl)

    def test_header_declares_hs256(self, codec, user):
        header_b64 = codec.issue(user).token.split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(header_b64 + "=" * (-len(header_b64) % 4)))
        assert header == {"alg": "HS256", "typ": "JWT"}


class TestVerify:
    def test_expired_token(self, codec, user, clock):
        issued = codec.issue(user, ttl_seconds=10)
        clock.advance(seconds=10)
        with pytest.raises(ExpiredCredentialError) as exc:
            codec.verify(issued.token)
        assert exc.value.reason == "token_expired"

    def test_token_valid_until_expiry(self, codec, user, clock):
        issued = codec.issue(user, ttl_seconds=10)
        clock.advance(seconds=9)
        assert codec.verify(issued.token)["sub"] == 42

    def test_tampered_payload_fails_signature(self, codec, user):
        header, payload, sig = codec.issue(user).token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["role"] = "admin"
        forged = f"{header}.{_b64(claims)}.{sig}"
        with pytest.raises(InvalidSignatureError):
            codec.verify(forged)

    def test_other_secret_fails_signature(self, codec, user, clock):
        other = TokenCodec(
            "a-completely-different-secret-value-0000000000",
            issuer="traffic-safety-api",
            audience="traffic-safety-clients",
            clock=clock,
        )
        with pytest.raises(InvalidSignatureError):
            codec.verify(other.issue(user).token)

    def test_wrong_audience_is_invalid_signature(self, codec, user, clock):
        other = TokenCodec(
            SECRET, issuer="traffic-safety-api", audience="someone-else", clock=clock
        )
        with pytest.raises(InvalidSignatureError):
            codec.verify(other.issue(user).token)

    def test_wrong_issuer_is_invalid_signature(self, codec, user, clock):
        other = TokenCodec(
            SECRET, issuer="rogue-issuer", audience="traffic-safety-clients", clock=clock
        )
        with pytest.raises(InvalidSignatureError):
            codec.verify(other.issue(user).token)

    @pytest.mark.parametrize(
        "token",
        ["", "abc", "a.b", "a.b.c.d", "..", "!!!.###.$$$"],
    )
    def test_structurally_broken_tokens(self, codec, token):
        with pytest.raises(MalformedCredentialError) as exc:
            codec.verify(token)
        assert exc.value.reason == "token_malformed"

    def test_payload_must_be_object(self, codec):
        header = _b64({"alg": "HS256", "typ": "JWT"})
        payload = base64.urlsafe_b64encode(b"[1,2,3]").decode().rstrip("=")
        with pytest.raises(MalformedCredentialError):
            codec.verify(f"{header}.{payload}.sig")

    def test_alg_none_is_rejected_before_signature(self, codec, user):
        _, payload, sig = codec.issue(user).token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(MalformedCredentialError):
            codec.verify(f"{header}.{payload}.{sig}")

    def test_missing_exp_is_malformed(self, codec):
        header = _b64({"alg": "HS256", "typ": "JWT"})
        payload = _b64(
            {"iss": "traffic-safety-api", "aud": "traffic-safety-clients", "sub": 1, "jti": "x"}
        )
        signing_input = f"{header}.{payload}"
        token = f"{signing_input}.{codec._sign(signing_input)}"
        with pytest.raises(MalformedCredentialError):
            codec.verify(token)

    def test_non_numeric_exp_is_malformed(self, codec):
        header = _b64({"alg": "HS256", "typ": "JWT"})
        payload = _b64(
            {
                "iss": "traffic-safety-api",
                "aud": "traffic-safety-clients",
                "sub": 1,
                "jti": "x",
                "exp": "tomorrow",
            }
        )
        signing_input = f"{header}.{payload}"
        token = f"{signing_input}.{codec._sign(signing_input)}"
        with pytest.raises(MalformedCredentialError):
            codec.verify(token)

    def test_non_ascii_signature_is_rejected(self, codec, user):
        header, payload, _ = codec.issue(user).token.split(".")
        with pytest.raises(InvalidSignatureError):
            codec.verify(f"{header}.{payload}.sïgnature")


def test_empty_secret_rejected(clock):
    with pytest.raises(ValueError):
        TokenCodec("", issuer="i", audience="a", clock=clock)
