"""Unit tests for password hashing and access-token encoding."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from auth import security
from core.errors import TokenExpired, TokenMalformed, TokenSignatureInvalid

SECRET = "unit-test-secret-with-enough-entropy-0123"
ISSUED = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _token(**overrides: object) -> str:
    kwargs = {
        "principal_id": "p1",
        "role": "member",
        "tenant_id": "t1",
        "issued_at": ISSUED,
        "expires_at": ISSUED + timedelta(minutes=60),
        "secret": SECRET,
        "algorithm": "HS256",
    }
    kwargs.update(overrides)
    return security.build_access_token(**kwargs)


def test_password_hash_verifies_only_the_original_password() -> None:
    hashed = security.hash_password("correct horse", rounds=4)

    assert hashed != "correct horse"
    assert security.verify_password("correct horse", hashed)
    assert not security.verify_password("wrong horse", hashed)
    assert not security.verify_password("correct horse", "not-a-bcrypt-hash")


def test_empty_password_cannot_be_hashed() -> None:
    with pytest.raises(ValueError):
        security.hash_password("", rounds=4)


def test_access_token_round_trips_claims() -> None:
    payload = security.decode_access_token(
        _token(),
        secret=SECRET,
        algorithm="HS256",
        now=ISSUED + timedelta(minutes=1),
    )

    assert payload["sub"] == "p1"
    assert payload["role"] == "member"
    assert payload["tenant"] == "t1"
    assert payload["type"] == "access"
    assert payload["exp"] - payload["iat"] == 3600


def test_access_token_is_valid_until_expiry() -> None:
    token = _token()
    expires = ISSUED + timedelta(minutes=60)

    security.decode_access_token(token, secret=SECRET, algorithm="HS256", now=expires - timedelta(seconds=1))
    with pytest.raises(TokenExpired):
        security.decode_access_token(token, secret=SECRET, algorithm="HS256", now=expires)


def test_wrong_secret_is_a_signature_failure() -> None:
    with pytest.raises(TokenSignatureInvalid):
        security.decode_access_token(
            _token(),
            secret="another-secret-with-enough-entropy-9876",
            algorithm="HS256",
            now=ISSUED,
        )


@pytest.mark.parametrize("token", ["", "   ", "not-a-jwt", "a.b.c"])
def test_garbage_tokens_are_malformed(token: str) -> None:
    with pytest.raises(TokenMalformed):
        security.decode_access_token(token, secret=SECRET, algorithm="HS256", now=ISSUED)


def test_non_access_tokens_are_rejected() -> None:
    token = jwt.encode(
        {"sub": "p1", "type": "refresh", "iat": int(ISSUED.timestamp()), "exp": int(ISSUED.timestamp()) + 60},
        SECRET,
        algorithm="HS256",
    )
    with pytest.raises(TokenMalformed):
        security.decode_access_token(token, secret=SECRET, algorithm="HS256", now=ISSUED)


def test_refresh_token_hash_is_stable_and_rejects_empty() -> None:
    raw = security.build_refresh_token()

    assert security.hash_refresh_token(raw) == security.hash_refresh_token(raw)
    assert security.hash_refresh_token(raw) != raw
    with pytest.raises(TokenMalformed):
        security.hash_refresh_token("")
