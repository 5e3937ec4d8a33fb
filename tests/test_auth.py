"""
Tests for session token authentication.
"""

import time

import pytest
from conftest import TEST_JWT_SECRET, make_session_token
from jose import jwt

from sahab.auth.dependencies import TokenVerifier, extract_bearer_token
from sahab.config import IdentityConfig
from sahab.exceptions import AuthError


def test_valid_token_yields_subject(token_verifier):
    assert token_verifier.verify(make_session_token("user_alice")) == "user_alice"


def test_expired_token_is_rejected(token_verifier):
    with pytest.raises(AuthError):
        token_verifier.verify(make_session_token("user_alice", expires_in=-60))


def test_token_signed_with_other_key_is_rejected(token_verifier):
    with pytest.raises(AuthError):
        token_verifier.verify(make_session_token("user_alice", secret="some-other-key"))


def test_token_without_subject_is_rejected(token_verifier):
    token = jwt.encode({"exp": int(time.time()) + 60}, TEST_JWT_SECRET, algorithm="HS256")

    with pytest.raises(AuthError):
        token_verifier.verify(token)


def test_garbage_token_is_rejected(token_verifier):
    with pytest.raises(AuthError):
        token_verifier.verify("not-a-jwt")


def test_issuer_is_enforced_when_configured():
    verifier = TokenVerifier(
        IdentityConfig(
            jwt_key=TEST_JWT_SECRET, jwt_algorithms="HS256", jwt_issuer="https://clerk.sahab.test"
        )
    )
    now = int(time.time())
    good = jwt.encode(
        {"sub": "user_alice", "exp": now + 60, "iss": "https://clerk.sahab.test"},
        TEST_JWT_SECRET,
        algorithm="HS256",
    )
    bad = jwt.encode(
        {"sub": "user_alice", "exp": now + 60, "iss": "https://evil.test"},
        TEST_JWT_SECRET,
        algorithm="HS256",
    )

    assert verifier.verify(good) == "user_alice"
    with pytest.raises(AuthError):
        verifier.verify(bad)


def test_verified_tokens_are_cached(token_verifier):
    token = make_session_token("user_alice")
    token_verifier.verify(token)

    # Swap the key: a cached token no longer needs verification
    token_verifier.config = IdentityConfig(jwt_key="rotated-key", jwt_algorithms="HS256")
    assert token_verifier.verify(token) == "user_alice"

    token_verifier.clear_cache()
    with pytest.raises(AuthError):
        token_verifier.verify(token)


def test_tokens_near_expiry_are_not_served_from_cache(token_verifier):
    token = make_session_token("user_alice", expires_in=2)
    token_verifier._cache[token] = ("user_alice", int(time.time()) + 2)

    # Inside the expiry margin: re-verified (and still valid by exp)
    assert token_verifier.verify(token) == "user_alice"


def test_missing_verification_key():
    verifier = TokenVerifier(IdentityConfig(jwt_key=""))

    with pytest.raises(AuthError):
        verifier.verify(make_session_token("user_alice"))


@pytest.mark.parametrize(
    ("header", "expected"),
    [(None, None), ("", None), ("Bearer abc.def.ghi", "abc.def.ghi"), ("bearer xyz", "xyz")],
)
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


@pytest.mark.parametrize("header", ["Token abc", "Bearer", "Bearer a b"])
def test_malformed_authorization_header(header):
    with pytest.raises(AuthError):
        extract_bearer_token(header)


def test_endpoint_requires_authentication(client):
    response = client.get("/usage/current")

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "AUTH_ERROR"
    assert body["error"] == "Authentication required"


def test_endpoint_rejects_invalid_token(client):
    response = client.get("/usage/current", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401
    assert response.json()["error"] == "Invalid or expired session token"


def test_session_cookie_is_accepted(client):
    client.cookies.set("__session", make_session_token("user_alice"))

    response = client.get("/usage/current")

    assert response.status_code == 200
