"""Tests for session JWT validation and the header fallback."""
import time

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from polaris.core.auth import AuthenticatedUser, get_current_user, verify_session_jwt
from polaris.core.config import settings
from polaris.core.errors import AppError, UnauthorizedError, app_error_handler

SECRET = "test_jwt_secret_value_0123456789"


def _token(secret=SECRET, **claims):
    payload = {"sub": "user_alice", "email": "alice@example.com", "exp": int(time.time()) + 3600}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def client():
    test_app = FastAPI()
    test_app.add_exception_handler(AppError, app_error_handler)

    @test_app.get("/me")
    async def me(user: AuthenticatedUser = Depends(get_current_user)):
        return {"user_id": user.user_id, "email": user.email}

    return TestClient(test_app)


def test_valid_token():
    user = verify_session_jwt(_token(), SECRET)
    assert user == AuthenticatedUser(user_id="user_alice", email="alice@example.com")


def test_expired_token():
    with pytest.raises(UnauthorizedError, match="Token expired"):
        verify_session_jwt(_token(exp=int(time.time()) - 10), SECRET)


def test_wrong_signature():
    with pytest.raises(UnauthorizedError, match="Invalid token"):
        verify_session_jwt(_token(secret="another_jwt_secret_value_0123456789"), SECRET)


def test_token_without_subject():
    with pytest.raises(UnauthorizedError):
        verify_session_jwt(_token(sub=None), SECRET)


def test_no_secret_configured_skips_validation(monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", None)
    assert verify_session_jwt(_token()) is None


def test_bearer_token_authenticates(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", SECRET)

    resp = client.get("/me", headers={"Authorization": f"Bearer {_token()}"})

    assert resp.status_code == 200
    assert resp.json() == {"user_id": "user_alice", "email": "alice@example.com"}


def test_invalid_bearer_token_is_401(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", SECRET)

    resp = client.get("/me", headers={"Authorization": "Bearer not-a-jwt"})

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"


def test_header_fallback(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_HEADER_FALLBACK", True)
    resp = client.get("/me", headers={"X-User-Id": "user_bob"})
    assert resp.json() == {"user_id": "user_bob", "email": None}


def test_headers_ignored_without_fallback(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_HEADER_FALLBACK", False)
    resp = client.get("/me", headers={"X-User-Id": "user_bob"})
    assert resp.status_code == 401
