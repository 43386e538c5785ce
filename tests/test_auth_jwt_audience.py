import jwt
import pytest
from fastapi import HTTPException

from docledger.core.auth import get_current_user, require_roles
from docledger.core.config import get_settings


def _make_token(
    secret: str,
    aud: str,
    *,
    app_role: str | None = "ACCOUNTANT",
    user_role: str | None = None,
) -> str:
    app_meta = {}
    if app_role is not None:
        app_meta["role"] = app_role
    user_meta = {}
    if user_role is not None:
        user_meta["role"] = user_role

    payload = {
        "sub": "00000000-0000-0000-0000-000000000123",
        "email": "books@test.local",
        "app_metadata": app_meta,
        "user_metadata": user_meta,
        "aud": aud,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def jwt_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("JWT_AUDIENCE", "authenticated")
    get_settings.cache_clear()


def test_get_current_user_accepts_matching_audience(jwt_env):
    token = _make_token("test-secret", "authenticated", app_role="accountant")
    user = get_current_user(authorization=f"Bearer {token}")
    assert user.role == "ACCOUNTANT"
    assert user.email == "books@test.local"


def test_get_current_user_rejects_wrong_audience(jwt_env):
    token = _make_token("test-secret", "other")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 401


def test_get_current_user_rejects_wrong_secret(jwt_env):
    token = _make_token("another-secret", "authenticated")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 401


def test_get_current_user_ignores_user_metadata_role(jwt_env):
    token = _make_token("test-secret", "authenticated", app_role=None, user_role="ADMIN")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 403


def test_get_current_user_rejects_unknown_role(jwt_env):
    token = _make_token("test-secret", "authenticated", app_role="CLIENT")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 403


def test_missing_bearer_header_is_unauthorized(jwt_env):
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=None)
    assert exc.value.status_code == 401


def test_unconfigured_secret_is_a_server_error(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "")
    get_settings.cache_clear()
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization="Bearer abc")
    assert exc.value.status_code == 500


def test_require_roles_blocks_other_roles(jwt_env):
    token = _make_token("test-secret", "authenticated", app_role="REVIEWER")
    user = get_current_user(authorization=f"Bearer {token}")
    guard = require_roles("ACCOUNTANT", "ADMIN")
    with pytest.raises(HTTPException) as exc:
        guard(user=user)
    assert exc.value.status_code == 403
    assert exc.value.detail["kind"] == "forbidden"
    assert require_roles("REVIEWER")(user=user) is user
