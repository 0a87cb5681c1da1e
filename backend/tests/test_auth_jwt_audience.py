import jwt
import pytest
from fastapi import HTTPException

from leadflow.core.auth import get_current_user, require_task_caller
from leadflow.core.config import get_settings


def _make_token(
    secret: str,
    aud: str | None,
    *,
    app_role: str | None = "ADMIN",
    user_role: str | None = None,
    sub: str = "123",
) -> str:
    app_meta = {}
    if app_role is not None:
        app_meta["role"] = app_role
    user_meta = {}
    if user_role is not None:
        user_meta["role"] = user_role

    payload = {
        "sub": sub,
        "email": "admin@test.local",
        "app_metadata": app_meta,
        "user_metadata": user_meta,
    }
    if aud is not None:
        payload["aud"] = aud
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def audience(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("JWT_AUDIENCE", "authenticated")
    get_settings.cache_clear()


def test_get_current_user_accepts_matching_audience(audience):
    token = _make_token("test-secret", "authenticated")
    user = get_current_user(authorization=f"Bearer {token}")
    assert user.role == "ADMIN"
    assert user.user_id == 123


def test_get_current_user_rejects_wrong_audience(audience):
    token = _make_token("test-secret", "other")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 401


def test_get_current_user_rejects_wrong_secret(audience):
    token = _make_token("not-the-secret", "authenticated")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 401


def test_get_current_user_ignores_user_metadata_role(audience):
    token = _make_token("test-secret", "authenticated", app_role=None, user_role="ADMIN")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 403


def test_unknown_role_is_refused(audience):
    token = _make_token("test-secret", "authenticated", app_role="SUPERUSER")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 403


def test_audience_not_checked_when_unset(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("JWT_AUDIENCE", "")
    get_settings.cache_clear()

    token = _make_token("test-secret", None, app_role="provider")
    assert get_current_user(authorization=f"Bearer {token}").role == "PROVIDER"


def test_non_numeric_subject_is_unauthorized(audience):
    token = _make_token("test-secret", "authenticated", sub="not-a-number")
    user = get_current_user(authorization=f"Bearer {token}")
    with pytest.raises(HTTPException) as exc:
        user.user_id
    assert exc.value.status_code == 401


def test_task_caller_prefers_api_key(monkeypatch):
    monkeypatch.setenv("SCHEDULED_TASKS_API_KEY", "cron-secret")
    get_settings.cache_clear()

    assert require_task_caller(x_api_key="cron-secret", authorization=None) == "SYSTEM_CRON"
    with pytest.raises(HTTPException) as exc:
        require_task_caller(x_api_key="guess", authorization=None)
    assert exc.value.status_code == 401
