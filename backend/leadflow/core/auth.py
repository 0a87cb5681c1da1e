import logging
import secrets
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException

from leadflow.core.config import get_settings

logger = logging.getLogger(__name__)

ALLOWED_ROLES = {"CUSTOMER", "PROVIDER", "ADMIN"}


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None

    @property
    def user_id(self) -> int:
        try:
            return int(self.id)
        except (TypeError, ValueError) as exc:
            raise HTTPException(401, "Invalid token subject") from exc


def _extract_role(payload: dict) -> Optional[str]:
    # SECURITY: role must come only from server-managed app_metadata.
    # user_metadata is user-editable and cannot be trusted for RBAC.
    app_meta = payload.get("app_metadata") or {}
    raw = app_meta.get("role")
    if raw is None:
        return None
    role = str(raw).strip().upper()
    if role not in ALLOWED_ROLES:
        return None
    return role


def _decode_token(token: str, settings) -> Optional[dict]:
    audience = (settings.jwt_audience or "").strip()
    decode_kwargs = {}
    options = {"verify_aud": bool(audience)}
    if audience:
        decode_kwargs["audience"] = audience
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options=options,
            **decode_kwargs,
        )
    except jwt.InvalidTokenError as exc:
        logger.debug("JWT verification failed: %s", exc)
        return None


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    settings = get_settings()
    if not settings.jwt_secret:
        raise HTTPException(500, "JWT_SECRET is not configured")

    payload = _decode_token(token, settings)
    if payload is None:
        raise HTTPException(401, "Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(401, "Invalid token")

    role = _extract_role(payload)
    if not role:
        raise HTTPException(403, "Missing role")

    return CurrentUser(id=str(user_id), role=role, email=payload.get("email"))


def require_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "Forbidden")
        return user

    return _dependency


def require_task_caller(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> str:
    """Allow cron callers holding the shared task key, or an ADMIN token."""
    settings = get_settings()
    expected = settings.scheduled_tasks_api_key
    if x_api_key and expected and secrets.compare_digest(x_api_key, expected):
        return "SYSTEM_CRON"
    user = get_current_user(authorization)
    if user.role != "ADMIN":
        raise HTTPException(403, "Forbidden")
    return "ADMIN"
