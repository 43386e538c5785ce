import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException

from docledger.core.config import get_settings
from docledger.core.errors import Forbidden

logger = logging.getLogger(__name__)

ALLOWED_ROLES = {"REVIEWER", "ACCOUNTANT", "ADMIN"}

# Roles allowed to accept low-confidence fields and post entries.
LEDGER_ROLES = ("ACCOUNTANT", "ADMIN")
REVIEW_ROLES = ("REVIEWER", "ACCOUNTANT", "ADMIN")


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None


def _extract_role(payload: dict) -> Optional[str]:
    # Role is issued by the identity collaborator in app_metadata only.
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

    return CurrentUser(id=user_id, role=role, email=payload.get("email"))


def require_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise Forbidden(
                f"Role {user.role} may not perform this action",
                errors=[{"rule": "role", "required": list(roles)}],
            )
        return user

    return _dependency
