import logging
from dataclasses import dataclass, field
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException

from campus_admin.core.config import get_settings
from campus_admin.core.permissions import CapabilitySet, derive_capabilities

logger = logging.getLogger(__name__)

KNOWN_SUB_ROLES = {"dean"}


@dataclass
class CurrentUser:
    id: str
    role: Optional[str]
    email: Optional[str] = None
    sub_roles: tuple[str, ...] = field(default_factory=tuple)
    department: Optional[str] = None
    faculty: Optional[str] = None


def _extract_role(payload: dict) -> Optional[str]:
    # Role is read from server-managed app_metadata only. An unknown or missing
    # role is kept as None and the capability set derived from it is empty.
    app_meta = payload.get("app_metadata") or {}
    raw = app_meta.get("role")
    if raw is None:
        return None
    role = str(raw).strip().lower()
    return role or None


def _extract_sub_roles(payload: dict) -> tuple[str, ...]:
    app_meta = payload.get("app_metadata") or {}
    raw = app_meta.get("sub_roles") or []
    if isinstance(raw, str):
        raw = [raw]
    out = []
    for item in raw:
        value = str(item).strip().lower()
        if value in KNOWN_SUB_ROLES and value not in out:
            out.append(value)
    return tuple(out)


def _decode_options(settings):
    audience = (settings.jwt_audience or "").strip()
    decode_kwargs = {}
    options = {}
    if audience:
        decode_kwargs["audience"] = audience
        options["verify_aud"] = True
    else:
        options["verify_aud"] = False
    return decode_kwargs, options


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    settings = get_settings()
    if not settings.jwt_secret:
        raise HTTPException(500, "JWT_SECRET is not configured")

    decode_kwargs, options = _decode_options(settings)
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options=options,
            **decode_kwargs,
        )
    except jwt.InvalidTokenError as exc:
        logger.debug("Token verification failed: %s", exc)
        raise HTTPException(401, "Invalid token") from exc

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(401, "Invalid token")

    app_meta = payload.get("app_metadata") or {}
    return CurrentUser(
        id=str(user_id),
        role=_extract_role(payload),
        email=payload.get("email"),
        sub_roles=_extract_sub_roles(payload),
        department=app_meta.get("department"),
        faculty=app_meta.get("faculty"),
    )


def get_capabilities(user: CurrentUser = Depends(get_current_user)) -> CapabilitySet:
    # Recomputed on every request from the current role claim.
    return derive_capabilities(user.role, user.sub_roles)
