from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.core.config import get_settings
from counselflow.domain.models import ApiKey, Profile
from counselflow.persistence.db import get_session
from counselflow.services.auth.api_keys import (
    hash_api_key,
    normalize_admin_sub_role,
    normalize_role,
    role_allows,
)
from counselflow.services.auth.principal import Principal
from counselflow.services.security.csrf import verify_csrf_token


logger = logging.getLogger(__name__)

__all__ = [
    "Principal",
    "get_current_principal",
    "get_db",
    "require_csrf",
    "require_reviewer",
    "require_role",
    "require_super_admin",
]


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Allow identity headers only when explicitly enabled for local dev and tests.
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise _auth_error("X-User-Id header is required in dev bypass mode")
    try:
        role = normalize_role(request.headers.get("X-Role", "subscriber"))
        admin_sub_role = normalize_admin_sub_role(request.headers.get("X-Admin-Role"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(
        subject_id=user_id,
        role=role,
        admin_sub_role=admin_sub_role if role == "admin" else None,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))

    if not settings.auth_enabled:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")

    if not bearer_token:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        raise _auth_error("Missing API key")

    try:
        result = await db.execute(
            select(ApiKey, Profile)
            .join(Profile, ApiKey.profile_id == Profile.id)
            .where(ApiKey.key_hash == hash_api_key(bearer_token))
        )
    except SQLAlchemyError as exc:
        logger.warning("auth_lookup_failed path=%s", request.url.path, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc

    row = result.first()
    if row is None:
        logger.info("auth_access_failure reason=unknown_key path=%s", request.url.path)
        raise _auth_error("Invalid API key")
    api_key, profile = row
    if api_key.revoked_at is not None:
        logger.info("auth_access_failure reason=revoked api_key_id=%s", api_key.id)
        raise _auth_error("API key is revoked")
    if api_key.expires_at is not None and _as_utc(api_key.expires_at) <= datetime.now(timezone.utc):
        # Deny expired credentials explicitly so operators can distinguish expiry from revocation.
        logger.info("auth_access_failure reason=expired api_key_id=%s", api_key.id)
        raise _auth_error("API key expired")
    return Principal(
        subject_id=profile.id,
        role=profile.role,
        admin_sub_role=profile.admin_sub_role if profile.role == "admin" else None,
        api_key_id=api_key.id,
    )


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            logger.info(
                "rbac_forbidden subject_id=%s role=%s required_role=%s",
                principal.subject_id,
                principal.role,
                minimum_role,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


async def require_reviewer(principal: Principal = Depends(require_role("admin"))) -> Principal:
    # Review actions need an admin sub-role that is allowed to review letters.
    if not principal.is_reviewer:
        raise _forbidden_error("Reviewer access required")
    return principal


async def require_super_admin(principal: Principal = Depends(require_role("admin"))) -> Principal:
    if not principal.is_super_admin:
        raise _forbidden_error("Super admin access required")
    return principal


async def require_csrf(
    request: Request,
    principal: Principal = Depends(require_reviewer),
) -> Principal:
    # State-changing admin requests must echo a token issued to the same admin.
    token = request.headers.get(get_settings().csrf_header_name)
    if not verify_csrf_token(token, principal.subject_id):
        raise _forbidden_error("Invalid or missing CSRF token")
    return principal
