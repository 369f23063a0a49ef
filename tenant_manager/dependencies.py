"""
Request authentication for the license API and the operator API.

Two schemes are accepted on the Authorization header:

    Bearer <token>   signed session token of an identity-store user
    ApiKey <key>     tenant-scoped API key, rate limited per hour

API keys act only on their own tenant and need the endpoint's permission.
Bearer users act only on tenants they own.
"""

import hmac
import logging
from dataclasses import dataclass, field

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.auth import decode_access_token, token_user_id
from tenant_manager.config import settings
from tenant_manager.database import get_db
from tenant_manager.exceptions import AccessDeniedError, AuthError
from tenant_manager.models.api_key import ApiKey
from tenant_manager.models.user import User
from tenant_manager.services.api_key_service import APIKeyService

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "
API_KEY_PREFIX = "ApiKey "


@dataclass
class Principal:
    scheme: str
    user_id: int | None = None
    tenant_id: int | None = None
    api_key: ApiKey | None = None
    claims: dict = field(default_factory=dict)

    @property
    def is_api_key(self) -> bool:
        return self.scheme == "api_key"

    def has_permission(self, permission: str) -> bool:
        if self.api_key is None:
            return True
        return self.api_key.has_permission(permission)


async def get_principal(
    request: Request,
    authorization: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    if not authorization:
        raise AuthError("Authorization header is required")

    if authorization.startswith(BEARER_PREFIX):
        payload = decode_access_token(authorization[len(BEARER_PREFIX) :].strip())
        user = await db.get(User, token_user_id(payload))
        if user is None or not user.is_active:
            raise AuthError("User not found or inactive")
        principal = Principal(scheme="bearer", user_id=user.id, tenant_id=payload.get("tenant_id"), claims=payload)
    elif authorization.startswith(API_KEY_PREFIX):
        api_key = await APIKeyService(db).validate(authorization[len(API_KEY_PREFIX) :].strip())
        principal = Principal(scheme="api_key", tenant_id=api_key.tenant_id, api_key=api_key)
    else:
        raise AuthError("Unsupported authorization scheme")

    request.state.principal = principal
    return principal


def require_permission(permission: str):
    async def _principal_with_permission(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_permission(permission):
            logger.warning("API key %s lacks permission %s", principal.api_key.key_prefix, permission)
            raise AccessDeniedError(f"API key lacks the '{permission}' permission")
        return principal

    return _principal_with_permission


def authorize_tenant(principal: Principal, tenant_id: int, owner_user_id: int | None = None) -> None:
    """
    Raise AccessDeniedError unless `principal` may act on the tenant.

    `owner_user_id` is the tenant's user_id when the tenant exists.
    """
    if principal.is_api_key:
        if principal.tenant_id != tenant_id:
            raise AccessDeniedError("API key is not valid for this tenant")
        return
    if owner_user_id is not None and owner_user_id != principal.user_id:
        raise AccessDeniedError("User does not have access to this tenant")


async def require_admin(x_admin_token: str | None = Header(None)) -> None:
    if not settings.admin_api_token:
        raise AccessDeniedError("Operator API is disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.admin_api_token):
        raise AuthError("Invalid operator token")
