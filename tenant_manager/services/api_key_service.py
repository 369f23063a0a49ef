"""
API Key Service

Tenant-scoped API keys for programmatic license checks: generation,
validation with an hourly rate limit, revocation and listing.
"""

import hashlib
import hmac
import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.config import settings
from tenant_manager.exceptions import AuthError, NotFoundError, RateLimitExceededError, ValidationError
from tenant_manager.models.api_key import DEFAULT_PERMISSIONS, ApiKey, ApiKeyStatus, ApiPermission
from tenant_manager.models.tenant import Tenant
from tenant_manager.utils.timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW = timedelta(hours=1)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()


def split_key(full_key: str) -> tuple[str, str] | None:
    """Split "tmk_abc123_<secret>" into (prefix, secret)."""
    parts = full_key.split("_", 2)
    if len(parts) != 3 or not all(parts):
        return None
    return f"{parts[0]}_{parts[1]}", parts[2]


class APIKeyService:
    """Service for managing tenant API keys."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def generate(
        self,
        tenant_id: int,
        name: str,
        permissions: list[str] | None = None,
        expires_in_days: int | None = None,
        rate_limit: int | None = None,
    ) -> dict:
        """
        Create a new API key for a tenant.

        Returns:
            dict with key details; the full key is only ever returned here
        """
        if await self.db.get(Tenant, tenant_id) is None:
            raise NotFoundError("Tenant", tenant_id)

        if permissions:
            valid = {p.value for p in ApiPermission}
            invalid = [p for p in permissions if p not in valid]
            if invalid:
                raise ValidationError(errors=[f"Invalid permission: {p}" for p in invalid], field="permissions")
        else:
            permissions = list(DEFAULT_PERMISSIONS)

        full_key, prefix, secret = ApiKey.generate_key()
        limit = rate_limit or settings.api_key_rate_limit
        api_key = ApiKey(
            tenant_id=tenant_id,
            name=name,
            key_prefix=prefix,
            key_hash=hash_secret(secret),
            permissions=permissions,
            status=ApiKeyStatus.active.value,
            expires_at=utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
            rate_limit=limit,
            rate_limit_remaining=limit,
        )
        self.db.add(api_key)
        await self.db.commit()
        await self.db.refresh(api_key)

        logger.info("API key created for tenant %d: %s", tenant_id, prefix)

        return {
            "id": api_key.id,
            "tenant_id": tenant_id,
            "name": api_key.name,
            "key": full_key,
            "key_prefix": prefix,
            "permissions": permissions,
            "expires_at": isoformat(api_key.expires_at),
            "rate_limit": api_key.rate_limit,
            "created_at": isoformat(api_key.created_at),
            "message": "Store this API key securely - it won't be shown again!",
        }

    async def validate(self, full_key: str) -> ApiKey:
        """
        Authenticate a raw key and count the request against its hourly budget.

        Raises AuthError for unknown, revoked or expired keys (an expired key
        is revoked on the spot) and RateLimitExceededError when the budget is
        spent.
        """
        parsed = split_key(full_key or "")
        if parsed is None:
            raise AuthError("Invalid API key")
        prefix, secret = parsed

        api_key = await self._get_by_prefix(prefix)
        if api_key is None or not hmac.compare_digest(hash_secret(secret), api_key.key_hash):
            raise AuthError("Invalid API key")
        if api_key.status != ApiKeyStatus.active.value:
            raise AuthError("API key has been revoked")

        now = utcnow()
        if api_key.is_expired(now):
            api_key.status = ApiKeyStatus.revoked.value
            await self.db.commit()
            logger.info("API key %s expired and was revoked", prefix)
            raise AuthError("API key has expired")

        if api_key.rate_limit_reset is None or now >= api_key.rate_limit_reset:
            api_key.rate_limit_remaining = api_key.rate_limit
            api_key.rate_limit_reset = now + RATE_LIMIT_WINDOW
        if api_key.rate_limit_remaining <= 0:
            await self.db.commit()
            logger.warning("API key %s exceeded its rate limit", prefix)
            raise RateLimitExceededError(reset_at=isoformat(api_key.rate_limit_reset))

        api_key.rate_limit_remaining -= 1
        api_key.total_requests += 1
        api_key.last_used_at = now
        await self.db.commit()
        return api_key

    async def revoke(self, key_id: int, tenant_id: int | None = None) -> bool:
        query = select(ApiKey).where(ApiKey.id == key_id)
        if tenant_id is not None:
            query = query.where(ApiKey.tenant_id == tenant_id)
        api_key = (await self.db.execute(query)).scalars().first()
        if api_key is None:
            return False
        api_key.status = ApiKeyStatus.revoked.value
        await self.db.commit()
        logger.info("API key revoked: %s", api_key.key_prefix)
        return True

    async def list_for_tenant(self, tenant_id: int) -> list[dict]:
        result = await self.db.execute(
            select(ApiKey).where(ApiKey.tenant_id == tenant_id).order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
        )
        return [
            {
                "id": key.id,
                "name": key.name,
                "key_prefix": key.key_prefix,
                "permissions": list(key.permissions or []),
                "status": key.status,
                "expires_at": isoformat(key.expires_at),
                "last_used_at": isoformat(key.last_used_at),
                "total_requests": key.total_requests,
                "rate_limit": key.rate_limit,
                "created_at": isoformat(key.created_at),
            }
            for key in result.scalars().all()
        ]

    async def _get_by_prefix(self, prefix: str) -> ApiKey | None:
        result = await self.db.execute(select(ApiKey).where(ApiKey.key_prefix == prefix))
        return result.scalar_one_or_none()
