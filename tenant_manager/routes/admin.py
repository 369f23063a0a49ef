"""
Operator API

All routes require the X-Admin-Token header.

POST   /admin/tenants                      -> create tenant
GET    /admin/tenants                      -> list tenants (filter, search, sort, page)
GET    /admin/tenants/count                -> count tenants
GET    /admin/tenants/username-availability -> availability + suggestions
GET    /admin/tenants/{id}                 -> get tenant
PATCH  /admin/tenants/{id}                 -> update whitelisted fields
POST   /admin/tenants/{id}/status          -> change status
POST   /admin/tenants/{id}/provision       -> provision now
GET    /admin/tenants/{id}/credentials     -> decrypted database credentials
DELETE /admin/tenants/{id}                 -> soft (default) or hard delete
GET    /admin/tenants/{id}/modules         -> entitlements
POST   /admin/tenants/{id}/modules/{mid}/activate|deactivate
GET    /admin/tenants/{id}/api-keys        -> list keys
POST   /admin/tenants/{id}/api-keys        -> generate key
DELETE /admin/api-keys/{key_id}            -> revoke key
GET    /admin/queue                        -> statistics + items
POST   /admin/queue/trigger                -> run a pass now
POST   /admin/queue/{tenant_id}            -> enqueue
POST   /admin/queue/{tenant_id}/retry      -> reset attempts
DELETE /admin/queue/failed                 -> drop failed items
POST   /admin/queue/cleanup                -> drop old failed items
DELETE /admin/queue                        -> drop everything
GET    /admin/modules, POST /admin/modules, GET /admin/modules/statistics
POST   /admin/entitlements/check-expired   -> expiry sweep
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.database import get_db
from tenant_manager.dependencies import require_admin
from tenant_manager.exceptions import NotFoundError
from tenant_manager.models.tenant import Tenant
from tenant_manager.services.api_key_service import APIKeyService
from tenant_manager.services.module_service import ModuleService
from tenant_manager.services.provisioning_queue import DEFAULT_PRIORITY, ProvisioningQueue
from tenant_manager.services.tenant_service import TenantService
from tenant_manager.services.tenant_validator import TenantInput, check_username_availability, suggest_usernames
from tenant_manager.utils.timeutils import isoformat

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])

HIDDEN_METADATA_KEYS = ("db_credentials",)


# ── Pydantic schemas ───────────────────────────────────────────────────────────


class TenantCreate(BaseModel):
    username: str
    email: str
    password: str
    full_name: str
    company_name: str | None = None
    phone_number: str | None = None
    address: str | None = None
    auto_provision: bool | None = None


class TenantStatusChange(BaseModel):
    status: str
    reason: str | None = Field(None, max_length=255)


class TenantResponse(BaseModel):
    id: int
    user_id: int | None
    username: str
    account_name: str
    company_name: str | None
    subdomain: str
    database_name: str
    status: str
    storage_used: int
    storage_limit: int
    user_limit: int
    phone_number: str | None
    address: str | None
    billing_email: str | None
    metadata: dict[str, Any]
    created_at: str | None
    provisioned_at: str | None
    last_login: str | None

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        metadata = {k: v for k, v in (tenant.metadata_ or {}).items() if k not in HIDDEN_METADATA_KEYS}
        return cls(
            id=tenant.id,
            user_id=tenant.user_id,
            username=tenant.tenant_username,
            account_name=tenant.account_name,
            company_name=tenant.company_name,
            subdomain=tenant.subdomain,
            database_name=tenant.database_name,
            status=tenant.status,
            storage_used=tenant.storage_used or 0,
            storage_limit=tenant.storage_limit,
            user_limit=tenant.user_limit,
            phone_number=tenant.phone_number,
            address=tenant.address,
            billing_email=tenant.billing_email,
            metadata=metadata,
            created_at=isoformat(tenant.created_at),
            provisioned_at=isoformat(tenant.provisioned_at),
            last_login=isoformat(tenant.last_login),
        )


class ModuleCreate(BaseModel):
    name: str
    slug: str
    path: str
    description: str | None = None
    icon_url: str | None = None
    product_id: int | None = None
    version: str | None = None
    min_platform_version: str | None = None
    requires_modules: list[str] = Field(default_factory=list)
    status: str | None = None


class EntitlementActivate(BaseModel):
    subscription_ref: str | None = None
    expires_at: datetime | None = None


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: list[str] | None = None
    expires_in_days: int | None = Field(None, ge=1, le=3650)
    rate_limit: int | None = Field(None, ge=1, le=100000)


# ── Tenants ────────────────────────────────────────────────────────────────────


@router.post("/tenants", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant_route(payload: TenantCreate, db: AsyncSession = Depends(get_db)) -> TenantResponse:
    data = TenantInput.from_dict(payload.model_dump(exclude={"auto_provision"}))
    tenant = await TenantService(db).create_tenant(data, auto_provision=payload.auto_provision)
    return TenantResponse.from_tenant(tenant)


@router.get("/tenants")
async def list_tenants_route(
    status_filter: str | None = Query(None, alias="status"),
    search: str | None = None,
    order_by: str = "created_at",
    order: str = "desc",
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> dict:
    service = TenantService(db)
    tenants = await service.list_tenants(status_filter, search, order_by, order, page, per_page)
    total = await service.count_tenants(status_filter, search)
    return {
        "items": [TenantResponse.from_tenant(t).model_dump() for t in tenants],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


@router.get("/tenants/count")
async def count_tenants_route(
    status_filter: str | None = Query(None, alias="status"),
    search: str | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict:
    return {"count": await TenantService(db).count_tenants(status_filter, search)}


@router.get("/tenants/username-availability")
async def username_availability_route(username: str, db: AsyncSession = Depends(get_db)) -> dict:
    result = await check_username_availability(username, db)
    if not result["available"]:
        result["suggestions"] = await suggest_usernames(username, db)
    return result


@router.get("/tenants/{tenant_id}", response_model=TenantResponse)
async def get_tenant_route(tenant_id: int, db: AsyncSession = Depends(get_db)) -> TenantResponse:
    return TenantResponse.from_tenant(await TenantService(db).require_tenant(tenant_id))


@router.patch("/tenants/{tenant_id}", response_model=TenantResponse)
async def update_tenant_route(tenant_id: int, fields: dict[str, Any], db: AsyncSession = Depends(get_db)) -> TenantResponse:
    return TenantResponse.from_tenant(await TenantService(db).update_tenant(tenant_id, fields))


@router.post("/tenants/{tenant_id}/status", response_model=TenantResponse)
async def set_tenant_status_route(
    tenant_id: int, payload: TenantStatusChange, db: AsyncSession = Depends(get_db)
) -> TenantResponse:
    tenant = await TenantService(db).set_status(tenant_id, payload.status, reason=payload.reason)
    return TenantResponse.from_tenant(tenant)


@router.post("/tenants/{tenant_id}/provision", response_model=TenantResponse)
async def provision_tenant_route(tenant_id: int, db: AsyncSession = Depends(get_db)) -> TenantResponse:
    # A queue item left for this tenant is dropped by the next pass, which finds it active
    tenant = await TenantService(db).provision_tenant(tenant_id)
    return TenantResponse.from_tenant(tenant)


@router.get("/tenants/{tenant_id}/credentials")
async def tenant_credentials_route(tenant_id: int, db: AsyncSession = Depends(get_db)) -> dict:
    service = TenantService(db)
    tenant = await service.require_tenant(tenant_id)
    credentials = service.decrypt_credentials(tenant)
    if credentials is None:
        raise NotFoundError("Database credentials", tenant_id)
    logger.warning("Database credentials of tenant %d disclosed to operator", tenant_id)
    return credentials


@router.delete("/tenants/{tenant_id}")
async def delete_tenant_route(tenant_id: int, hard: bool = False, db: AsyncSession = Depends(get_db)) -> dict:
    return await TenantService(db).delete_tenant(tenant_id, hard=hard)


# ── Entitlements ───────────────────────────────────────────────────────────────


@router.get("/tenants/{tenant_id}/modules")
async def tenant_modules_route(tenant_id: int, db: AsyncSession = Depends(get_db)) -> list[dict]:
    await TenantService(db).require_tenant(tenant_id)
    return [e.to_dict() for e in await ModuleService(db).tenant_entitlements(tenant_id)]


@router.post("/tenants/{tenant_id}/modules/{module_id}/activate")
async def activate_module_route(
    tenant_id: int, module_id: int, payload: EntitlementActivate, db: AsyncSession = Depends(get_db)
) -> dict:
    entitlement = await ModuleService(db).activate(
        tenant_id, module_id, subscription_ref=payload.subscription_ref, expires_at=payload.expires_at
    )
    return entitlement.to_dict()


@router.post("/tenants/{tenant_id}/modules/{module_id}/deactivate")
async def deactivate_module_route(tenant_id: int, module_id: int, db: AsyncSession = Depends(get_db)) -> dict:
    changed = await ModuleService(db).deactivate(tenant_id, module_id, reason="deactivated by operator")
    return {"tenant_id": tenant_id, "module_id": module_id, "deactivated": changed}


@router.post("/entitlements/check-expired")
async def check_expired_route(db: AsyncSession = Depends(get_db)) -> dict:
    return {"changed": await ModuleService(db).check_expired()}


# ── API keys ───────────────────────────────────────────────────────────────────


@router.get("/tenants/{tenant_id}/api-keys")
async def list_api_keys_route(tenant_id: int, db: AsyncSession = Depends(get_db)) -> list[dict]:
    return await APIKeyService(db).list_for_tenant(tenant_id)


@router.post("/tenants/{tenant_id}/api-keys", status_code=status.HTTP_201_CREATED)
async def create_api_key_route(tenant_id: int, payload: ApiKeyCreate, db: AsyncSession = Depends(get_db)) -> dict:
    return await APIKeyService(db).generate(
        tenant_id,
        payload.name,
        permissions=payload.permissions,
        expires_in_days=payload.expires_in_days,
        rate_limit=payload.rate_limit,
    )


@router.delete("/api-keys/{key_id}")
async def revoke_api_key_route(key_id: int, db: AsyncSession = Depends(get_db)) -> dict:
    if not await APIKeyService(db).revoke(key_id):
        raise NotFoundError("API key", key_id)
    return {"id": key_id, "revoked": True}


# ── Provisioning queue ─────────────────────────────────────────────────────────


@router.get("/queue")
async def queue_status_route(
    status_filter: str | None = Query(None, alias="status"), db: AsyncSession = Depends(get_db)
) -> dict:
    queue = ProvisioningQueue(db)
    return {
        "statistics": await queue.statistics(),
        "items": [item.to_dict() for item in await queue.items(status_filter)],
    }


@router.post("/queue/trigger")
async def trigger_queue_route(db: AsyncSession = Depends(get_db)) -> dict:
    result = await ProvisioningQueue(db).trigger()
    return result.to_dict()


@router.delete("/queue/failed")
async def clear_failed_route(db: AsyncSession = Depends(get_db)) -> dict:
    return {"removed": await ProvisioningQueue(db).clear_failed()}


@router.post("/queue/cleanup")
async def cleanup_queue_route(days: int = Query(7, ge=1), db: AsyncSession = Depends(get_db)) -> dict:
    return {"removed": await ProvisioningQueue(db).cleanup_old_items(days)}


@router.delete("/queue")
async def clear_queue_route(db: AsyncSession = Depends(get_db)) -> dict:
    return {"removed": await ProvisioningQueue(db).clear_queue()}


@router.post("/queue/{tenant_id}", status_code=status.HTTP_201_CREATED)
async def enqueue_route(
    tenant_id: int, priority: int = Query(DEFAULT_PRIORITY, ge=0), db: AsyncSession = Depends(get_db)
) -> dict:
    await TenantService(db).require_tenant(tenant_id)
    item = await ProvisioningQueue(db).enqueue(tenant_id, priority=priority)
    return item.to_dict()


@router.post("/queue/{tenant_id}/retry")
async def retry_queue_item_route(tenant_id: int, db: AsyncSession = Depends(get_db)) -> dict:
    queue = ProvisioningQueue(db)
    if not await queue.retry_item(tenant_id):
        raise NotFoundError("Queue item", tenant_id)
    return await queue.get_item_status(tenant_id)


# ── Modules ────────────────────────────────────────────────────────────────────


@router.get("/modules")
async def list_modules_route(
    status_filter: str | None = Query(None, alias="status"), db: AsyncSession = Depends(get_db)
) -> list[dict]:
    return [m.to_dict() for m in await ModuleService(db).list_modules(status_filter)]


@router.post("/modules", status_code=status.HTTP_201_CREATED)
async def register_module_route(payload: ModuleCreate, db: AsyncSession = Depends(get_db)) -> dict:
    module = await ModuleService(db).register_module(payload.model_dump(exclude_none=True))
    return module.to_dict()


@router.get("/modules/statistics")
async def module_statistics_route(db: AsyncSession = Depends(get_db)) -> dict:
    return await ModuleService(db).statistics()
