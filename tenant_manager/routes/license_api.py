"""
License API

Endpoints consumed by tenant dashboards and programmatic clients:
session validation, license checks, tenant info, module status, access
verification and activity reporting.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.auth import decode_access_token, token_user_id
from tenant_manager.database import get_db
from tenant_manager.dependencies import Principal, authorize_tenant, require_permission
from tenant_manager.exceptions import AuthError, NotFoundError, ValidationError
from tenant_manager.middleware.logging import client_ip
from tenant_manager.models.api_key import ApiPermission
from tenant_manager.models.tenant import Tenant, TenantStatus
from tenant_manager.models.user import User
from tenant_manager.services.module_service import ModuleService
from tenant_manager.services.tenant_service import TenantService
from tenant_manager.utils.audit import log_audit
from tenant_manager.utils.timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["License API"])


# ============== Schemas ==============


class ValidateSessionRequest(BaseModel):
    token: str | None = None
    subdomain: str | None = None


class CheckLicenseRequest(BaseModel):
    tenant_id: int | None = None
    module_slug: str | None = None


class VerifyAccessRequest(BaseModel):
    tenant_id: int | None = None
    user_id: int | None = None


class ActivityRequest(BaseModel):
    tenant_id: int | None = None
    type: str | None = Field(None, max_length=100)
    data: dict[str, Any] | None = None


def tenant_summary(tenant: Tenant) -> dict:
    return {
        "id": tenant.id,
        "username": tenant.tenant_username,
        "account_name": tenant.account_name,
        "subdomain": tenant.subdomain,
        "status": tenant.status,
    }


def _answer(status_code: int, **content) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content)


# ============== Endpoints ==============


@router.post("/validate-session")
async def validate_session(body: ValidateSessionRequest, db: AsyncSession = Depends(get_db)):
    """
    Check a dashboard session token and return the user and tenant it belongs to.

    Public endpoint; the token in the body is the credential.
    """
    if not body.token:
        return _answer(400, valid=False, message="Token is required")

    try:
        user_id = token_user_id(decode_access_token(body.token))
    except AuthError:
        return _answer(401, valid=False, message="Invalid or expired token")

    user = await db.get(User, user_id)
    if user is None:
        return _answer(404, valid=False, message="User not found")

    service = TenantService(db)
    if body.subdomain:
        tenant = await service.get_tenant_by_subdomain(body.subdomain)
    else:
        tenant = await service.get_tenant_by_user_id(user_id)
    if tenant is None:
        return _answer(404, valid=False, message="Tenant not found")

    if tenant.user_id != user_id:
        return _answer(403, valid=False, message="User does not have access to this tenant")
    if tenant.status != TenantStatus.active.value:
        return _answer(403, valid=False, message="Tenant account is not active", status=tenant.status)

    tenant = await service.update_last_login(tenant.id)
    await service.users.touch_last_login(user)

    return {
        "valid": True,
        "user": {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "display_name": user.full_name or user.username,
        },
        "tenant": tenant_summary(tenant),
    }


@router.post("/check-license")
async def check_license(
    body: CheckLicenseRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(ApiPermission.CHECK_LICENSE.value)),
):
    if not body.tenant_id or not body.module_slug:
        raise ValidationError(errors=["tenant_id and module_slug are required"])

    tenant = await TenantService(db).get_tenant(body.tenant_id)
    authorize_tenant(principal, body.tenant_id, tenant.user_id if tenant else None)

    modules = ModuleService(db)
    module = await modules.get_module_by_slug(body.module_slug)
    if module is None:
        return _answer(404, valid=False, message="Module not found")

    module_slug, module_name, module_version = module.slug, module.name, module.version
    if not await modules.has_access(body.tenant_id, module.id):
        return _answer(403, valid=False, message="No active license for this module", module=module_slug)

    entitlement = await modules.get_entitlement(body.tenant_id, module.id)
    return {
        "valid": True,
        "module": {
            "slug": module_slug,
            "name": module_name,
            "version": module_version,
            "status": entitlement.status,
            "activated_at": isoformat(entitlement.activated_at),
            "expires_at": isoformat(entitlement.expires_at),
            "grace_period_ends": isoformat(entitlement.grace_period_ends),
        },
    }


@router.get("/tenant-info")
async def tenant_info(
    tenant_id: int | None = None,
    subdomain: str | None = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(ApiPermission.GET_TENANT_INFO.value)),
):
    service = TenantService(db)
    if tenant_id:
        tenant = await service.get_tenant(tenant_id)
    elif subdomain:
        tenant = await service.get_tenant_by_subdomain(subdomain)
    else:
        raise ValidationError(errors=["tenant_id or subdomain is required"])

    if tenant is None:
        if tenant_id:
            authorize_tenant(principal, tenant_id)
        raise NotFoundError("Tenant", tenant_id or subdomain)
    authorize_tenant(principal, tenant.id, tenant.user_id)

    user = await service.users.get_user(tenant.user_id) if tenant.user_id else None
    entitlements = await ModuleService(db).active_modules_for_tenant(tenant.id)

    return {
        "tenant": {
            **tenant_summary(tenant),
            "company_name": tenant.company_name,
            "storage_used": tenant.storage_used,
            "storage_limit": tenant.storage_limit,
            "user_limit": tenant.user_limit,
            "created_at": isoformat(tenant.created_at),
            "last_login": isoformat(tenant.last_login),
        },
        "user": (
            {"id": user.id, "email": user.email, "display_name": user.full_name or user.username} if user else None
        ),
        "modules": [
            {
                "slug": e.module.slug,
                "name": e.module.name,
                "status": e.status,
                "expires_at": isoformat(e.expires_at),
            }
            for e in entitlements
        ],
    }


@router.get("/module-status")
async def module_status(
    tenant_id: int | None = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(ApiPermission.GET_MODULE_STATUS.value)),
):
    """Every visible entitlement of the tenant with access evaluated now."""
    if not tenant_id:
        raise ValidationError(errors=["tenant_id is required"])

    tenant = await TenantService(db).get_tenant(tenant_id)
    authorize_tenant(principal, tenant_id, tenant.user_id if tenant else None)

    modules = ModuleService(db)
    now = utcnow()
    # Plain rows first; has_access commits, which would refresh ORM state mid-loop
    rows = [
        {
            "module_id": e.module_id,
            "slug": e.module.slug,
            "name": e.module.name,
        }
        for e in await modules.active_modules_for_tenant(tenant_id)
    ]

    result = []
    for row in rows:
        has_access = await modules.has_access(tenant_id, row["module_id"], now=now)
        entitlement = await modules.get_entitlement(tenant_id, row["module_id"])
        result.append(
            {
                "slug": row["slug"],
                "name": row["name"],
                "status": entitlement.status,
                "has_access": has_access,
                "activated_at": isoformat(entitlement.activated_at),
                "expires_at": isoformat(entitlement.expires_at),
                "grace_period_ends": isoformat(entitlement.grace_period_ends),
            }
        )

    return {"tenant_id": tenant_id, "modules": result, "checked_at": isoformat(now)}


@router.post("/verify-access")
async def verify_access(
    body: VerifyAccessRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(ApiPermission.VERIFY_ACCESS.value)),
):
    if not body.tenant_id or not body.user_id:
        return _answer(400, access=False, message="tenant_id and user_id are required")

    tenant = await TenantService(db).get_tenant(body.tenant_id)
    authorize_tenant(principal, body.tenant_id, tenant.user_id if tenant else None)
    if tenant is None:
        return _answer(404, access=False, message="Tenant not found")
    if tenant.user_id != body.user_id:
        return _answer(403, access=False, message="User does not belong to this tenant")
    if tenant.status != TenantStatus.active.value:
        return _answer(403, access=False, message=f"Tenant account is {tenant.status}", status=tenant.status)

    return {"access": True, "tenant_id": tenant.id, "status": tenant.status}


@router.post("/activity")
async def record_activity(
    body: ActivityRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(ApiPermission.UPDATE_ACTIVITY.value)),
):
    if not body.tenant_id:
        raise ValidationError(errors=["tenant_id is required"])

    tenant = await db.get(Tenant, body.tenant_id)
    authorize_tenant(principal, body.tenant_id, tenant.user_id if tenant else None)

    now = utcnow()
    if tenant is None:
        logger.warning("Activity reported for unknown tenant %d", body.tenant_id)
    else:
        tenant.last_login = now
        if body.type:
            log_audit(
                db,
                "tenant_activity",
                "tenant",
                tenant.id,
                {"type": body.type, "data": body.data or {}},
                user_id=principal.user_id,
                ip_address=client_ip(request),
                user_agent=request.headers.get("User-Agent"),
            )
            logger.info("Tenant activity: %s", body.type, extra={"tenant_id": tenant.id})
        await db.commit()

    return {"success": True, "timestamp": isoformat(now)}
