"""
Module Service

Module registry plus the tenant entitlement state machine.

Grace arithmetic: an entitlement expiring at T with g grace days grants access
for any check time in [T, T + g] and denies it afterwards. `has_access`
reconciles the stored status on read and `check_expired` does the same for
every row at rest; both go through models.module.evaluate_access so they
cannot disagree.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.config import settings
from tenant_manager.exceptions import ConflictError, NotFoundError, ValidationError
from tenant_manager.models.module import (
    EntitlementEvent,
    EntitlementStatus,
    Module,
    ModuleStatus,
    TenantModule,
    evaluate_access,
    next_entitlement_status,
)
from tenant_manager.models.tenant import Tenant
from tenant_manager.utils.slugify import slugify
from tenant_manager.utils.timeutils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

MODULE_REQUIRED_FIELDS = ("name", "slug", "path")
MODULE_FIELDS = (
    "name",
    "path",
    "description",
    "icon_url",
    "product_id",
    "version",
    "min_platform_version",
    "requires_modules",
    "status",
)
VISIBLE_STATUSES = (EntitlementStatus.active.value, EntitlementStatus.expired.value)


def grace_period_end(expires_at: datetime | None, grace_days: int | None = None) -> datetime | None:
    if expires_at is None:
        return None
    days = settings.grace_period_days if grace_days is None else grace_days
    return expires_at + timedelta(days=days)


class ModuleService:
    def __init__(self, db: AsyncSession, grace_days: int | None = None):
        self.db = db
        self.grace_days = settings.grace_period_days if grace_days is None else grace_days

    # ── module registry ────────────────────────────────────────────────────────

    async def register_module(self, data: dict) -> Module:
        """Insert a module, or update the existing one with the same slug."""
        missing = [name for name in MODULE_REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise ValidationError(errors=[f"Field '{name}' is required" for name in missing])

        slug = slugify(data["slug"])
        values = {key: data[key] for key in MODULE_FIELDS if key in data}
        values.setdefault("version", "1.0.0")
        values["requires_modules"] = sorted(set(values.get("requires_modules") or []))
        if "status" in values:
            values["status"] = ModuleStatus(values["status"]).value

        module = await self.get_module_by_slug(slug)
        if module is not None:
            for key, value in values.items():
                setattr(module, key, value)
            await self.db.commit()
            logger.info("Module updated: slug=%s", slug)
            return module

        module = Module(slug=slug, **values)
        self.db.add(module)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError("Module", "slug", slug) from e
        await self.db.refresh(module)
        logger.info("Module registered: id=%d slug=%s", module.id, slug)
        return module

    async def get_module(self, module_id: int) -> Module | None:
        return await self.db.get(Module, module_id)

    async def require_module(self, module_id: int) -> Module:
        module = await self.get_module(module_id)
        if module is None:
            raise NotFoundError("Module", module_id)
        return module

    async def get_module_by_slug(self, slug: str) -> Module | None:
        result = await self.db.execute(select(Module).where(Module.slug == slug))
        return result.scalars().first()

    async def get_module_by_product_id(self, product_id: int) -> Module | None:
        result = await self.db.execute(select(Module).where(Module.product_id == product_id))
        return result.scalars().first()

    async def list_modules(self, status: str | None = None) -> list[Module]:
        query = select(Module).order_by(Module.name)
        if status:
            query = query.where(Module.status == ModuleStatus(status).value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ── entitlements ───────────────────────────────────────────────────────────

    async def get_entitlement(self, tenant_id: int, module_id: int, lock: bool = False) -> TenantModule | None:
        query = select(TenantModule).where(TenantModule.tenant_id == tenant_id, TenantModule.module_id == module_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_tenant_module_by_slug(self, tenant_id: int, slug: str) -> TenantModule | None:
        result = await self.db.execute(
            select(TenantModule)
            .join(Module, Module.id == TenantModule.module_id)
            .where(TenantModule.tenant_id == tenant_id, Module.slug == slug)
        )
        return result.scalars().first()

    async def activate(
        self,
        tenant_id: int,
        module_id: int,
        subscription_ref: str | None = None,
        expires_at: datetime | None = None,
    ) -> TenantModule:
        """
        Grant a module to a tenant.

        An existing (tenant, module) row is updated in place, so activating
        twice leaves one row carrying the second call's values.
        """
        if await self.db.get(Tenant, tenant_id) is None:
            raise NotFoundError("Tenant", tenant_id)
        await self.require_module(module_id)

        now = utcnow()
        expires_at = as_naive_utc(expires_at)
        entitlement = await self.get_entitlement(tenant_id, module_id, lock=True)
        if entitlement is None:
            entitlement = TenantModule(tenant_id=tenant_id, module_id=module_id)
            self.db.add(entitlement)
            status = EntitlementStatus.active
        else:
            status = next_entitlement_status(entitlement.status, EntitlementEvent.activate)

        entitlement.status = status.value
        entitlement.subscription_ref = subscription_ref
        entitlement.activated_at = now
        entitlement.expires_at = expires_at
        entitlement.grace_period_ends = grace_period_end(expires_at, self.grace_days)
        entitlement.last_checked = now
        entitlement.status_reason = None

        try:
            await self.db.commit()
        except IntegrityError:
            # Concurrent first activation of the same pair; retry as an update
            await self.db.rollback()
            return await self.activate(tenant_id, module_id, subscription_ref, expires_at)

        await self.db.refresh(entitlement)
        logger.info(
            "Module %d activated for tenant %d (expires %s, subscription %s)",
            module_id,
            tenant_id,
            expires_at,
            subscription_ref,
        )
        return entitlement

    async def deactivate(self, tenant_id: int, module_id: int, reason: str | None = None) -> bool:
        entitlement = await self.get_entitlement(tenant_id, module_id, lock=True)
        if entitlement is None:
            await self.db.commit()
            return False
        self._apply(entitlement, EntitlementEvent.deactivate, reason or "deactivated")
        await self.db.commit()
        logger.info("Module %d deactivated for tenant %d", module_id, tenant_id)
        return True

    async def has_access(
        self,
        tenant_id: int,
        module_id: int,
        now: datetime | None = None,
        reconcile: bool = True,
    ) -> bool:
        """
        Access decision for one entitlement.

        With `reconcile` the stored status follows the decision (active ->
        expired inside the grace window, -> inactive after it).
        """
        now = as_naive_utc(now) or utcnow()
        entitlement = await self.get_entitlement(tenant_id, module_id, lock=reconcile)
        if entitlement is None:
            if reconcile:
                await self.db.commit()
            return False

        decision = evaluate_access(entitlement.status, entitlement.expires_at, entitlement.grace_period_ends, now)
        if reconcile:
            self._reconcile(entitlement, decision.status, now)
            await self.db.commit()
        return decision.has_access

    async def check_expired(self, now: datetime | None = None) -> int:
        """Sweep every dated active/expired entitlement; returns how many changed status."""
        now = as_naive_utc(now) or utcnow()
        result = await self.db.execute(
            select(TenantModule)
            .where(
                TenantModule.status.in_(VISIBLE_STATUSES),
                or_(TenantModule.expires_at < now, TenantModule.grace_period_ends < now),
            )
            .with_for_update()
        )
        changed = 0
        for entitlement in result.scalars().all():
            decision = evaluate_access(entitlement.status, entitlement.expires_at, entitlement.grace_period_ends, now)
            if self._reconcile(entitlement, decision.status, now):
                changed += 1
        await self.db.commit()

        if changed:
            logger.info("Expiry sweep changed %d entitlements", changed)
        return changed

    def _reconcile(self, entitlement: TenantModule, target: EntitlementStatus, now: datetime) -> bool:
        entitlement.last_checked = now
        if target.value == entitlement.status:
            return False
        if target == EntitlementStatus.expired:
            self._apply(entitlement, EntitlementEvent.expire, "expired")
        elif target == EntitlementStatus.inactive:
            self._apply(entitlement, EntitlementEvent.lapse, "grace period elapsed")
        logger.info(
            "Entitlement tenant=%d module=%d now %s", entitlement.tenant_id, entitlement.module_id, entitlement.status
        )
        return True

    @staticmethod
    def _apply(entitlement: TenantModule, event: EntitlementEvent, reason: str | None = None) -> None:
        entitlement.status = next_entitlement_status(entitlement.status, event).value
        entitlement.status_reason = reason

    async def active_modules_for_tenant(self, tenant_id: int) -> list[TenantModule]:
        """Entitlements that are active or still inside their grace window, ordered by module name."""
        result = await self.db.execute(
            select(TenantModule)
            .join(Module, Module.id == TenantModule.module_id)
            .where(TenantModule.tenant_id == tenant_id, TenantModule.status.in_(VISIBLE_STATUSES))
            .order_by(Module.name)
        )
        return list(result.scalars().all())

    async def tenant_entitlements(self, tenant_id: int) -> list[TenantModule]:
        result = await self.db.execute(select(TenantModule).where(TenantModule.tenant_id == tenant_id))
        return list(result.scalars().all())

    # ── subscription driven changes ────────────────────────────────────────────

    async def entitlements_for_subscription(self, subscription_ref: str, lock: bool = False) -> list[TenantModule]:
        query = select(TenantModule).where(TenantModule.subscription_ref == str(subscription_ref))
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def expire_subscription(self, subscription_ref: str, now: datetime | None = None) -> list[TenantModule]:
        """
        Mark every entitlement of the subscription expired.

        Stored expiry and grace dates are kept; they are only filled in when
        missing (a perpetual entitlement expires at `now`).
        """
        now = as_naive_utc(now) or utcnow()
        entitlements = await self.entitlements_for_subscription(subscription_ref, lock=True)
        changed = []
        for entitlement in entitlements:
            if entitlement.status not in VISIBLE_STATUSES:
                continue
            if entitlement.expires_at is None:
                entitlement.expires_at = now
            if entitlement.grace_period_ends is None:
                entitlement.grace_period_ends = grace_period_end(entitlement.expires_at, self.grace_days)
            self._apply(entitlement, EntitlementEvent.expire, "subscription expired")
            entitlement.last_checked = now
            changed.append(entitlement)
        await self.db.commit()
        return changed

    async def cancel_subscription(self, subscription_ref: str, reason: str = "subscription cancelled") -> list[TenantModule]:
        """Switch off every entitlement of the subscription immediately, bypassing grace."""
        entitlements = await self.entitlements_for_subscription(subscription_ref, lock=True)
        for entitlement in entitlements:
            self._apply(entitlement, EntitlementEvent.cancel, reason)
            entitlement.last_checked = utcnow()
        await self.db.commit()
        return entitlements

    async def renew_subscription(self, subscription_ref: str, expires_at: datetime | None) -> list[TenantModule]:
        """Extend every entitlement of the subscription and restore it to active."""
        expires_at = as_naive_utc(expires_at)
        entitlements = await self.entitlements_for_subscription(subscription_ref, lock=True)
        renewed = []
        for entitlement in entitlements:
            if entitlement.status == EntitlementStatus.cancelled.value:
                logger.warning(
                    "Renewal ignored for cancelled entitlement tenant=%d module=%d",
                    entitlement.tenant_id,
                    entitlement.module_id,
                )
                continue
            self._apply(entitlement, EntitlementEvent.renew)
            entitlement.expires_at = expires_at
            entitlement.grace_period_ends = grace_period_end(expires_at, self.grace_days)
            entitlement.last_checked = utcnow()
            renewed.append(entitlement)
        await self.db.commit()
        return renewed

    async def statistics(self) -> dict:
        modules = await self.db.scalar(select(func.count(Module.id)))
        rows = await self.db.execute(
            select(TenantModule.status, func.count(TenantModule.id)).group_by(TenantModule.status)
        )
        by_status = {status: count for status, count in rows.all()}
        per_module = await self.db.execute(
            select(Module.slug, func.count(TenantModule.id))
            .join(TenantModule, TenantModule.module_id == Module.id)
            .where(TenantModule.status.in_(VISIBLE_STATUSES))
            .group_by(Module.slug)
        )
        return {
            "total_modules": modules or 0,
            "entitlements_by_status": by_status,
            "active_per_module": {slug: count for slug, count in per_module.all()},
        }
