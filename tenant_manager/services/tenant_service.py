"""
Tenant Service

Registry of tenant accounts: creation (user + tenant row as a saga with a
compensating user delete), lookups, whitelisted updates, status changes with
audit records, provisioning of the tenant database and soft/hard deletion.
"""

import logging
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.config import settings
from tenant_manager.exceptions import (
    ConflictError,
    NotFoundError,
    ProvisioningError,
    TenantManagerError,
    TransactionError,
)
from tenant_manager.models.tenant import Tenant, TenantStatus, next_tenant_status
from tenant_manager.models.user import User
from tenant_manager.services.database_provisioner import DatabaseProvisioner, get_provisioner
from tenant_manager.services.notification_service import NotificationEvent, NotificationService
from tenant_manager.services.tenant_validator import TenantInput, validate_tenant_input
from tenant_manager.services.user_directory import UserDirectory
from tenant_manager.utils.audit import log_audit
from tenant_manager.utils.naming import build_database_name, build_subdomain
from tenant_manager.utils.saga import Saga, SagaError
from tenant_manager.utils.security import CredentialCipher
from tenant_manager.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

# id, user_id, created_at, username, subdomain and database_name are never updatable
UPDATABLE_FIELDS = {
    "account_name",
    "company_name",
    "phone_number",
    "address",
    "billing_email",
    "storage_used",
    "storage_limit",
    "user_limit",
}

SORTABLE_FIELDS = {
    "created_at": Tenant.created_at,
    "tenant_username": Tenant.tenant_username,
    "account_name": Tenant.account_name,
    "status": Tenant.status,
    "last_login": Tenant.last_login,
}

PROVISIONING_ERROR_KEYS = ("provisioning_error", "provisioning_failed_at")


class TenantService:
    def __init__(
        self,
        db: AsyncSession,
        provisioner: DatabaseProvisioner | None = None,
        notifier: NotificationService | None = None,
        cipher: CredentialCipher | None = None,
    ):
        self.db = db
        self.users = UserDirectory(db)
        self.notifier = notifier or NotificationService()
        self._provisioner = provisioner
        self._cipher = cipher

    @property
    def provisioner(self) -> DatabaseProvisioner:
        if self._provisioner is None:
            self._provisioner = get_provisioner()
        return self._provisioner

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = CredentialCipher()
        return self._cipher

    # ── creation ───────────────────────────────────────────────────────────────

    async def create_tenant(
        self,
        data: TenantInput,
        existing_user: User | None = None,
        auto_provision: bool | None = None,
        actor_id: int | None = None,
    ) -> Tenant:
        """
        Validate input, then create the identity user and the tenant row.

        The user commits on its own, so a failing tenant insert is undone by
        deleting that user again. With `existing_user` the tenant is attached
        to an identity that already exists and no user is created.
        """
        existing_user_id = existing_user.id if existing_user else None
        result = await validate_tenant_input(data, self.db, existing_user_id=existing_user_id)
        result.raise_for_errors()

        subdomain = build_subdomain(data.username)
        database_name = build_database_name(data.username)

        async def create_user(ctx: dict) -> User:
            user = await self.users.create_user(
                username=data.username,
                email=data.email,
                password=data.password,
                full_name=data.full_name,
                phone=data.phone_number,
            )
            ctx["user_id"] = user.id
            return user

        async def delete_user(ctx: dict) -> None:
            await self.users.delete_user(ctx["user_id"])

        async def insert_tenant(ctx: dict) -> Tenant:
            user_id = ctx["user_id"]
            tenant = Tenant(
                user_id=user_id,
                tenant_username=data.username,
                account_name=data.full_name,
                company_name=data.company_name,
                subdomain=subdomain,
                database_name=database_name,
                status=TenantStatus.pending.value,
                storage_limit=settings.default_storage_limit,
                user_limit=settings.default_user_limit,
                phone_number=data.phone_number,
                address=data.address,
                billing_email=data.email.lower(),
                metadata_={},
            )
            try:
                self.db.add(tenant)
                await self.db.flush()
                log_audit(
                    self.db,
                    "tenant_created",
                    "tenant",
                    tenant.id,
                    {"username": data.username, "subdomain": subdomain, "user_id": user_id},
                    user_id=actor_id,
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            await self.db.refresh(tenant)
            return tenant

        saga = Saga("create_tenant")
        context: dict[str, Any] = {}
        if existing_user is None:
            saga.add_step("user", create_user, compensate=delete_user)
        else:
            context["user_id"] = existing_user.id
        saga.add_step("tenant", insert_tenant)

        try:
            context = await saga.run(context)
        except SagaError as exc:
            cause = exc.__cause__
            if isinstance(cause, IntegrityError):
                raise ConflictError("Tenant", "username", data.username) from exc
            if isinstance(cause, TenantManagerError):
                raise cause from None
            raise TransactionError(
                f"Tenant creation failed at step '{exc.failed_step}'; changes were rolled back",
                completed_steps=exc.completed_steps,
                failed_step=exc.failed_step,
            ) from exc

        tenant = context["tenant"]
        logger.info("Tenant created: id=%d username=%s subdomain=%s", tenant.id, tenant.tenant_username, subdomain)

        recipient = tenant.billing_email
        welcome = {"username": tenant.tenant_username, "full_name": tenant.account_name, "subdomain": tenant.subdomain}

        if settings.auto_provision if auto_provision is None else auto_provision:
            from tenant_manager.services.provisioning_queue import ProvisioningQueue

            tenant_id = tenant.id
            try:
                await ProvisioningQueue(self.db, tenant_service=self).enqueue(tenant_id)
            except Exception:
                # The tenant stays pending and can be queued by an operator
                logger.exception("Could not enqueue tenant %d for provisioning", tenant_id)
                await self.db.rollback()
                tenant = await self.require_tenant(tenant_id)

        await self.notifier.send(NotificationEvent.WELCOME, recipient, welcome)
        return tenant

    # ── lookups ────────────────────────────────────────────────────────────────

    async def get_tenant(self, tenant_id: int) -> Tenant | None:
        result = await self.db.execute(select(Tenant).where(Tenant.id == tenant_id))
        return result.scalars().first()

    async def require_tenant(self, tenant_id: int) -> Tenant:
        tenant = await self.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant", tenant_id)
        return tenant

    async def get_tenant_by_username(self, username: str) -> Tenant | None:
        result = await self.db.execute(select(Tenant).where(func.lower(Tenant.tenant_username) == username.lower()))
        return result.scalars().first()

    async def get_tenant_by_subdomain(self, subdomain: str) -> Tenant | None:
        subdomain = subdomain.lower()
        candidates = [subdomain]
        if not subdomain.endswith(settings.subdomain_suffix):
            candidates.append(f"{subdomain}{settings.subdomain_suffix}")
        result = await self.db.execute(select(Tenant).where(Tenant.subdomain.in_(candidates)))
        return result.scalars().first()

    async def get_tenant_by_user_id(self, user_id: int) -> Tenant | None:
        result = await self.db.execute(select(Tenant).where(Tenant.user_id == user_id).order_by(Tenant.id))
        return result.scalars().first()

    async def _lock_tenant(self, tenant_id: int) -> Tenant | None:
        result = await self.db.execute(
            select(Tenant)
            .where(Tenant.id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_tenants(
        self,
        status: str | None = None,
        search: str | None = None,
        order_by: str = "created_at",
        order: str = "desc",
        page: int = 1,
        per_page: int = 20,
    ) -> list[Tenant]:
        column = SORTABLE_FIELDS.get(order_by, Tenant.created_at)
        query = self._filtered(select(Tenant), status, search)
        query = query.order_by(column.asc() if order.lower() == "asc" else column.desc(), Tenant.id.desc())
        query = query.offset(max(page - 1, 0) * per_page).limit(per_page)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_tenants(self, status: str | None = None, search: str | None = None) -> int:
        result = await self.db.execute(self._filtered(select(func.count(Tenant.id)), status, search))
        return result.scalar() or 0

    @staticmethod
    def _filtered(query, status: str | None, search: str | None):
        if status:
            query = query.where(Tenant.status == TenantStatus(status).value)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    Tenant.tenant_username.ilike(pattern),
                    Tenant.account_name.ilike(pattern),
                    Tenant.company_name.ilike(pattern),
                    Tenant.billing_email.ilike(pattern),
                )
            )
        return query

    # ── updates ────────────────────────────────────────────────────────────────

    async def update_tenant(self, tenant_id: int, fields: dict[str, Any], actor_id: int | None = None) -> Tenant:
        """
        Apply a whitelisted partial update.

        Immutable and unknown keys are dropped. `metadata` is merged into the
        stored metadata instead of replacing it.
        """
        tenant = await self._lock_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant", tenant_id)

        changed = []
        for field, value in fields.items():
            if field in UPDATABLE_FIELDS:
                setattr(tenant, field, value)
                changed.append(field)
            elif field in ("metadata", "metadata_") and isinstance(value, dict):
                tenant.metadata_ = {**(tenant.metadata_ or {}), **value}
                changed.append("metadata")
            else:
                logger.debug("Ignoring non-updatable tenant field %s", field)

        if changed:
            log_audit(self.db, "tenant_updated", "tenant", tenant_id, {"fields": changed}, user_id=actor_id)
        await self.db.commit()
        await self.db.refresh(tenant)
        return tenant

    async def set_status(
        self,
        tenant_id: int,
        status: str | TenantStatus,
        reason: str | None = None,
        actor_id: int | None = None,
    ) -> Tenant:
        tenant = await self._lock_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant", tenant_id)

        old_status = tenant.status
        new_status = next_tenant_status(old_status, status)
        if new_status.value == old_status:
            await self.db.commit()
            return tenant

        tenant.status = new_status.value
        details = {"old_status": old_status, "new_status": new_status.value}
        if reason:
            details["reason"] = reason
        log_audit(self.db, "tenant_status_changed", "tenant", tenant_id, details, user_id=actor_id)
        await self.db.commit()
        await self.db.refresh(tenant)
        logger.info("Tenant %d status %s -> %s", tenant_id, old_status, new_status.value)
        return tenant

    async def update_last_login(self, tenant_id: int) -> Tenant:
        tenant = await self.require_tenant(tenant_id)
        tenant.last_login = utcnow()
        await self.db.commit()
        return tenant

    # ── provisioning ───────────────────────────────────────────────────────────

    async def provision_tenant(self, tenant_id: int) -> Tenant:
        """
        Create the tenant database and activate the tenant.

        Active tenants are returned unchanged. On failure the tenant is
        suspended with the error recorded in its metadata and
        ProvisioningError is raised.
        """
        tenant = await self._lock_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant", tenant_id)
        if tenant.status == TenantStatus.active.value:
            await self.db.commit()
            logger.info("Tenant %d already active; nothing to provision", tenant_id)
            return tenant
        if tenant.status == TenantStatus.cancelled.value:
            await self.db.rollback()
            raise ProvisioningError("Cancelled tenants are not provisioned", tenant_id=tenant_id, step="precondition")

        tenant.status = next_tenant_status(tenant.status, TenantStatus.pending).value
        database_name = tenant.database_name
        await self.db.commit()

        try:
            credentials = await self.provisioner.create_database(database_name)
        except Exception as exc:
            await self._record_provisioning_failure(tenant_id, exc)
            raise ProvisioningError(
                f"Provisioning tenant {tenant_id} failed: {exc}",
                tenant_id=tenant_id,
                step=getattr(exc, "step", None) or "create_database",
            ) from exc

        try:
            tenant = await self._lock_tenant(tenant_id)
            now = utcnow()
            metadata = {k: v for k, v in (tenant.metadata_ or {}).items() if k not in PROVISIONING_ERROR_KEYS}
            metadata["db_credentials"] = self.cipher.encrypt(credentials.to_dict())
            metadata["provisioned_at"] = now.isoformat()
            tenant.metadata_ = metadata
            tenant.status = next_tenant_status(tenant.status, TenantStatus.active).value
            tenant.provisioned_at = now
            log_audit(self.db, "tenant_provisioned", "tenant", tenant_id, {"database": credentials.database})
            await self.db.commit()
        except Exception as exc:
            # Database exists but the tenant could not be marked active; drop it so a retry starts clean
            await self.db.rollback()
            await self.provisioner.destroy_database(credentials.database, credentials.username)
            await self._record_provisioning_failure(tenant_id, exc)
            raise ProvisioningError(
                f"Provisioning tenant {tenant_id} failed: {exc}", tenant_id=tenant_id, step="activate"
            ) from exc

        await self.db.refresh(tenant)
        logger.info("Tenant provisioned: id=%d database=%s", tenant_id, credentials.database)
        await self.notifier.send(
            NotificationEvent.TENANT_ACTIVATED,
            tenant.billing_email,
            {"username": tenant.tenant_username, "full_name": tenant.account_name, "subdomain": tenant.subdomain},
        )
        return tenant

    async def _record_provisioning_failure(self, tenant_id: int, exc: Exception) -> None:
        await self.db.rollback()
        tenant = await self._lock_tenant(tenant_id)
        if tenant is None:
            return

        if tenant.status != TenantStatus.suspended.value:
            tenant.status = next_tenant_status(tenant.status, TenantStatus.suspended).value
        tenant.metadata_ = {
            **(tenant.metadata_ or {}),
            "provisioning_error": str(exc),
            "provisioning_failed_at": utcnow().isoformat(),
        }
        log_audit(self.db, "tenant_provisioning_failed", "tenant", tenant_id, {"error": str(exc)})
        await self.db.commit()
        logger.error("Provisioning failed for tenant %d: %s", tenant_id, exc)

    def decrypt_credentials(self, tenant: Tenant) -> dict | None:
        token = (tenant.metadata_ or {}).get("db_credentials")
        return self.cipher.decrypt(token) if token else None

    # ── deletion ───────────────────────────────────────────────────────────────

    async def delete_tenant(self, tenant_id: int, hard: bool = False, actor_id: int | None = None) -> dict:
        """
        Soft delete sets status to cancelled.

        Hard delete backs the database up first and aborts if that fails. The
        remaining steps (drop database, delete user, delete row) are not
        rolled back when one fails; the TransactionError names the completed
        steps and the backup path so an operator can finish by hand.
        """
        tenant = await self.require_tenant(tenant_id)
        if not hard:
            await self.set_status(tenant_id, TenantStatus.cancelled, reason="deleted", actor_id=actor_id)
            return {"tenant_id": tenant_id, "deleted": False, "status": TenantStatus.cancelled.value}

        database_name = tenant.database_name
        user_id = tenant.user_id
        credentials = self.decrypt_credentials(tenant) or {}

        try:
            backup_path = await self.provisioner.backup(database_name)
        except Exception as exc:
            raise ProvisioningError(
                f"Backup failed; tenant {tenant_id} was not deleted: {exc}", tenant_id=tenant_id, step="backup"
            ) from exc

        async def destroy_database(ctx: dict) -> bool:
            return await self.provisioner.destroy_database(database_name, credentials.get("username"))

        async def delete_user(ctx: dict) -> bool:
            return await self.users.delete_user(user_id)

        async def delete_row(ctx: dict) -> None:
            await self.db.execute(delete(Tenant).where(Tenant.id == tenant_id))
            log_audit(
                self.db,
                "tenant_deleted",
                "tenant",
                tenant_id,
                {"database": database_name, "backup_path": str(backup_path), "hard": True},
                user_id=actor_id,
            )
            await self.db.commit()

        saga = Saga("hard_delete_tenant", compensate_on_failure=False)
        saga.add_step("destroy_database", destroy_database)
        if user_id is not None:
            saga.add_step("delete_user", delete_user)
        saga.add_step("delete_tenant_row", delete_row)

        try:
            await saga.run()
        except SagaError as exc:
            await self.db.rollback()
            logger.error(
                "Hard delete of tenant %d stopped at %s; backup at %s", tenant_id, exc.failed_step, backup_path
            )
            raise TransactionError(
                f"Hard delete of tenant {tenant_id} stopped at '{exc.failed_step}'; backup kept at {backup_path}",
                completed_steps=exc.completed_steps,
                failed_step=exc.failed_step,
                backup_path=str(backup_path),
            ) from exc

        logger.warning("Tenant hard-deleted: id=%d backup=%s", tenant_id, backup_path)
        return {"tenant_id": tenant_id, "deleted": True, "backup_path": str(backup_path)}
