"""
Tests for the tenant registry: creation saga, status changes, provisioning and deletion
"""

import pytest
from sqlalchemy import select

from tenant_manager.exceptions import (
    ConflictError,
    InvalidStatusTransitionError,
    ProvisioningError,
    TransactionError,
    ValidationError,
)
from tenant_manager.models import AuditLog, ProvisioningQueueItem, Tenant, User
from tenant_manager.models.tenant import TenantStatus, next_tenant_status
from helpers import count_rows


async def audit_actions(db, tenant_id: int) -> list[str]:
    result = await db.execute(
        select(AuditLog.action).where(AuditLog.entity_type == "tenant", AuditLog.entity_id == tenant_id)
    )
    return list(result.scalars().all())


class TestTenantStatusTransitions:
    """Test the tenant status table"""

    def test_allowed_moves(self):
        assert next_tenant_status("pending", "active") == TenantStatus.active
        assert next_tenant_status("suspended", "pending") == TenantStatus.pending
        assert next_tenant_status("cancelled", "active") == TenantStatus.active

    def test_same_state_is_allowed(self):
        assert next_tenant_status("active", "active") == TenantStatus.active

    def test_rejected_moves(self):
        with pytest.raises(InvalidStatusTransitionError):
            next_tenant_status("active", "pending")
        with pytest.raises(InvalidStatusTransitionError):
            next_tenant_status("cancelled", "suspended")

    def test_unknown_status(self):
        with pytest.raises(InvalidStatusTransitionError):
            next_tenant_status("active", "archived")


class TestCreateTenant:
    """Test tenant creation"""

    async def test_creates_user_tenant_and_queue_item(self, test_db, tenant_service, notifier, make_input):
        tenant = await tenant_service.create_tenant(make_input("acme01"), auto_provision=True)

        assert tenant.status == TenantStatus.pending.value
        assert tenant.subdomain == "acme01.app.example.com"
        assert tenant.database_name == "tenant_acme01"
        assert tenant.billing_email == "acme01@acmecorp.com"

        user = await test_db.get(User, tenant.user_id)
        assert user.username == "acme01"
        assert user.hashed_password != "Sup3r$ecurePass!"

        assert "tenant_created" in await audit_actions(test_db, tenant.id)
        assert await count_rows(test_db, ProvisioningQueueItem) == 1
        assert notifier.events() == ["welcome"]

    async def test_auto_provision_off_leaves_queue_empty(self, test_db, tenant_service, make_input):
        await tenant_service.create_tenant(make_input("acme01"), auto_provision=False)
        assert await count_rows(test_db, ProvisioningQueueItem) == 0

    async def test_duplicate_username_conflicts(self, test_db, tenant_service, make_input):
        await tenant_service.create_tenant(make_input("alice"), auto_provision=False)

        with pytest.raises(ConflictError) as exc_info:
            await tenant_service.create_tenant(make_input("alice", email="alice2@acmecorp.com"))

        assert exc_info.value.status_code == 409
        assert await count_rows(test_db, User) == 1
        assert await count_rows(test_db, Tenant) == 1

    async def test_invalid_input_writes_nothing(self, test_db, tenant_service, make_input):
        with pytest.raises(ValidationError) as exc_info:
            await tenant_service.create_tenant(make_input("acme01", password="Sh0rt!"))

        assert any("between 12 and 128" in e for e in exc_info.value.errors)
        assert await count_rows(test_db, User) == 0
        assert await count_rows(test_db, Tenant) == 0

    async def test_failed_tenant_insert_removes_user(self, test_db, tenant_service, make_input, monkeypatch):
        def broken_audit(*args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr("tenant_manager.services.tenant_service.log_audit", broken_audit)

        with pytest.raises(TransactionError) as exc_info:
            await tenant_service.create_tenant(make_input("acme01"), auto_provision=False)

        assert exc_info.value.failed_step == "tenant"
        assert exc_info.value.completed_steps == ["user"]
        assert await count_rows(test_db, User) == 0
        assert await count_rows(test_db, Tenant) == 0

    async def test_attach_to_existing_user(self, test_db, tenant_service, make_input, strong_password):
        user = await tenant_service.users.create_user("carol", "carol@acmecorp.com", strong_password)

        tenant = await tenant_service.create_tenant(make_input("carol"), existing_user=user, auto_provision=False)

        assert tenant.user_id == user.id
        assert await count_rows(test_db, User) == 1


class TestTenantLookupsAndUpdates:
    """Test lookups, listing and whitelisted updates"""

    async def test_lookup_by_subdomain_with_or_without_suffix(self, tenant_service, make_tenant):
        tenant = await make_tenant("acme01")

        assert (await tenant_service.get_tenant_by_subdomain("acme01")).id == tenant.id
        assert (await tenant_service.get_tenant_by_subdomain("ACME01.app.example.com")).id == tenant.id
        assert await tenant_service.get_tenant_by_subdomain("nobody") is None

    async def test_list_and_count_with_filters(self, tenant_service, make_tenant):
        await make_tenant("acme01")
        await make_tenant("globex", provision=True, company_name="Globex Corporation")

        assert await tenant_service.count_tenants() == 2
        assert await tenant_service.count_tenants(status="active") == 1
        found = await tenant_service.list_tenants(search="globex")
        assert [t.tenant_username for t in found] == ["globex"]
        ordered = await tenant_service.list_tenants(order_by="tenant_username", order="asc")
        assert [t.tenant_username for t in ordered] == ["acme01", "globex"]

    async def test_update_ignores_immutable_fields(self, test_db, tenant_service, make_tenant):
        tenant = await make_tenant("acme01")

        updated = await tenant_service.update_tenant(
            tenant.id,
            {
                "account_name": "Acme Holdings",
                "subdomain": "evil.app.example.com",
                "database_name": "other_db",
                "metadata": {"plan": "pro"},
            },
        )

        assert updated.account_name == "Acme Holdings"
        assert updated.subdomain == "acme01.app.example.com"
        assert updated.database_name == "tenant_acme01"
        assert updated.metadata_["plan"] == "pro"
        assert "tenant_updated" in await audit_actions(test_db, tenant.id)

    async def test_set_status_writes_audit(self, test_db, tenant_service, make_tenant):
        tenant = await make_tenant("acme01")

        updated = await tenant_service.set_status(tenant.id, "suspended", reason="billing")

        assert updated.status == "suspended"
        assert "tenant_status_changed" in await audit_actions(test_db, tenant.id)

    async def test_set_status_rejects_invalid_move(self, tenant_service, make_tenant):
        tenant = await make_tenant("acme01", provision=True)
        with pytest.raises(InvalidStatusTransitionError):
            await tenant_service.set_status(tenant.id, "pending")


class TestProvisionTenant:
    """Test database provisioning for a tenant"""

    async def test_success_activates_and_stores_credentials(self, tenant_service, provisioner, notifier, make_tenant):
        tenant = await make_tenant("acme01")

        tenant = await tenant_service.provision_tenant(tenant.id)

        assert tenant.status == "active"
        assert tenant.provisioned_at is not None
        assert "tenant_acme01" in provisioner.databases
        credentials = tenant_service.decrypt_credentials(tenant)
        assert credentials["database"] == "tenant_acme01"
        assert credentials["username"] == "tenant_acme01_user"
        # stored encrypted
        assert "tenant_acme01_user" not in tenant.metadata_["db_credentials"]
        assert "tenant_activated" in notifier.events()

    async def test_active_tenant_is_left_alone(self, tenant_service, provisioner, make_tenant):
        tenant = await make_tenant("acme01", provision=True)

        await tenant_service.provision_tenant(tenant.id)

        assert provisioner.create_calls == 1

    async def test_failure_suspends_with_error(self, tenant_service, provisioner, make_tenant):
        tenant = await make_tenant("acme01")
        provisioner.fail_create = True

        with pytest.raises(ProvisioningError):
            await tenant_service.provision_tenant(tenant.id)

        tenant = await tenant_service.get_tenant(tenant.id)
        assert tenant.status == "suspended"
        assert "could not connect" in tenant.metadata_["provisioning_error"]
        assert "provisioning_failed_at" in tenant.metadata_

    async def test_retry_after_failure_clears_error(self, tenant_service, provisioner, make_tenant):
        tenant = await make_tenant("acme01")
        provisioner.fail_create = True
        with pytest.raises(ProvisioningError):
            await tenant_service.provision_tenant(tenant.id)

        provisioner.fail_create = False
        tenant = await tenant_service.provision_tenant(tenant.id)

        assert tenant.status == "active"
        assert "provisioning_error" not in tenant.metadata_

    async def test_cancelled_tenant_is_not_provisioned(self, tenant_service, provisioner, make_tenant):
        tenant = await make_tenant("acme01")
        await tenant_service.set_status(tenant.id, "cancelled")

        with pytest.raises(ProvisioningError):
            await tenant_service.provision_tenant(tenant.id)
        assert provisioner.create_calls == 0


class TestDeleteTenant:
    """Test soft and hard deletion"""

    async def test_soft_delete_cancels(self, test_db, tenant_service, make_tenant):
        tenant = await make_tenant("acme01", provision=True)

        result = await tenant_service.delete_tenant(tenant.id)

        assert result == {"tenant_id": tenant.id, "deleted": False, "status": "cancelled"}
        assert (await tenant_service.get_tenant(tenant.id)).status == "cancelled"
        assert await count_rows(test_db, Tenant) == 1

    async def test_hard_delete_backs_up_then_removes_everything(self, test_db, tenant_service, provisioner, make_tenant):
        tenant = await make_tenant("acme01", provision=True)

        result = await tenant_service.delete_tenant(tenant.id, hard=True)

        assert result["deleted"] is True
        assert result["backup_path"].endswith(".sql")
        assert provisioner.destroyed == ["tenant_acme01"]
        assert await count_rows(test_db, Tenant) == 0
        assert await count_rows(test_db, User) == 0

    async def test_backup_failure_aborts(self, test_db, tenant_service, provisioner, make_tenant):
        tenant = await make_tenant("acme01", provision=True)
        provisioner.fail_backup = True

        with pytest.raises(ProvisioningError):
            await tenant_service.delete_tenant(tenant.id, hard=True)

        assert provisioner.destroyed == []
        assert await count_rows(test_db, Tenant) == 1

    async def test_partial_failure_reports_progress(self, test_db, tenant_service, provisioner, make_tenant):
        tenant = await make_tenant("acme01", provision=True)
        provisioner.fail_destroy = True

        with pytest.raises(TransactionError) as exc_info:
            await tenant_service.delete_tenant(tenant.id, hard=True)

        assert exc_info.value.failed_step == "destroy_database"
        assert exc_info.value.completed_steps == []
        assert exc_info.value.backup_path.endswith(".sql")
        assert await count_rows(test_db, Tenant) == 1
