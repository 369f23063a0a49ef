"""
Tests for the module registry and the entitlement state machine
"""

from datetime import datetime, timedelta

import pytest

from tenant_manager.exceptions import InvalidStatusTransitionError, NotFoundError, ValidationError
from tenant_manager.models import TenantModule
from tenant_manager.models.module import (
    EntitlementEvent,
    EntitlementStatus,
    evaluate_access,
    next_entitlement_status,
)
from tenant_manager.services.module_service import grace_period_end
from tenant_manager.utils.timeutils import utcnow
from helpers import count_rows

T = datetime(2026, 3, 1, 12, 0, 0)


class TestEvaluateAccess:
    """Test the access decision shared by reads and the expiry sweep"""

    def test_undated_active_entitlement_never_expires(self):
        decision = evaluate_access("active", None, None, T + timedelta(days=3650))
        assert decision.has_access is True
        assert decision.status == EntitlementStatus.active

    def test_before_expiry(self):
        decision = evaluate_access("active", T, T + timedelta(days=7), T - timedelta(seconds=1))
        assert decision.has_access is True
        assert decision.status == EntitlementStatus.active

    def test_grace_window_is_closed_interval(self):
        grace_end = T + timedelta(days=7)
        for now in (T, T + timedelta(days=3), grace_end):
            decision = evaluate_access("active", T, grace_end, now)
            assert decision.has_access is True

        after = evaluate_access("active", T, grace_end, grace_end + timedelta(seconds=1))
        assert after.has_access is False
        assert after.status == EntitlementStatus.inactive

    def test_inside_grace_moves_to_expired(self):
        decision = evaluate_access("active", T, T + timedelta(days=7), T + timedelta(days=1))
        assert decision.status == EntitlementStatus.expired

    def test_without_grace_end_window_closes_at_expiry(self):
        assert evaluate_access("active", T, None, T).has_access is True
        assert evaluate_access("active", T, None, T + timedelta(seconds=1)).has_access is False

    def test_inactive_and_cancelled_never_grant(self):
        assert evaluate_access("inactive", None, None, T).has_access is False
        assert evaluate_access("cancelled", T + timedelta(days=1), None, T).has_access is False


class TestEntitlementTransitions:
    """Test the entitlement transition table"""

    def test_cancel_is_terminal_except_for_activate(self):
        assert next_entitlement_status("cancelled", EntitlementEvent.activate) == EntitlementStatus.active
        with pytest.raises(InvalidStatusTransitionError):
            next_entitlement_status("cancelled", EntitlementEvent.renew)

    def test_lapse_from_expired(self):
        assert next_entitlement_status("expired", EntitlementEvent.lapse) == EntitlementStatus.inactive

    def test_grace_period_end(self):
        assert grace_period_end(T, 7) == T + timedelta(days=7)
        assert grace_period_end(None, 7) is None


class TestModuleRegistry:
    """Test module registration"""

    async def test_register_requires_fields(self, module_service):
        with pytest.raises(ValidationError) as exc_info:
            await module_service.register_module({"name": "CRM"})
        assert exc_info.value.errors == ["Field 'slug' is required", "Field 'path' is required"]

    async def test_register_then_update_by_slug(self, module_service):
        first = await module_service.register_module({"name": "CRM", "slug": "CRM Suite", "path": "crm/crm.php"})
        assert first.slug == "crm-suite"
        assert first.version == "1.0.0"

        second = await module_service.register_module(
            {"name": "CRM Pro", "slug": "crm-suite", "path": "crm/crm.php", "version": "2.0.0"}
        )
        assert second.id == first.id
        assert second.name == "CRM Pro"
        assert len(await module_service.list_modules()) == 1

    async def test_lookup_by_product(self, module_service, make_module):
        module = await make_module("billing", product_id=102)
        assert (await module_service.get_module_by_product_id(102)).id == module.id
        assert await module_service.get_module_by_product_id(999) is None


class TestActivation:
    """Test activation and deactivation"""

    async def test_activate_sets_grace(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("billing")

        entitlement = await module_service.activate(tenant.id, module.id, subscription_ref="501", expires_at=T)

        assert entitlement.status == "active"
        assert entitlement.subscription_ref == "501"
        assert entitlement.expires_at == T
        assert entitlement.grace_period_ends == T + timedelta(days=7)

    async def test_double_activate_keeps_one_row(self, test_db, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("crm")

        await module_service.activate(tenant.id, module.id, expires_at=T)
        entitlement = await module_service.activate(tenant.id, module.id, subscription_ref="777")

        assert await count_rows(test_db, TenantModule) == 1
        assert entitlement.subscription_ref == "777"
        assert entitlement.expires_at is None
        assert entitlement.grace_period_ends is None

    async def test_activate_unknown_tenant_or_module(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("crm")

        with pytest.raises(NotFoundError):
            await module_service.activate(9999, module.id)
        with pytest.raises(NotFoundError):
            await module_service.activate(tenant.id, 9999)

    async def test_reactivate_after_cancel(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("crm")
        await module_service.activate(tenant.id, module.id, subscription_ref="501")
        await module_service.cancel_subscription("501")

        entitlement = await module_service.activate(tenant.id, module.id)

        assert entitlement.status == "active"
        assert await module_service.has_access(tenant.id, module.id)

    async def test_deactivate(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("crm")
        await module_service.activate(tenant.id, module.id)

        assert await module_service.deactivate(tenant.id, module.id, reason="refund") is True
        assert await module_service.has_access(tenant.id, module.id) is False
        assert (await module_service.get_entitlement(tenant.id, module.id)).status_reason == "refund"

    async def test_deactivate_missing_entitlement(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("crm")
        assert await module_service.deactivate(tenant.id, module.id) is False


class TestAccessOverTime:
    """Test has_access and check_expired around expiry and grace"""

    async def test_purchase_scenario(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        crm = await make_module("crm")
        billing = await make_module("billing")
        now = utcnow()

        await module_service.activate(tenant.id, crm.id)
        await module_service.activate(tenant.id, billing.id, subscription_ref="501", expires_at=now + timedelta(days=30))

        assert await module_service.has_access(tenant.id, crm.id, now=now + timedelta(days=3650))
        assert await module_service.has_access(tenant.id, billing.id, now=now + timedelta(days=31))
        assert (await module_service.get_entitlement(tenant.id, billing.id)).status == "expired"

        assert not await module_service.has_access(tenant.id, billing.id, now=now + timedelta(days=38))
        assert (await module_service.get_entitlement(tenant.id, billing.id)).status == "inactive"

    async def test_read_without_reconcile_leaves_status(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("crm")
        await module_service.activate(tenant.id, module.id, expires_at=T)

        assert await module_service.has_access(tenant.id, module.id, now=T + timedelta(days=1), reconcile=False)
        assert (await module_service.get_entitlement(tenant.id, module.id)).status == "active"

    async def test_no_entitlement_means_no_access(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("crm")
        assert await module_service.has_access(tenant.id, module.id) is False

    async def test_check_expired_sweep(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        crm = await make_module("crm")
        billing = await make_module("billing")
        reports = await make_module("reports")
        await module_service.activate(tenant.id, crm.id)
        await module_service.activate(tenant.id, billing.id, expires_at=T)
        await module_service.activate(tenant.id, reports.id, expires_at=T + timedelta(days=20))

        changed = await module_service.check_expired(now=T + timedelta(days=7, seconds=1))

        assert changed == 1
        assert (await module_service.get_entitlement(tenant.id, billing.id)).status == "inactive"
        assert (await module_service.get_entitlement(tenant.id, crm.id)).status == "active"
        assert (await module_service.get_entitlement(tenant.id, reports.id)).status == "active"

    async def test_sweep_and_read_agree_inside_grace(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("crm")
        await module_service.activate(tenant.id, module.id, expires_at=T)

        assert await module_service.check_expired(now=T + timedelta(days=7)) == 1
        assert (await module_service.get_entitlement(tenant.id, module.id)).status == "expired"
        assert await module_service.has_access(tenant.id, module.id, now=T + timedelta(days=7))

    async def test_active_modules_for_tenant(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        crm = await make_module("crm", name="Customer Relations")
        billing = await make_module("billing", name="Billing")
        await module_service.activate(tenant.id, crm.id)
        await module_service.activate(tenant.id, billing.id)
        await module_service.deactivate(tenant.id, crm.id)

        visible = await module_service.active_modules_for_tenant(tenant.id)

        assert [e.module.slug for e in visible] == ["billing"]


class TestSubscriptionChanges:
    """Test subscription driven expire, cancel and renew"""

    async def test_expire_keeps_stored_grace_window(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("billing")
        await module_service.activate(tenant.id, module.id, subscription_ref="501", expires_at=T + timedelta(days=30))

        changed = await module_service.expire_subscription("501", now=T)

        assert len(changed) == 1
        entitlement = await module_service.get_entitlement(tenant.id, module.id)
        assert entitlement.status == "expired"
        assert entitlement.expires_at == T + timedelta(days=30)
        assert entitlement.grace_period_ends == T + timedelta(days=37)
        assert await module_service.has_access(tenant.id, module.id, now=T + timedelta(days=10), reconcile=False)
        assert await module_service.has_access(tenant.id, module.id, now=T + timedelta(days=37), reconcile=False)
        assert not await module_service.has_access(tenant.id, module.id, now=T + timedelta(days=38), reconcile=False)

    async def test_expire_dates_a_perpetual_entitlement(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("billing")
        await module_service.activate(tenant.id, module.id, subscription_ref="501")

        await module_service.expire_subscription("501", now=T)

        entitlement = await module_service.get_entitlement(tenant.id, module.id)
        assert entitlement.status == "expired"
        assert entitlement.expires_at == T
        assert entitlement.grace_period_ends == T + timedelta(days=7)
        assert await module_service.has_access(tenant.id, module.id, now=T + timedelta(days=1), reconcile=False)

    async def test_cancel_bypasses_grace(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("billing")
        await module_service.activate(tenant.id, module.id, subscription_ref="501", expires_at=utcnow() + timedelta(days=30))

        await module_service.cancel_subscription("501")

        assert (await module_service.get_entitlement(tenant.id, module.id)).status == "cancelled"
        assert await module_service.has_access(tenant.id, module.id) is False

    async def test_renew_restores_and_extends(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("billing")
        await module_service.activate(tenant.id, module.id, subscription_ref="501", expires_at=T)
        await module_service.check_expired(now=T + timedelta(days=8))

        renewed = await module_service.renew_subscription("501", T + timedelta(days=60))

        assert len(renewed) == 1
        entitlement = await module_service.get_entitlement(tenant.id, module.id)
        assert entitlement.status == "active"
        assert entitlement.grace_period_ends == T + timedelta(days=67)

    async def test_renew_skips_cancelled(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        module = await make_module("billing")
        await module_service.activate(tenant.id, module.id, subscription_ref="501")
        await module_service.cancel_subscription("501")

        assert await module_service.renew_subscription("501", T) == []

    async def test_statistics(self, module_service, make_tenant, make_module):
        tenant = await make_tenant("acme01")
        crm = await make_module("crm")
        await make_module("billing")
        await module_service.activate(tenant.id, crm.id)

        stats = await module_service.statistics()

        assert stats["total_modules"] == 2
        assert stats["entitlements_by_status"] == {"active": 1}
        assert stats["active_per_module"] == {"crm": 1}
