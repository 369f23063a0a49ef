"""
Tests for scheduled jobs
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from tenant_manager import scheduler as scheduler_module
from tenant_manager.models import Tenant, TenantModule
from tenant_manager.services.provisioning_queue import ProvisioningQueue
from tenant_manager.utils.timeutils import utcnow


@pytest.fixture(autouse=True)
def scheduler_sessions(monkeypatch, session_factory):
    monkeypatch.setattr(scheduler_module, "AsyncSessionLocal", session_factory)


class TestScheduledJobs:
    """Test the job functions run by the scheduler"""

    async def test_provisioning_pass(self, test_db, make_tenant, provisioner):
        tenant = await make_tenant("acme01")
        await ProvisioningQueue(test_db).enqueue(tenant.id)

        await scheduler_module.run_provisioning_pass()

        assert await test_db.scalar(select(Tenant.status).where(Tenant.id == tenant.id)) == "active"
        assert await ProvisioningQueue(test_db).get_item(tenant.id) is None
        assert "tenant_acme01" in provisioner.databases

    async def test_expiry_check(self, test_db, make_tenant, make_module, module_service):
        tenant = await make_tenant("acme01")
        module = await make_module("billing")
        await module_service.activate(tenant.id, module.id, expires_at=utcnow() - timedelta(days=30))

        await scheduler_module.run_expiry_check()

        status = await test_db.scalar(
            select(TenantModule.status).where(TenantModule.tenant_id == tenant.id, TenantModule.module_id == module.id)
        )
        assert status == "inactive"


class TestSchedule:
    def test_jobs_registered(self):
        try:
            scheduler_module.schedule_jobs()
            job_ids = sorted(job.id for job in scheduler_module.scheduler.get_jobs())
        finally:
            scheduler_module.scheduler.remove_all_jobs()

        assert job_ids == [scheduler_module.EXPIRY_JOB_ID, scheduler_module.PROVISIONING_JOB_ID]
