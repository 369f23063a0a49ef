import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tenant_manager.config import settings
from tenant_manager.database import AsyncSessionLocal
from tenant_manager.services.module_service import ModuleService
from tenant_manager.services.provisioning_queue import ProvisioningQueue

scheduler = AsyncIOScheduler()

logger = logging.getLogger(__name__)

PROVISIONING_JOB_ID = "provisioning_pass"
EXPIRY_JOB_ID = "entitlement_expiry_check"


async def run_provisioning_pass() -> None:
    async with AsyncSessionLocal() as db:
        result = await ProvisioningQueue(db).process_pass()
        if result.ran and (result.provisioned or result.failed):
            logger.info(f"[Scheduler] Provisioning pass: {result.to_dict()}")


async def run_expiry_check() -> None:
    async with AsyncSessionLocal() as db:
        changed = await ModuleService(db).check_expired()
        logger.info(f"[Scheduler] Entitlement expiry check changed {changed} rows")


def schedule_jobs() -> None:
    scheduler.add_job(
        run_provisioning_pass,
        trigger=IntervalTrigger(seconds=settings.provisioning_interval_seconds),
        id=PROVISIONING_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_expiry_check,
        trigger=IntervalTrigger(minutes=settings.expiry_check_interval_minutes),
        id=EXPIRY_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(
        f"[Scheduler] Jobs scheduled: provisioning every {settings.provisioning_interval_seconds}s, "
        f"expiry check every {settings.expiry_check_interval_minutes}min"
    )


def start_scheduler() -> None:
    if scheduler.running:
        return
    schedule_jobs()
    scheduler.start()


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
