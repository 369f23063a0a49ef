"""
Provisioning Queue

Durable, priority-ordered work list that turns pending tenants into active
ones. A processing pass is single-flight across the whole deployment through
the "provisioning_queue" lease, handles a bounded number of items, and always
releases the lease.

Item lifecycle:
    pending -> removed on success
    pending/retrying -> retrying (attempts + 1) on failure
    attempts >= max_retries -> failed (kept until an operator retries or clears it)
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.config import settings
from tenant_manager.exceptions import NotFoundError, TenantManagerError
from tenant_manager.models.provisioning import ProvisioningQueueItem, QueueItemStatus
from tenant_manager.services.processing_lease import acquire_lease, lease_is_held, make_owner_id, release_lease
from tenant_manager.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

LEASE_NAME = "provisioning_queue"
DEFAULT_PRIORITY = 10


@dataclass
class PassResult:
    ran: bool = True
    provisioned: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)

    @property
    def handled(self) -> int:
        return len(self.provisioned) + len(self.failed)

    def to_dict(self) -> dict:
        return {
            "ran": self.ran,
            "provisioned": self.provisioned,
            "failed": self.failed,
            "skipped": self.skipped,
            "removed": self.removed,
        }


class ProvisioningQueue:
    def __init__(
        self,
        db: AsyncSession,
        tenant_service=None,
        max_retries: int | None = None,
        batch_size: int | None = None,
        lease_seconds: int | None = None,
    ):
        self.db = db
        self._tenant_service = tenant_service
        self.max_retries = max_retries or settings.provisioning_max_retries
        self.batch_size = batch_size or settings.provisioning_batch_size
        self.lease_ttl = timedelta(seconds=lease_seconds or settings.provisioning_lease_seconds)

    @property
    def tenant_service(self):
        if self._tenant_service is None:
            from tenant_manager.services.tenant_service import TenantService

            self._tenant_service = TenantService(self.db)
        return self._tenant_service

    # ── queue contents ─────────────────────────────────────────────────────────

    async def enqueue(self, tenant_id: int, priority: int = DEFAULT_PRIORITY) -> ProvisioningQueueItem:
        """Add a tenant to the queue. A tenant already queued is left as is."""
        existing = await self.get_item(tenant_id)
        if existing is not None:
            logger.debug("Tenant %d already in provisioning queue", tenant_id)
            return existing

        item = ProvisioningQueueItem(
            tenant_id=tenant_id,
            priority=priority,
            status=QueueItemStatus.pending.value,
            attempts=0,
            enqueued_at=utcnow(),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(item)
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent enqueue of the same tenant
            logger.debug("Tenant %d already in provisioning queue", tenant_id)
            return await self.get_item(tenant_id)

        logger.info("Tenant %d queued for provisioning (priority %d)", tenant_id, priority)
        return item

    async def get_item(self, tenant_id: int) -> ProvisioningQueueItem | None:
        result = await self.db.execute(select(ProvisioningQueueItem).where(ProvisioningQueueItem.tenant_id == tenant_id))
        return result.scalars().first()

    async def get_item_status(self, tenant_id: int) -> dict | None:
        item = await self.get_item(tenant_id)
        return item.to_dict() if item else None

    async def items(self, status: str | QueueItemStatus | None = None) -> list[ProvisioningQueueItem]:
        query = select(ProvisioningQueueItem).order_by(ProvisioningQueueItem.priority, ProvisioningQueueItem.id)
        if status:
            query = query.where(ProvisioningQueueItem.status == QueueItemStatus(status).value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def is_processing(self) -> bool:
        return await lease_is_held(self.db, LEASE_NAME)

    # ── processing ─────────────────────────────────────────────────────────────

    async def process_pass(self) -> PassResult:
        """Run one processing pass; returns PassResult(ran=False) when another pass holds the lease."""
        owner = make_owner_id()
        if not await acquire_lease(self.db, LEASE_NAME, owner, self.lease_ttl):
            logger.info("Provisioning pass skipped: another pass is running")
            return PassResult(ran=False)

        result = PassResult()
        try:
            # Plain values; a failed provisioning step rolls the session back, which expires ORM rows
            snapshot = [(item.tenant_id, item.status, item.attempts) for item in await self.items()]
            if not snapshot:
                logger.debug("Provisioning queue is empty")
                return result

            for tenant_id, status, attempts in snapshot:
                if result.handled >= self.batch_size:
                    break
                if status == QueueItemStatus.failed.value:
                    result.skipped.append(tenant_id)
                    continue
                if attempts >= self.max_retries:
                    await self._mark_failed(tenant_id)
                    result.failed.append(tenant_id)
                    continue
                await self._process_item(tenant_id, result)
        except Exception:
            await self.db.rollback()
            raise
        finally:
            await release_lease(self.db, LEASE_NAME, owner)

        logger.info(
            "Provisioning pass done: %d provisioned, %d failed, %d skipped",
            len(result.provisioned),
            len(result.failed),
            len(result.skipped),
        )
        return result

    async def trigger(self) -> PassResult:
        return await self.process_pass()

    async def _process_item(self, tenant_id: int, result: PassResult) -> None:
        try:
            await self.tenant_service.provision_tenant(tenant_id)
        except NotFoundError:
            logger.warning("Tenant %d no longer exists; dropping queue item", tenant_id)
            await self._remove(tenant_id)
            result.removed.append(tenant_id)
        except TenantManagerError as exc:
            await self._record_failure(tenant_id, exc)
            result.failed.append(tenant_id)
        except Exception as exc:
            logger.exception("Unexpected error while provisioning tenant %d", tenant_id)
            await self._record_failure(tenant_id, exc)
            result.failed.append(tenant_id)
        else:
            await self._remove(tenant_id)
            result.provisioned.append(tenant_id)

    async def _record_failure(self, tenant_id: int, exc: Exception) -> None:
        await self.db.rollback()
        item = await self.get_item(tenant_id)
        if item is None:
            return
        item.attempts += 1
        item.last_error = str(exc)[:2000]
        item.last_attempt_at = utcnow()
        if item.attempts >= self.max_retries:
            item.status = QueueItemStatus.failed.value
            logger.error("Provisioning of tenant %d failed permanently after %d attempts", tenant_id, item.attempts)
        else:
            item.status = QueueItemStatus.retrying.value
            logger.warning("Provisioning of tenant %d failed (attempt %d): %s", tenant_id, item.attempts, exc)
        await self.db.commit()

    async def _mark_failed(self, tenant_id: int) -> None:
        item = await self.get_item(tenant_id)
        if item is not None:
            item.status = QueueItemStatus.failed.value
            await self.db.commit()

    async def _remove(self, tenant_id: int) -> None:
        await self.db.execute(
            delete(ProvisioningQueueItem)
            .where(ProvisioningQueueItem.tenant_id == tenant_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    # ── operator actions ───────────────────────────────────────────────────────

    async def retry_item(self, tenant_id: int) -> bool:
        """Reset a queued item to pending with a fresh attempt budget."""
        item = await self.get_item(tenant_id)
        if item is None:
            return False
        item.attempts = 0
        item.status = QueueItemStatus.pending.value
        item.last_error = None
        await self.db.commit()
        logger.info("Provisioning item for tenant %d reset to pending", tenant_id)
        return True

    async def clear_failed(self) -> int:
        result = await self.db.execute(
            delete(ProvisioningQueueItem)
            .where(ProvisioningQueueItem.status == QueueItemStatus.failed.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info("Cleared %d failed provisioning items", result.rowcount)
        return result.rowcount

    async def clear_queue(self) -> int:
        result = await self.db.execute(delete(ProvisioningQueueItem).execution_options(synchronize_session=False))
        await self.db.commit()
        logger.warning("Provisioning queue cleared (%d items)", result.rowcount)
        return result.rowcount

    async def cleanup_old_items(self, days: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(ProvisioningQueueItem)
            .where(
                ProvisioningQueueItem.status == QueueItemStatus.failed.value,
                ProvisioningQueueItem.enqueued_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    async def statistics(self) -> dict:
        rows = await self.db.execute(
            select(ProvisioningQueueItem.status, func.count(ProvisioningQueueItem.id)).group_by(
                ProvisioningQueueItem.status
            )
        )
        counts = {status: count for status, count in rows.all()}
        oldest = await self.db.scalar(select(func.min(ProvisioningQueueItem.enqueued_at)))

        return {
            "total": sum(counts.values()),
            "pending": counts.get(QueueItemStatus.pending.value, 0),
            "retrying": counts.get(QueueItemStatus.retrying.value, 0),
            "failed": counts.get(QueueItemStatus.failed.value, 0),
            "oldest_item_age_seconds": int((utcnow() - oldest).total_seconds()) if oldest else None,
            "is_processing": await self.is_processing(),
        }
