"""
Processing lease

A named lease row acts as the system-wide "processing" flag. Acquisition is a
conditional write: take over the row when it has expired (or is already ours),
otherwise insert it; a unique-key violation on insert means someone else holds
it. Expired leases are taken over, so a crashed holder cannot wedge the queue.
"""

import logging
import os
import socket
import uuid
from datetime import timedelta

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.models.provisioning import ProvisioningLease
from tenant_manager.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def make_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


async def acquire_lease(db: AsyncSession, name: str, owner: str, ttl: timedelta) -> bool:
    now = utcnow()
    result = await db.execute(
        update(ProvisioningLease)
        .where(
            ProvisioningLease.name == name,
            or_(ProvisioningLease.expires_at < now, ProvisioningLease.owner == owner),
        )
        .values(owner=owner, acquired_at=now, expires_at=now + ttl)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        await db.commit()
        logger.debug("Lease %s taken over by %s", name, owner)
        return True

    try:
        # A lost insert rolls back only the savepoint
        async with db.begin_nested():
            await db.execute(
                insert(ProvisioningLease).values(name=name, owner=owner, acquired_at=now, expires_at=now + ttl)
            )
    except IntegrityError:
        await db.commit()
        logger.debug("Lease %s is held by another worker", name)
        return False
    await db.commit()
    logger.debug("Lease %s acquired by %s", name, owner)
    return True


async def release_lease(db: AsyncSession, name: str, owner: str) -> bool:
    result = await db.execute(
        delete(ProvisioningLease)
        .where(ProvisioningLease.name == name, ProvisioningLease.owner == owner)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def lease_is_held(db: AsyncSession, name: str) -> bool:
    result = await db.execute(
        select(ProvisioningLease.owner).where(ProvisioningLease.name == name, ProvisioningLease.expires_at >= utcnow())
    )
    return result.scalar() is not None
