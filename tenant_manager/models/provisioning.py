"""
Provisioning queue persistence.

ProvisioningQueueItem holds at most one row per tenant. ProvisioningLease is
the single-flight lock for queue passes: a row per lease name carrying the
current owner and an expiry after which another worker may take it over.
"""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from tenant_manager.database import Base
from tenant_manager.utils.timeutils import utcnow


class QueueItemStatus(str, enum.Enum):
    pending = "pending"
    retrying = "retrying"
    failed = "failed"


class ProvisioningQueueItem(Base):
    __tablename__ = "provisioning_queue"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True)
    priority = Column(Integer, nullable=False, default=10)  # lower = sooner
    status = Column(String(20), nullable=False, default=QueueItemStatus.pending.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    enqueued_at = Column(DateTime, nullable=False, default=utcnow)
    last_attempt_at = Column(DateTime, nullable=True)

    tenant = relationship("Tenant", lazy="select")

    __table_args__ = (Index("idx_queue_status_priority", "status", "priority", "id"),)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "priority": self.priority,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at.isoformat() if self.enqueued_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }


class ProvisioningLease(Base):
    __tablename__ = "provisioning_leases"

    name = Column(String(64), primary_key=True)
    owner = Column(String(128), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
