"""
Tenant model.

A tenant is a provisioned customer account owning one subdomain and one
isolated database. Username, subdomain and database name are assigned once at
creation and never change.
"""

import enum

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from tenant_manager.database import Base
from tenant_manager.exceptions import InvalidStatusTransitionError
from tenant_manager.utils.timeutils import utcnow


class TenantStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    suspended = "suspended"
    cancelled = "cancelled"


TENANT_TRANSITIONS: dict[TenantStatus, frozenset[TenantStatus]] = {
    TenantStatus.pending: frozenset({TenantStatus.active, TenantStatus.suspended, TenantStatus.cancelled}),
    TenantStatus.active: frozenset({TenantStatus.suspended, TenantStatus.cancelled}),
    TenantStatus.suspended: frozenset({TenantStatus.active, TenantStatus.pending, TenantStatus.cancelled}),
    TenantStatus.cancelled: frozenset({TenantStatus.active}),
}


def next_tenant_status(current: str | TenantStatus, target: str | TenantStatus) -> TenantStatus:
    """Return the target status if the move is allowed; same-state moves are allowed."""
    try:
        current, target = TenantStatus(current), TenantStatus(target)
    except ValueError:
        raise InvalidStatusTransitionError(str(current), str(target), resource_type="Tenant")
    if current != target and target not in TENANT_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(current.value, target.value, resource_type="Tenant")
    return target


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    tenant_username = Column(String(60), nullable=False, unique=True)
    account_name = Column(String(255), nullable=False)
    company_name = Column(String(255), nullable=True)
    subdomain = Column(String(255), nullable=False, unique=True)
    database_name = Column(String(64), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=TenantStatus.pending.value)
    storage_used = Column(BigInteger, nullable=False, default=0)
    storage_limit = Column(BigInteger, nullable=False)
    user_limit = Column(Integer, nullable=False)
    phone_number = Column(String(32), nullable=True)
    address = Column(String(500), nullable=True)
    billing_email = Column(String(255), nullable=True)
    # metadata_ avoids shadowing Base.metadata
    metadata_ = Column("metadata", JSON, nullable=True, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    provisioned_at = Column(DateTime, nullable=True)
    last_login = Column(DateTime, nullable=True)

    user = relationship("User", lazy="select")

    __table_args__ = (
        Index("idx_tenant_status", "status"),
        Index("idx_tenant_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, username={self.tenant_username}, status={self.status})>"
