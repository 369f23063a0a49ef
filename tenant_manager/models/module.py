"""
Module and TenantModule (entitlement) models.

Entitlement status changes go through ENTITLEMENT_TRANSITIONS, keyed by
(current status, event). Access decisions are made by evaluate_access, which
both the read path and the periodic expiry sweep use.
"""

import enum
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from tenant_manager.database import Base
from tenant_manager.exceptions import InvalidStatusTransitionError
from tenant_manager.utils.timeutils import utcnow


class ModuleStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    deprecated = "deprecated"


class EntitlementStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    expired = "expired"
    cancelled = "cancelled"


class EntitlementEvent(str, enum.Enum):
    activate = "activate"  # purchase or manual grant
    renew = "renew"  # subscription renewal paid
    expire = "expire"  # expiry date reached, grace window running
    lapse = "lapse"  # grace window elapsed
    deactivate = "deactivate"  # operator or platform switch-off
    cancel = "cancel"  # subscription cancelled, no grace


_S = EntitlementStatus
_E = EntitlementEvent

ENTITLEMENT_TRANSITIONS: dict[tuple[EntitlementStatus, EntitlementEvent], EntitlementStatus] = {
    (_S.active, _E.activate): _S.active,
    (_S.inactive, _E.activate): _S.active,
    (_S.expired, _E.activate): _S.active,
    (_S.cancelled, _E.activate): _S.active,
    (_S.active, _E.renew): _S.active,
    (_S.expired, _E.renew): _S.active,
    (_S.inactive, _E.renew): _S.active,
    (_S.active, _E.expire): _S.expired,
    (_S.expired, _E.expire): _S.expired,
    (_S.active, _E.lapse): _S.inactive,
    (_S.expired, _E.lapse): _S.inactive,
    (_S.active, _E.deactivate): _S.inactive,
    (_S.expired, _E.deactivate): _S.inactive,
    (_S.inactive, _E.deactivate): _S.inactive,
    (_S.cancelled, _E.deactivate): _S.cancelled,
    (_S.active, _E.cancel): _S.cancelled,
    (_S.expired, _E.cancel): _S.cancelled,
    (_S.inactive, _E.cancel): _S.cancelled,
    (_S.cancelled, _E.cancel): _S.cancelled,
}


def next_entitlement_status(current: str | EntitlementStatus, event: EntitlementEvent) -> EntitlementStatus:
    current = EntitlementStatus(current)
    try:
        return ENTITLEMENT_TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidStatusTransitionError(current.value, event.value, resource_type="Entitlement")


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    status: EntitlementStatus


def evaluate_access(
    status: str | EntitlementStatus,
    expires_at: datetime | None,
    grace_period_ends: datetime | None,
    now: datetime,
) -> AccessDecision:
    """
    Decide access at `now` and the status the entitlement should have.

    Access holds through the closed interval [expires_at, grace_period_ends]
    and ends strictly after it. Without a recorded grace end the window closes
    at expires_at.
    """
    status = EntitlementStatus(status)
    if status not in (EntitlementStatus.active, EntitlementStatus.expired):
        return AccessDecision(False, status)

    if expires_at is None:
        if status == EntitlementStatus.active:
            return AccessDecision(True, status)
        # expired with no dates left: only a recorded grace end keeps access
        if grace_period_ends is not None and now <= grace_period_ends:
            return AccessDecision(True, status)
        return AccessDecision(False, EntitlementStatus.inactive)

    if status == EntitlementStatus.active and now <= expires_at:
        return AccessDecision(True, status)

    grace_end = grace_period_ends or expires_at
    if now <= grace_end:
        return AccessDecision(True, EntitlementStatus.expired)
    return AccessDecision(False, EntitlementStatus.inactive)


class Module(Base):
    __tablename__ = "modules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    path = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    icon_url = Column(String(500), nullable=True)
    product_id = Column(Integer, nullable=True, index=True)
    version = Column(String(20), nullable=False, default="1.0.0")
    min_platform_version = Column(String(20), nullable=True)
    requires_modules = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, default=ModuleStatus.active.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "path": self.path,
            "description": self.description,
            "icon_url": self.icon_url,
            "product_id": self.product_id,
            "version": self.version,
            "requires_modules": list(self.requires_modules or []),
            "status": self.status,
        }


class TenantModule(Base):
    __tablename__ = "tenant_modules"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    module_id = Column(Integer, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)
    subscription_ref = Column(String(64), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=EntitlementStatus.active.value)
    activated_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)
    grace_period_ends = Column(DateTime, nullable=True)
    last_checked = Column(DateTime, nullable=True)
    status_reason = Column(String(255), nullable=True)
    usage_data = Column(JSON, nullable=True)

    module = relationship("Module", lazy="joined", innerjoin=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "module_id", name="uq_tenant_module"),
        Index("idx_tenant_module_status", "status", "expires_at"),
    )

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "module_id": self.module_id,
            "module_slug": self.module.slug if self.module else None,
            "module_name": self.module.name if self.module else None,
            "subscription_ref": self.subscription_ref,
            "status": self.status,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "grace_period_ends": self.grace_period_ends.isoformat() if self.grace_period_ends else None,
        }
