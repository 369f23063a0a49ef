"""
API Key Model

Tenant-scoped credentials for programmatic clients of the license API.
"""

import enum
import secrets

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String

from tenant_manager.database import Base
from tenant_manager.utils.timeutils import utcnow


class ApiKeyStatus(str, enum.Enum):
    active = "active"
    revoked = "revoked"


class ApiPermission(str, enum.Enum):
    """Permissions grantable to an API key."""

    CHECK_LICENSE = "check_license"
    GET_TENANT_INFO = "get_tenant_info"
    GET_MODULE_STATUS = "get_module_status"
    VERIFY_ACCESS = "verify_access"
    UPDATE_ACTIVITY = "update_activity"
    ALL = "*"


DEFAULT_PERMISSIONS = [p.value for p in ApiPermission if p is not ApiPermission.ALL]


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)

    # The key is prefix (visible) + secret (hashed)
    key_prefix = Column(String(16), unique=True, nullable=False, index=True)
    key_hash = Column(String(128), nullable=False)

    permissions = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, default=ApiKeyStatus.active.value)
    expires_at = Column(DateTime, nullable=True)

    # Rolling hourly rate limit
    rate_limit = Column(Integer, default=1000, nullable=False)
    rate_limit_remaining = Column(Integer, default=1000, nullable=False)
    rate_limit_reset = Column(DateTime, nullable=True)

    last_used_at = Column(DateTime, nullable=True)
    total_requests = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_api_keys_tenant_status", "tenant_id", "status"),)

    def __repr__(self) -> str:
        return f"<ApiKey(id={self.id}, tenant_id={self.tenant_id}, prefix={self.key_prefix})>"

    @staticmethod
    def generate_key() -> tuple[str, str, str]:
        """
        Generate a new API key.

        Returns:
            tuple: (full_key, prefix, secret)
            - full_key: the complete key, shown to the caller once
            - prefix: the visible lookup prefix, e.g. "tmk_1a2b3c"
            - secret: the part that is hashed and stored
        """
        prefix = "tmk_" + secrets.token_hex(3)
        secret = secrets.token_urlsafe(32)
        return f"{prefix}_{secret}", prefix, secret

    def has_permission(self, permission: str) -> bool:
        granted = self.permissions or []
        return ApiPermission.ALL.value in granted or permission in granted

    def is_expired(self, now=None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at
