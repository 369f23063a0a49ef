from .api_key import ApiKey
from .audit_log import AuditLog
from .module import Module, TenantModule
from .processed_order import ProcessedOrder
from .provisioning import ProvisioningLease, ProvisioningQueueItem
from .tenant import Tenant
from .user import User

__all__ = [
    "ApiKey",
    "AuditLog",
    "Module",
    "ProcessedOrder",
    "ProvisioningLease",
    "ProvisioningQueueItem",
    "Tenant",
    "TenantModule",
    "User",
]
