import json
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def validate_details(details: dict | None) -> None:
    """Raise ValueError unless details are JSON-serializable."""
    if details:
        try:
            json.dumps(details)
        except TypeError as e:
            logger.error(f"Details validation failed. Non-serializable data: {details}")
            raise ValueError(f"Details must be JSON-serializable. Error: {e}") from e


def log_audit(
    db: AsyncSession,
    action: str,
    entity_type: str,
    entity_id: int | None,
    details: dict[str, Any] | None = None,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    """
    Add an audit record to the caller's session.

    The record is committed together with the change it describes.
    """
    validate_details(details)
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        user_id=user_id,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:255] or None,
    )
    db.add(entry)
    logger.debug("Audit %s %s:%s", action, entity_type, entity_id)
    return entry
