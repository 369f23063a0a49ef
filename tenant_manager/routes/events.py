"""
Commerce Event Routes

Inbound storefront events. The raw body must be signed with the shared
webhook secret (base64 HMAC-SHA256 in X-Webhook-Signature).

Body format:
    {"event": "order.paid", "data": {"order_id": "1042"}}
"""

import json
import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.config import settings
from tenant_manager.database import get_db
from tenant_manager.exceptions import AccessDeniedError, AuthError, ValidationError
from tenant_manager.services.commerce_client import verify_signature
from tenant_manager.services.order_event_service import OrderEventService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Commerce Events"])


async def get_order_event_service(db: AsyncSession = Depends(get_db)) -> OrderEventService:
    return OrderEventService(db)


@router.post("/commerce")
async def receive_commerce_event(
    request: Request,
    x_webhook_signature: str | None = Header(None),
    x_webhook_event: str | None = Header(None),
    service: OrderEventService = Depends(get_order_event_service),
):
    if not settings.commerce_webhook_secret:
        raise AccessDeniedError("Commerce events are disabled")

    body = await request.body()
    if not verify_signature(settings.commerce_webhook_secret, body, x_webhook_signature):
        logger.warning("Rejected commerce event with a bad signature")
        raise AuthError("Invalid webhook signature")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise ValidationError(errors=["Body is not valid JSON"])
    if not isinstance(payload, dict):
        raise ValidationError(errors=["Body must be a JSON object"])

    event_type = x_webhook_event or payload.get("event")
    if not event_type:
        raise ValidationError(errors=["Event type is required"], field="event")

    logger.info("Commerce event received: %s", event_type)
    result = await service.handle_event(event_type, payload.get("data") or {})
    return {"event": event_type, "result": result}
