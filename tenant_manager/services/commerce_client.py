"""
Commerce Client

Read-only access to the storefront that sells modules. Orders and
subscriptions are fetched over its REST API and mapped to small dataclasses
so the order event adapter never sees storefront payloads.
"""

import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from tenant_manager.config import settings
from tenant_manager.exceptions import CommerceError
from tenant_manager.utils.timeutils import as_naive_utc

logger = logging.getLogger(__name__)

MODULE_SLUG_META_KEY = "_module_slug"


@dataclass
class OrderItem:
    product_id: int | None
    name: str = ""
    quantity: int = 1
    module_slug: str | None = None


@dataclass
class Order:
    id: str
    customer_id: int | None
    customer_email: str | None = None
    customer_username: str | None = None
    billing_first_name: str = ""
    billing_last_name: str = ""
    billing_company: str | None = None
    billing_phone: str | None = None
    billing_address: str | None = None
    status: str = ""
    items: list[OrderItem] = field(default_factory=list)

    @property
    def billing_name(self) -> str:
        return f"{self.billing_first_name} {self.billing_last_name}".strip()


@dataclass
class Subscription:
    id: str
    customer_id: int | None
    status: str = ""
    next_payment: datetime | None = None
    parent_order_id: str | None = None


def _parse_datetime(value) -> datetime | None:
    if not value:
        return None
    try:
        return as_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Unparseable commerce timestamp: %r", value)
        return None


def _meta_value(meta_data: list[dict] | None, key: str):
    for entry in meta_data or []:
        if entry.get("key") == key:
            return entry.get("value")
    return None


def order_from_payload(payload: dict) -> Order:
    billing = payload.get("billing") or {}
    items = [
        OrderItem(
            product_id=item.get("product_id"),
            name=item.get("name", ""),
            quantity=item.get("quantity", 1),
            module_slug=item.get("module_slug") or _meta_value(item.get("meta_data"), MODULE_SLUG_META_KEY),
        )
        for item in payload.get("line_items") or []
    ]
    address = " ".join(part for part in (billing.get("address_1"), billing.get("address_2")) if part) or None
    return Order(
        id=str(payload["id"]),
        customer_id=payload.get("customer_id") or None,
        customer_email=billing.get("email") or payload.get("customer_email"),
        customer_username=payload.get("customer_username"),
        billing_first_name=billing.get("first_name", ""),
        billing_last_name=billing.get("last_name", ""),
        billing_company=billing.get("company") or None,
        billing_phone=billing.get("phone") or None,
        billing_address=address,
        status=payload.get("status", ""),
        items=items,
    )


def subscription_from_payload(payload: dict) -> Subscription:
    parent = payload.get("parent_id")
    return Subscription(
        id=str(payload["id"]),
        customer_id=payload.get("customer_id") or None,
        status=payload.get("status", ""),
        next_payment=_parse_datetime(payload.get("next_payment_date_gmt") or payload.get("next_payment_date")),
        parent_order_id=str(parent) if parent else None,
    )


def sign_payload(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of a raw event body, as sent in X-Webhook-Signature."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)


class CommerceClient(ABC):
    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None: ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Subscription | None: ...

    @abstractmethod
    async def subscriptions_for_order(self, order_id: str) -> list[Subscription]: ...


class RESTCommerceClient(CommerceClient):
    """CommerceClient over the storefront's REST API (basic auth with consumer key/secret)."""

    def __init__(
        self,
        base_url: str | None = None,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.commerce_api_url or "").rstrip("/")
        self.auth = (
            consumer_key or settings.commerce_consumer_key or "",
            consumer_secret or settings.commerce_consumer_secret or "",
        )
        self.timeout = timeout or settings.commerce_timeout_seconds
        self.transport = transport

    async def _get(self, path: str, params: dict | None = None):
        if not self.base_url:
            raise CommerceError("Commerce API URL is not configured")
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, auth=self.auth, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise CommerceError(f"Commerce API timed out on {path}") from e
        except httpx.RequestError as e:
            raise CommerceError(f"Commerce API request failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise CommerceError(
                f"Commerce API returned {response.status_code} for {path}", status_code=response.status_code
            )
        return response.json()

    async def get_order(self, order_id: str) -> Order | None:
        payload = await self._get(f"/orders/{order_id}")
        return order_from_payload(payload) if payload else None

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        payload = await self._get(f"/subscriptions/{subscription_id}")
        return subscription_from_payload(payload) if payload else None

    async def subscriptions_for_order(self, order_id: str) -> list[Subscription]:
        payload = await self._get("/subscriptions", params={"parent": order_id})
        return [subscription_from_payload(entry) for entry in payload or []]


def get_commerce_client() -> CommerceClient:
    return RESTCommerceClient()
