"""
Order Event Service

Translates storefront events into tenant and entitlement changes.

    order paid/completed      -> resolve or create the buyer's tenant, activate purchased modules
    subscription activated    -> process the parent order if that has not happened yet
    subscription on-hold      -> warn only; grace handles continued access
    subscription expired      -> entitlements move to expired (stored grace window applies)
    subscription cancelled    -> entitlements switched off immediately
    subscription renewal paid -> entitlements extended to the next payment date

Order handling is guarded by a processed_orders marker so a replayed event is
a no-op.
"""

import enum
import logging
import secrets
import string

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.exceptions import NotFoundError, ValidationError
from tenant_manager.models.module import Module, TenantModule
from tenant_manager.models.processed_order import ProcessedOrder
from tenant_manager.models.tenant import Tenant, TenantStatus
from tenant_manager.models.user import User
from tenant_manager.services.commerce_client import (
    CommerceClient,
    Order,
    Subscription,
    get_commerce_client,
    order_from_payload,
    subscription_from_payload,
)
from tenant_manager.services.module_service import ModuleService
from tenant_manager.services.notification_service import NotificationEvent, NotificationService
from tenant_manager.services.tenant_service import TenantService
from tenant_manager.services.tenant_validator import TenantInput

logger = logging.getLogger(__name__)


class CommerceEvent(str, enum.Enum):
    order_paid = "order.paid"
    order_completed = "order.completed"
    order_processing = "order.processing"
    subscription_activated = "subscription.activated"
    subscription_on_hold = "subscription.on_hold"
    subscription_expired = "subscription.expired"
    subscription_cancelled = "subscription.cancelled"
    subscription_renewal_paid = "subscription.renewal_paid"


ORDER_EVENTS = {CommerceEvent.order_paid, CommerceEvent.order_completed, CommerceEvent.order_processing}


def generate_account_password(length: int = 16) -> str:
    """Random password that satisfies every password rule (all four character classes)."""
    classes = [string.ascii_uppercase, string.ascii_lowercase, string.digits, "!@#$%^&*()-_=+"]
    chars = [secrets.choice(group) for group in classes]
    alphabet = "".join(classes)
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class OrderEventService:
    def __init__(
        self,
        db: AsyncSession,
        commerce_client: CommerceClient | None = None,
        notifier: NotificationService | None = None,
        tenant_service: TenantService | None = None,
        module_service: ModuleService | None = None,
    ):
        self.db = db
        self.commerce = commerce_client or get_commerce_client()
        self.notifier = notifier or NotificationService()
        self.tenants = tenant_service or TenantService(db, notifier=self.notifier)
        self.modules = module_service or ModuleService(db)

    async def handle_event(self, event_type: str, payload: dict) -> dict:
        try:
            event = CommerceEvent(event_type)
        except ValueError:
            raise ValidationError(errors=[f"Unsupported event type '{event_type}'"], field="event")

        if event in ORDER_EVENTS:
            return await self.on_order_paid(await self._load_order(payload))

        subscription = await self._load_subscription(payload)
        handlers = {
            CommerceEvent.subscription_activated: self.on_subscription_activated,
            CommerceEvent.subscription_on_hold: self.on_subscription_on_hold,
            CommerceEvent.subscription_expired: self.on_subscription_expired,
            CommerceEvent.subscription_cancelled: self.on_subscription_cancelled,
            CommerceEvent.subscription_renewal_paid: self.on_subscription_renewal_paid,
        }
        return await handlers[event](subscription)

    async def _load_order(self, payload: dict) -> Order:
        if payload.get("order"):
            return order_from_payload(payload["order"])
        order_id = payload.get("order_id")
        if not order_id:
            raise ValidationError(errors=["Event carries neither 'order' nor 'order_id'"], field="order_id")
        order = await self.commerce.get_order(str(order_id))
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def _load_subscription(self, payload: dict) -> Subscription:
        if payload.get("subscription"):
            return subscription_from_payload(payload["subscription"])
        subscription_id = payload.get("subscription_id")
        if not subscription_id:
            raise ValidationError(
                errors=["Event carries neither 'subscription' nor 'subscription_id'"], field="subscription_id"
            )
        subscription = await self.commerce.get_subscription(str(subscription_id))
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    # ── orders ─────────────────────────────────────────────────────────────────

    async def on_order_paid(self, order: Order) -> dict:
        marker = await self.db.get(ProcessedOrder, order.id)
        if marker is not None:
            logger.debug("Order %s already processed, skipping", order.id)
            return {
                "order_id": order.id,
                "tenant_id": marker.tenant_id,
                "modules_activated": list(marker.modules_activated or []),
                "duplicate": True,
            }

        logger.info("Processing order %s for customer %s", order.id, order.customer_id or order.customer_email)
        user = await self._resolve_user(order)
        tenant = await self._resolve_tenant(user, order)
        tenant_id = tenant.id

        subscription_ref, expires_at = None, None
        if order.items:
            subscriptions = await self.commerce.subscriptions_for_order(order.id)
            if subscriptions:
                # First subscription of the order carries the billing cycle
                subscription_ref = subscriptions[0].id
                expires_at = subscriptions[0].next_payment

        activated = []
        for item in order.items:
            module = await self._resolve_module(item.module_slug, item.product_id)
            if module is None:
                logger.warning("Order %s: product %s maps to no module, skipping", order.id, item.product_id)
                continue
            module_slug = module.slug
            await self.modules.activate(tenant_id, module.id, subscription_ref=subscription_ref, expires_at=expires_at)
            activated.append(module_slug)
            logger.info("Module %s activated for tenant %d (order %s)", module_slug, tenant_id, order.id)

        self.db.add(ProcessedOrder(order_id=order.id, tenant_id=tenant_id, modules_activated=activated))
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent replay got here first; activations are idempotent
            await self.db.rollback()
            logger.info("Order %s was marked processed concurrently", order.id)

        tenant = await self.tenants.get_tenant(tenant_id)
        if tenant is not None and tenant.status == TenantStatus.active.value:
            await self.notifier.send(
                NotificationEvent.TENANT_ACTIVATED,
                tenant.billing_email,
                {"username": tenant.tenant_username, "full_name": tenant.account_name, "subdomain": tenant.subdomain},
            )

        logger.info("Order %s processed: tenant %d, modules %s", order.id, tenant_id, activated)
        return {"order_id": order.id, "tenant_id": tenant_id, "modules_activated": activated, "duplicate": False}

    async def _resolve_user(self, order: Order) -> User:
        user = None
        if order.customer_id:
            user = await self.tenants.users.get_user(order.customer_id)
        if user is None and order.customer_email:
            user = await self.tenants.users.get_by_email(order.customer_email)
        if user is None:
            raise NotFoundError("User", order.customer_id or order.customer_email)
        return user

    async def _resolve_tenant(self, user: User, order: Order) -> Tenant:
        tenant = await self.tenants.get_tenant_by_user_id(user.id)
        if tenant is not None:
            logger.info("Using existing tenant %d for user %d", tenant.id, user.id)
            return tenant

        logger.info("Creating tenant for user %d", user.id)
        data = TenantInput(
            username=user.username,
            email=user.email,
            password=generate_account_password(),
            full_name=order.billing_name or user.full_name or user.username,
            company_name=order.billing_company,
            phone_number=order.billing_phone,
            address=order.billing_address,
        )
        return await self.tenants.create_tenant(data, existing_user=user)

    async def _resolve_module(self, module_slug: str | None, product_id: int | None) -> Module | None:
        if module_slug:
            module = await self.modules.get_module_by_slug(module_slug)
            if module is not None:
                return module
        if product_id:
            return await self.modules.get_module_by_product_id(product_id)
        return None

    # ── subscriptions ──────────────────────────────────────────────────────────

    async def on_subscription_activated(self, subscription: Subscription) -> dict:
        logger.info("Subscription activated: %s", subscription.id)
        if not subscription.parent_order_id:
            return {"subscription_id": subscription.id, "order": None}
        if await self.db.get(ProcessedOrder, subscription.parent_order_id) is not None:
            return {"subscription_id": subscription.id, "order": {"order_id": subscription.parent_order_id, "duplicate": True}}

        order = await self.commerce.get_order(subscription.parent_order_id)
        if order is None:
            logger.warning("Parent order %s of subscription %s not found", subscription.parent_order_id, subscription.id)
            return {"subscription_id": subscription.id, "order": None}
        return {"subscription_id": subscription.id, "order": await self.on_order_paid(order)}

    async def on_subscription_on_hold(self, subscription: Subscription) -> dict:
        logger.warning("Subscription on-hold: %s", subscription.id)
        entitlements = await self.modules.entitlements_for_subscription(subscription.id)
        for entitlement in entitlements:
            logger.info("Module %d on-hold for tenant %d", entitlement.module_id, entitlement.tenant_id)

        tenant = await self._subscription_tenant(subscription, entitlements)
        notified = False
        if tenant is not None:
            notified = await self.notifier.send(
                NotificationEvent.EXPIRATION_WARNING,
                tenant.billing_email,
                {
                    "username": tenant.tenant_username,
                    "full_name": tenant.account_name,
                    "modules": [e.module.name for e in entitlements],
                },
            )
        return {"subscription_id": subscription.id, "entitlements": len(entitlements), "notified": notified}

    async def on_subscription_expired(self, subscription: Subscription) -> dict:
        logger.warning("Subscription expired: %s", subscription.id)
        changed = await self.modules.expire_subscription(subscription.id)
        return {"subscription_id": subscription.id, "expired": len(changed)}

    async def on_subscription_cancelled(self, subscription: Subscription) -> dict:
        logger.warning("Subscription cancelled: %s", subscription.id)
        entitlements = await self.modules.cancel_subscription(subscription.id)

        tenant = await self._subscription_tenant(subscription, entitlements)
        if tenant is not None:
            await self.notifier.send(
                NotificationEvent.SUBSCRIPTION_CANCELLED,
                tenant.billing_email,
                {"username": tenant.tenant_username, "full_name": tenant.account_name},
            )
        return {"subscription_id": subscription.id, "cancelled": len(entitlements)}

    async def on_subscription_renewal_paid(self, subscription: Subscription) -> dict:
        logger.info("Subscription renewal paid: %s (next payment %s)", subscription.id, subscription.next_payment)
        renewed = await self.modules.renew_subscription(subscription.id, subscription.next_payment)
        return {
            "subscription_id": subscription.id,
            "renewed": len(renewed),
            "expires_at": subscription.next_payment.isoformat() if subscription.next_payment else None,
        }

    async def _subscription_tenant(self, subscription: Subscription, entitlements: list[TenantModule]) -> Tenant | None:
        if entitlements:
            return await self.tenants.get_tenant(entitlements[0].tenant_id)
        if subscription.customer_id:
            return await self.tenants.get_tenant_by_user_id(subscription.customer_id)
        return None
