"""Payment gateway access.

Services depend on the :class:`PaymentGateway` protocol; production wires in
:class:`StripeGateway`. Stripe failures surface as ExternalServiceError, or
NotFoundError when the object no longer exists.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import stripe

from clubbilling.core.errors import ExternalServiceError, NotFoundError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewaySubscription:
    id: str
    status: str | None = None
    customer_id: str | None = None
    trial_end: datetime | None = None
    item_id: str | None = None
    price_id: str | None = None
    metadata: dict = field(default_factory=dict)

    def trialing_at(self, now: datetime) -> bool:
        return self.status == "trialing" and self.trial_end is not None and self.trial_end > now


@dataclass(frozen=True)
class GatewayCheckoutSession:
    id: str
    url: str | None = None


class PaymentGateway(Protocol):
    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    async def update_subscription_price(self, subscription_id: str, price_id: str) -> None: ...

    async def cancel_subscription(self, subscription_id: str) -> None: ...

    async def create_checkout_session(
        self,
        *,
        customer_email: str | None,
        currency: str,
        unit_amount: int,
        product_name: str,
        metadata: dict[str, str],
        trial_days: int | None,
        success_url: str,
        cancel_url: str,
    ) -> GatewayCheckoutSession: ...


def _ts(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _as_dict(obj: Any) -> dict:
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


def subscription_from_payload(data: dict) -> GatewaySubscription:
    items = (data.get("items") or {}).get("data") or []
    first = items[0] if items else {}
    price = first.get("price") or {}
    customer = data.get("customer")
    return GatewaySubscription(
        id=data["id"],
        status=data.get("status"),
        customer_id=customer.get("id") if isinstance(customer, dict) else customer,
        trial_end=_ts(data.get("trial_end")),
        item_id=first.get("id"),
        price_id=price.get("id") if isinstance(price, dict) else price,
        metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
    )


class StripeGateway:

    def __init__(self, api_key: str | None):
        if not api_key:
            log.warning("stripe.gateway.no_api_key")
        stripe.api_key = api_key

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        try:
            sub = await stripe.Subscription.retrieve_async(subscription_id)
        except stripe.StripeError as e:
            raise self._translate(e, "retrieve_subscription", subscription_id) from e
        return subscription_from_payload(_as_dict(sub))

    async def update_subscription_price(self, subscription_id: str, price_id: str) -> None:
        current = await self.retrieve_subscription(subscription_id)
        if not current.item_id:
            raise NotFoundError("Subscription has no items", subscription_id=subscription_id)
        try:
            await stripe.Subscription.modify_async(
                subscription_id,
                items=[{"id": current.item_id, "price": price_id}],
                proration_behavior="create_prorations",
            )
        except stripe.StripeError as e:
            raise self._translate(e, "update_subscription_price", subscription_id) from e
        log.info("stripe.subscription.price_updated sub=%s price=%s", subscription_id, price_id)

    async def cancel_subscription(self, subscription_id: str) -> None:
        try:
            await stripe.Subscription.cancel_async(subscription_id)
        except stripe.StripeError as e:
            raise self._translate(e, "cancel_subscription", subscription_id) from e
        log.info("stripe.subscription.cancelled sub=%s", subscription_id)

    async def create_checkout_session(
        self,
        *,
        customer_email: str | None,
        currency: str,
        unit_amount: int,
        product_name: str,
        metadata: dict[str, str],
        trial_days: int | None,
        success_url: str,
        cancel_url: str,
    ) -> GatewayCheckoutSession:
        subscription_data: dict[str, Any] = {"metadata": metadata}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": unit_amount,
                        "recurring": {"interval": "month"},
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "subscription_data": subscription_data,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = await stripe.checkout.Session.create_async(**params)
        except stripe.StripeError as e:
            raise self._translate(e, "create_checkout_session", metadata.get("clubId")) from e
        return GatewayCheckoutSession(id=session["id"], url=session.get("url"))

    @staticmethod
    def _translate(err: "stripe.StripeError", op: str, ref: str | None):
        code = getattr(err, "code", None)
        log.error("stripe.%s.failed ref=%s code=%s err=%s", op, ref, code, err)
        if code == "resource_missing":
            return NotFoundError("Payment record not found", gateway_ref=ref)
        return ExternalServiceError("Payment provider is unavailable, please retry", gateway_ref=ref)
