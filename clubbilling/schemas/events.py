"""Typed payment gateway events.

Raw webhook payloads are parsed into one of the models in ``EVENT_MODELS``;
anything else becomes an :class:`UnknownEvent`. The ingestor keeps one handler
per model and refuses to start if one is missing.
"""

from typing import Annotated, Any, Literal, Mapping, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from clubbilling.core.errors import ValidationError


def _expand_id(value: Any) -> Any:
    # Expanded gateway objects arrive as dicts; only the id is kept
    if isinstance(value, Mapping):
        return value.get("id")
    return value


class GatewayObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _stringify_metadata(cls, v):
        if not v:
            return {}
        return {str(k): str(val) for k, val in dict(v).items() if val is not None}

    @property
    def kind(self) -> str | None:
        return self.metadata.get("type")

    @property
    def uid(self) -> str | None:
        return self.metadata.get("uid") or None

    @property
    def club_id(self) -> str | None:
        return self.metadata.get("clubId") or None


class CheckoutSession(GatewayObject):
    subscription: str | None = None
    customer: str | None = None
    payment_intent: str | None = None
    amount_total: int = 0
    currency: str | None = None

    @field_validator("subscription", "customer", "payment_intent", mode="before")
    @classmethod
    def _expand_ids(cls, v):
        return _expand_id(v)

    @field_validator("amount_total", mode="before")
    @classmethod
    def _none_is_zero(cls, v):
        return v or 0


class Subscription(GatewayObject):
    status: str | None = None
    customer: str | None = None
    trial_end: int | None = None
    created: int | None = None
    cancel_at_period_end: bool = False
    price_id: str | None = None

    @field_validator("customer", mode="before")
    @classmethod
    def _expand_customer(cls, v):
        return _expand_id(v)

    @model_validator(mode="before")
    @classmethod
    def _first_item_price(cls, data):
        if isinstance(data, Mapping) and not data.get("price_id"):
            items = (data.get("items") or {}).get("data") or []
            if items:
                price = items[0].get("price") or {}
                data = {**data, "price_id": price.get("id") if isinstance(price, Mapping) else price}
        return data


class Invoice(GatewayObject):
    subscription: str | None = None
    customer: str | None = None
    payment_intent: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str | None = None
    billing_reason: str | None = None
    created: int | None = None
    failure_message: str | None = None

    @field_validator("subscription", "customer", "payment_intent", mode="before")
    @classmethod
    def _expand_ids(cls, v):
        return _expand_id(v)

    @model_validator(mode="before")
    @classmethod
    def _resolve_subscription(cls, data):
        """Newer API versions move the subscription under ``parent`` or invoice lines."""
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        details = data.get("subscription_details") or (data.get("parent") or {}).get(
            "subscription_details"
        ) or {}
        line = next(
            (ln for ln in ((data.get("lines") or {}).get("data") or []) if ln.get("subscription")),
            None,
        )
        if not data.get("subscription"):
            data["subscription"] = details.get("subscription") or (line or {}).get("subscription")
        if not data.get("metadata"):
            data["metadata"] = details.get("metadata") or (line or {}).get("metadata") or {}
        if not data.get("failure_message"):
            err = data.get("last_payment_error") or {}
            data["failure_message"] = err.get("message") if isinstance(err, Mapping) else None
        for key in ("amount_paid", "amount_due"):
            if data.get(key) is None:
                data[key] = 0
        return data


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    created: int | None = None


class CheckoutSessionCompleted(_Event):
    type: Literal["checkout.session.completed"]
    object: CheckoutSession


class SubscriptionCreated(_Event):
    type: Literal["customer.subscription.created"]
    object: Subscription


class SubscriptionUpdated(_Event):
    type: Literal["customer.subscription.updated"]
    object: Subscription


class SubscriptionDeleted(_Event):
    type: Literal["customer.subscription.deleted"]
    object: Subscription


class InvoicePaid(_Event):
    type: Literal["invoice.payment_succeeded", "invoice.paid"]
    object: Invoice


class InvoicePaymentFailed(_Event):
    type: Literal["invoice.payment_failed"]
    object: Invoice


class UnknownEvent(_Event):
    type: str
    object: dict = Field(default_factory=dict)


EVENT_MODELS = (
    CheckoutSessionCompleted,
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
)

KnownEvent = Annotated[Union[EVENT_MODELS], Field(discriminator="type")]
PaymentEvent = Union[KnownEvent, UnknownEvent]

KNOWN_EVENT_TYPES = frozenset(
    name for model in EVENT_MODELS for name in get_args(model.model_fields["type"].annotation)
)

_known_adapter: TypeAdapter = TypeAdapter(KnownEvent)


def parse_event(raw: Mapping[str, Any]) -> PaymentEvent:
    """Turn a verified webhook body into a typed event."""
    event_type = raw.get("type")
    if not event_type:
        raise ValidationError("Event type missing")

    payload = {
        "id": raw.get("id"),
        "type": event_type,
        "created": raw.get("created"),
        "object": (raw.get("data") or {}).get("object") or {},
    }
    if event_type not in KNOWN_EVENT_TYPES:
        return UnknownEvent.model_validate(payload)
    try:
        return _known_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed {event_type} payload", errors=e.errors()) from e
