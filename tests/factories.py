"""Seed helpers, raw webhook payload builders and in-memory fakes."""

import hashlib
import hmac
import time
import uuid
from datetime import datetime, timezone

from jose import jwt

from clubbilling.core.config import settings
from clubbilling.core.errors import NotFoundError
from clubbilling.db.models import Club, ClubMembership, User
from clubbilling.services.gateway import GatewayCheckoutSession, GatewaySubscription


def ts(dt: datetime) -> int:
    return int(dt.replace(tzinfo=dt.tzinfo or timezone.utc).timestamp())


# ---- fakes -------------------------------------------------------------

class FakeGateway:
    def __init__(self):
        self.subscriptions: dict[str, GatewaySubscription] = {}
        self.cancelled: list[str] = []
        self.price_updates: list[tuple[str, str]] = []
        self.checkout_calls: list[dict] = []
        self.fail_retrieve: Exception | None = None
        self.fail_cancel: Exception | None = None
        self.fail_update: Exception | None = None

    def add_subscription(self, sub_id: str, status: str = "active", trial_end=None, **metadata) -> GatewaySubscription:
        sub = GatewaySubscription(
            id=sub_id,
            status=status,
            customer_id="cus_1",
            trial_end=trial_end,
            item_id=f"si_{sub_id}",
            metadata={k: str(v) for k, v in metadata.items()},
        )
        self.subscriptions[sub_id] = sub
        return sub

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        if self.fail_retrieve is not None:
            raise self.fail_retrieve
        try:
            return self.subscriptions[subscription_id]
        except KeyError:
            raise NotFoundError("Payment record not found", gateway_ref=subscription_id)

    async def update_subscription_price(self, subscription_id: str, price_id: str) -> None:
        if self.fail_update is not None:
            raise self.fail_update
        self.price_updates.append((subscription_id, price_id))

    async def cancel_subscription(self, subscription_id: str) -> None:
        if self.fail_cancel is not None:
            raise self.fail_cancel
        self.cancelled.append(subscription_id)

    async def create_checkout_session(self, **kwargs) -> GatewayCheckoutSession:
        self.checkout_calls.append(kwargs)
        return GatewayCheckoutSession(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    async def send(self, event) -> None:
        if self.fail:
            raise RuntimeError("sink down")
        self.events.append(event)


# ---- seeding -----------------------------------------------------------

async def seed_user(session_factory, uid: str, **fields) -> User:
    async with session_factory() as db:
        user = User(id=uid, email=f"{uid}@example.com", **fields)
        db.add(user)
        await db.commit()
    return user


async def seed_club(session_factory, club_id: str = "club1", host_id: str = "host1", **fields) -> Club:
    async with session_factory() as db:
        if await db.get(User, host_id) is None:
            db.add(User(id=host_id, email=f"{host_id}@example.com"))
        club = Club(id=club_id, host_id=host_id, name=f"Club {club_id}", slug=f"{club_id}-slug", **fields)
        db.add(club)
        await db.commit()
    return club


async def seed_member(session_factory, club_id: str, uid: str, **fields) -> ClubMembership:
    """Member row plus the user; bumps the club's members_count when ``is_member``."""
    fields.setdefault("is_member", True)
    fields.setdefault("status", "active")
    async with session_factory() as db:
        if await db.get(User, uid) is None:
            db.add(User(id=uid, email=f"{uid}@example.com"))
        m = ClubMembership(user_id=uid, club_id=club_id, **fields)
        db.add(m)
        if fields["is_member"]:
            club = await db.get(Club, club_id)
            club.members_count = (club.members_count or 0) + 1
        await db.commit()
    return m


async def fetch(session_factory, model, key):
    async with session_factory() as db:
        return await db.get(model, key)


# ---- raw webhook payloads ----------------------------------------------

def event(event_type: str, obj: dict, *, event_id: str | None = None, created: int | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "created": created or int(time.time()),
        "data": {"object": obj},
    }


def checkout_completed(
    session_id: str,
    *,
    uid: str,
    club_id: str,
    subscription: str | None = "sub_1",
    amount_total: int = 999,
    currency: str = "aud",
    kind: str = "sub",
    created: int | None = None,
    **metadata,
) -> dict:
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "subscription": subscription,
        "customer": {"id": "cus_1", "object": "customer"},
        "payment_intent": None,
        "amount_total": amount_total,
        "currency": currency,
        "metadata": {"uid": uid, "clubId": club_id, "type": kind, **metadata},
    }
    return event("checkout.session.completed", obj, created=created)


def invoice(
    event_type: str,
    invoice_id: str,
    subscription: str,
    *,
    amount: int = 999,
    billing_reason: str = "subscription_cycle",
    metadata: dict | None = None,
    created: int | None = None,
) -> dict:
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "customer": "cus_1",
        "amount_paid": amount if event_type != "invoice.payment_failed" else 0,
        "amount_due": amount,
        "currency": "aud",
        "billing_reason": billing_reason,
        "created": created,
        "parent": {
            "subscription_details": {"subscription": subscription, "metadata": metadata or {}},
        },
    }
    return event(event_type, obj, created=created)


def subscription_event(
    event_type: str,
    sub_id: str,
    *,
    status: str = "active",
    price_id: str | None = None,
    created: int | None = None,
    event_id: str | None = None,
    **metadata,
) -> dict:
    obj = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_1",
        "metadata": metadata,
        "items": {"data": [{"id": f"si_{sub_id}", "price": {"id": price_id}}] if price_id else []},
    }
    return event(event_type, obj, event_id=event_id, created=created)


# ---- HTTP helpers ------------------------------------------------------

def auth_headers(uid: str) -> dict:
    token = jwt.encode({"sub": uid}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


def stripe_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={sig}"
