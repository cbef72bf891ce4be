import pytest

from clubbilling.core.errors import ValidationError
from clubbilling.schemas.events import (
    CheckoutSessionCompleted, InvoicePaid, InvoicePaymentFailed, SubscriptionUpdated, UnknownEvent, parse_event,
)
from tests.factories import checkout_completed, event, invoice, subscription_event


def test_checkout_session_expands_ids_and_metadata():
    parsed = parse_event(checkout_completed("cs_1", uid="u1", club_id="club1", amount_total=None))
    assert isinstance(parsed, CheckoutSessionCompleted)
    s = parsed.object
    assert s.customer == "cus_1"
    assert s.amount_total == 0
    assert (s.uid, s.club_id, s.kind) == ("u1", "club1", "sub")


def test_invoice_subscription_from_parent_details():
    parsed = parse_event(invoice("invoice.paid", "in_1", "sub_1", metadata={"uid": "u1", "clubId": "club1"}))
    assert isinstance(parsed, InvoicePaid)
    assert parsed.object.subscription == "sub_1"
    assert parsed.object.metadata == {"uid": "u1", "clubId": "club1"}


def test_invoice_subscription_from_lines():
    raw = event("invoice.payment_failed", {
        "id": "in_2",
        "amount_due": None,
        "lines": {"data": [{"subscription": "sub_9", "metadata": {"uid": "u9"}}]},
        "last_payment_error": {"message": "card declined"},
    })
    parsed = parse_event(raw)
    assert isinstance(parsed, InvoicePaymentFailed)
    assert parsed.object.subscription == "sub_9"
    assert parsed.object.uid == "u9"
    assert parsed.object.amount_due == 0
    assert parsed.object.failure_message == "card declined"


def test_subscription_price_from_first_item():
    parsed = parse_event(subscription_event("customer.subscription.updated", "sub_1", price_id="price_b"))
    assert isinstance(parsed, SubscriptionUpdated)
    assert parsed.object.price_id == "price_b"


def test_unknown_type_becomes_unknown_event():
    parsed = parse_event(event("payout.paid", {"id": "po_1"}))
    assert isinstance(parsed, UnknownEvent)
    assert parsed.object == {"id": "po_1"}


def test_missing_type_rejected():
    with pytest.raises(ValidationError):
        parse_event({"id": "evt_1", "data": {"object": {}}})


def test_malformed_known_event_rejected():
    with pytest.raises(ValidationError):
        parse_event(event("invoice.paid", {"amount_paid": 5}))
