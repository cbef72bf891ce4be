import json
from datetime import datetime, timedelta, timezone

from clubbilling.core.errors import ExternalServiceError
from clubbilling.db.models import ClubMembership
from tests.factories import (
    auth_headers, checkout_completed, event, fetch, seed_club, seed_member, seed_user, stripe_signature,
)

SECRET = "whsec_test"


def signed(raw: dict, secret: str = SECRET) -> tuple[bytes, dict]:
    payload = json.dumps(raw).encode()
    return payload, {"stripe-signature": stripe_signature(payload, secret), "content-type": "application/json"}


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


async def test_join_free_requires_token(client):
    r = await client.post("/clubs/club1/join-free")
    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "unauthenticated"


async def test_join_free_endpoint(client, session_factory):
    await seed_club(session_factory, "club1", price=0)
    await seed_user(session_factory, "u1")

    r = await client.post("/clubs/club1/join-free", headers=auth_headers("u1"))

    assert r.status_code == 200
    assert r.json() == {"ok": True, "club_id": "club1", "status": "active", "already_member": False}


async def test_billing_errors_map_to_status_codes(client, session_factory):
    await seed_club(session_factory, "club1", price=5)
    await seed_user(session_factory, "u1")

    r = await client.post("/clubs/club1/join-free", headers=auth_headers("u1"))
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_argument"

    r = await client.post("/clubs/missing/join-free", headers=auth_headers("u1"))
    assert r.status_code == 404
    assert r.json() == {"ok": False, "error": "not_found", "message": "Club not found"}


async def test_leave_endpoint(client, session_factory, gateway):
    await seed_club(session_factory, "club1", price=5)
    await seed_member(session_factory, "club1", "u1", external_subscription_id="sub_1")

    r = await client.post("/clubs/club1/leave", headers=auth_headers("u1"))

    assert r.status_code == 200
    assert r.json()["subscription_cancelled"] is True
    assert gateway.cancelled == ["sub_1"]


async def test_checkout_endpoint(client, session_factory):
    await seed_club(session_factory, "club1", price=12.5)
    await seed_user(session_factory, "u1")

    r = await client.post("/clubs/club1/checkout", headers=auth_headers("u1"))

    assert r.status_code == 200
    assert r.json()["url"] == "https://checkout.stripe.test/cs_test_1"


async def test_require_payment_endpoint(client, session_factory):
    await seed_club(session_factory, "club1", host_id="host1", price=9.99)
    await seed_member(session_factory, "club1", "u1", last_payment_type="free")

    denied = await client.post("/clubs/club1/require-payment", headers=auth_headers("u1"))
    assert denied.status_code == 403
    assert denied.json()["error"] == "permission_denied"

    r = await client.post("/clubs/club1/require-payment", headers=auth_headers("host1"))
    assert r.status_code == 200
    body = r.json()
    assert body["updated_members"] == 1
    assert body["pricing_locked"] is True
    assert body["resume_scheduled"] is False
    m = await fetch(session_factory, ClubMembership, ("u1", "club1"))
    assert m.status == "payment_required"


async def test_billing_analytics_endpoint(client, services, session_factory, gateway):
    await seed_club(session_factory, "club1", host_id="host1", price=9.99)
    await seed_user(session_factory, "u1")
    gateway.add_subscription("sub_1", status="active")
    created = int(datetime(2026, 4, 2, tzinfo=timezone.utc).timestamp())
    await services.ingestor.ingest(checkout_completed("cs_1", uid="u1", club_id="club1", created=created))

    r = await client.get("/clubs/club1/analytics/billing", params={"month": "2026-04"}, headers=auth_headers("host1"))
    assert r.status_code == 200
    body = r.json()
    assert body["month"] == "2026-04"
    assert body["new_subscribers"] == 1
    assert body["currency"] == "AUD"

    empty = await client.get(
        "/clubs/club1/analytics/billing", params={"month": "2025-12"}, headers=auth_headers("host1")
    )
    assert empty.json()["new_subscribers"] == 0
    assert empty.json()["currency"] == "AUD"

    fallback = await client.get(
        "/clubs/club1/analytics/billing", params={"month": "2026-13"}, headers=auth_headers("host1")
    )
    assert fallback.json()["month"] == datetime.now(timezone.utc).strftime("%Y-%m")

    denied = await client.get("/clubs/club1/analytics/billing", headers=auth_headers("u1"))
    assert denied.status_code == 403


async def test_webhook_rejects_bad_signatures(client):
    raw = event("charge.refunded", {"id": "ch_1"})

    missing = await client.post("/webhooks/stripe", content=json.dumps(raw).encode())
    assert missing.status_code == 400

    payload, headers = signed(raw, secret="whsec_wrong")
    forged = await client.post("/webhooks/stripe", content=payload, headers=headers)
    assert forged.status_code == 400


async def test_webhook_processes_and_dedupes(client, session_factory, gateway):
    await seed_club(session_factory, "club1", price=9.99)
    await seed_user(session_factory, "u1")
    gateway.add_subscription("sub_1", status="trialing", trial_end=datetime.now(timezone.utc) + timedelta(days=7))
    payload, headers = signed(checkout_completed("cs_1", uid="u1", club_id="club1", amount_total=0))

    first = await client.post("/webhooks/stripe", content=payload, headers=headers)
    second = await client.post("/webhooks/stripe", content=payload, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"received": True, "status": "processed"}
    assert second.json() == {"received": True, "status": "duplicate"}
    m = await fetch(session_factory, ClubMembership, ("u1", "club1"))
    assert m.status == "trialing"


async def test_webhook_acknowledges_unhandled_types(client):
    payload, headers = signed(event("charge.refunded", {"id": "ch_1"}))
    r = await client.post("/webhooks/stripe", content=payload, headers=headers)
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"


async def test_webhook_returns_500_so_gateway_retries(client, session_factory, gateway):
    await seed_club(session_factory, "club1", price=9.99)
    await seed_user(session_factory, "u1")
    gateway.fail_retrieve = ExternalServiceError("down")
    payload, headers = signed(checkout_completed("cs_1", uid="u1", club_id="club1"))

    r = await client.post("/webhooks/stripe", content=payload, headers=headers)

    assert r.status_code == 500


async def test_evaluate_requires_cron_token(client, session_factory):
    await seed_club(session_factory, "club1", members_count=3)

    denied = await client.post("/billing/evaluate", headers={"X-Cron-Token": "nope"})
    assert denied.status_code == 403

    r = await client.post("/billing/evaluate", headers={"X-Cron-Token": "cron-secret"})
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["evaluated"] == 1
    assert "clubs" not in body
