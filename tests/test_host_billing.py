from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from clubbilling.core.errors import AuthorizationError, ExternalServiceError
from clubbilling.db.models import BillingEvent, Club, ClubUsageSnapshot
from clubbilling.services.host_billing import host_plan_phase
from tests.factories import fetch, seed_club

T0 = datetime(2026, 5, 1, 12, tzinfo=timezone.utc)


async def event_types(session_factory, club_id="club1"):
    async with session_factory() as db:
        res = await db.execute(
            select(BillingEvent.type).where(BillingEvent.club_id == club_id).order_by(BillingEvent.id)
        )
        return list(res.scalars())


async def set_members(session_factory, club_id, count):
    async with session_factory() as db:
        club = await db.get(Club, club_id)
        club.members_count = count
        await db.commit()


async def test_upgrade_is_scheduled_then_executed_after_window(services, session_factory, gateway):
    await seed_club(session_factory, "club1", members_count=120, billing_subscription_id="hsub_1")
    automaton = services.automaton

    first = await automaton.evaluate_club("club1", T0)
    assert first.upgrade_scheduled
    assert first.over_streak == 1
    club = await fetch(session_factory, Club, "club1")
    assert club.upgrade_scheduled_for == T0 + timedelta(hours=48)
    assert club.upgrade_reason == "members_threshold"

    early = await automaton.evaluate_club("club1", T0 + timedelta(hours=24))
    assert early.executed is None
    assert early.over_streak == 2
    assert gateway.price_updates == []

    due = await automaton.evaluate_club("club1", T0 + timedelta(hours=49))
    assert due.executed == "upgrade"
    assert due.new_tier == "tier_b"
    assert gateway.price_updates == [("hsub_1", "price_b")]

    club = await fetch(session_factory, Club, "club1")
    assert club.billing_tier == "tier_b"
    assert club.transaction_fee_percent == 3
    assert club.included_members == 500
    assert club.upgrade_scheduled_for is None
    assert await event_types(session_factory) == ["host_plan_upgrade_scheduled", "host_plan_upgraded"]


async def test_upgrade_cancelled_when_members_drop_before_window(services, session_factory, gateway):
    await seed_club(session_factory, "club1", members_count=120, billing_subscription_id="hsub_1")
    await services.automaton.evaluate_club("club1", T0)

    await set_members(session_factory, "club1", 80)
    result = await services.automaton.evaluate_club("club1", T0 + timedelta(hours=49))

    assert result.upgrade_cancelled
    assert result.executed is None
    assert result.over_streak == 0
    assert gateway.price_updates == []
    club = await fetch(session_factory, Club, "club1")
    assert club.billing_tier == "tier_a"
    assert club.upgrade_scheduled_for is None
    assert await event_types(session_factory) == ["host_plan_upgrade_scheduled"]


async def test_downgrade_eligible_after_cooldown_then_executed(services, session_factory, gateway):
    await seed_club(
        session_factory, "club1",
        billing_tier="tier_b", members_count=50, usage_streak_below_days=29, billing_subscription_id="hsub_2",
    )

    marked = await services.automaton.evaluate_club("club1", T0)
    assert marked.downgrade_scheduled
    assert marked.below_streak == 30
    assert marked.executed is None
    club = await fetch(session_factory, Club, "club1")
    assert club.downgrade_eligible_after == T0

    done = await services.automaton.evaluate_club("club1", T0 + timedelta(days=1))
    assert done.executed == "downgrade"
    assert done.new_tier == "tier_a"
    assert gateway.price_updates == [("hsub_2", "price_a")]
    club = await fetch(session_factory, Club, "club1")
    assert club.billing_tier == "tier_a"
    assert club.downgrade_eligible_after is None
    assert await event_types(session_factory) == ["host_plan_downgrade_scheduled", "host_plan_downgraded"]


async def test_downgrade_waits_for_cooldown(services, session_factory):
    await seed_club(session_factory, "club1", billing_tier="tier_b", members_count=50, billing_subscription_id="hsub_2")

    result = await services.automaton.evaluate_club("club1", T0)

    assert not result.downgrade_scheduled
    assert result.below_streak == 1
    club = await fetch(session_factory, Club, "club1")
    assert club.downgrade_eligible_after is None


async def test_downgrade_eligibility_cleared_when_members_recover(services, session_factory, gateway):
    await seed_club(
        session_factory, "club1",
        billing_tier="tier_b", members_count=50, usage_streak_below_days=29, billing_subscription_id="hsub_2",
    )
    await services.automaton.evaluate_club("club1", T0)

    await set_members(session_factory, "club1", 150)
    result = await services.automaton.evaluate_club("club1", T0 + timedelta(days=1))

    assert result.executed is None
    assert result.below_streak == 0
    assert gateway.price_updates == []
    club = await fetch(session_factory, Club, "club1")
    assert club.downgrade_eligible_after is None
    assert club.billing_tier == "tier_b"


async def test_base_tier_never_downgrades(services, session_factory):
    await seed_club(session_factory, "club1", members_count=10, usage_streak_below_days=90)

    result = await services.automaton.evaluate_club("club1", T0)

    assert not result.downgrade_scheduled
    assert result.below_streak == 91


async def test_top_tier_never_schedules_upgrade(services, session_factory):
    await seed_club(session_factory, "club1", billing_tier="tier_c", members_count=100_000)

    result = await services.automaton.evaluate_club("club1", T0)

    assert not result.upgrade_scheduled
    assert result.over_streak == 0


async def test_due_upgrade_without_subscription_is_not_executed(services, session_factory, gateway):
    await seed_club(session_factory, "club1", members_count=120)
    await services.automaton.evaluate_club("club1", T0)

    result = await services.automaton.evaluate_club("club1", T0 + timedelta(hours=49))

    assert result.executed is None
    assert gateway.price_updates == []


async def test_usage_snapshots_are_written(services, session_factory):
    await seed_club(session_factory, "club1", members_count=42)
    await services.automaton.evaluate_club("club1", T0)
    await services.automaton.evaluate_club("club1", T0 + timedelta(hours=1))

    async with session_factory() as db:
        snaps = list((await db.execute(select(ClubUsageSnapshot).order_by(ClubUsageSnapshot.period))).scalars())
    assert [(s.period, s.period_key, s.paying_members) for s in snaps] == [
        ("daily", "2026-05-01", 42),
        ("monthly", "2026-05", 42),
    ]


async def test_evaluate_all_counts_failures_per_club(services, session_factory, gateway):
    await seed_club(session_factory, "club1", members_count=120, billing_subscription_id="hsub_1")
    await seed_club(session_factory, "club2", host_id="host2", members_count=5)
    await services.automaton.evaluate_all(T0)

    gateway.fail_update = ExternalServiceError("down")
    summary = await services.automaton.evaluate_all(T0 + timedelta(hours=49))

    assert summary.evaluated == 1
    assert summary.failed == 1
    assert summary.upgrades_executed == 0
    club = await fetch(session_factory, Club, "club1")
    assert club.billing_tier == "tier_a"


async def test_evaluate_all_summary(services, session_factory):
    await seed_club(session_factory, "club1", members_count=120, billing_subscription_id="hsub_1")
    await seed_club(session_factory, "club2", host_id="host2", members_count=5)

    summary = await services.automaton.evaluate_all(T0)

    assert summary.evaluated == 2
    assert summary.failed == 0
    assert summary.upgrades_scheduled == 1
    assert sorted(c.club_id for c in summary.clubs) == ["club1", "club2"]


async def test_activation_requires_club_host(services, session_factory):
    await seed_club(session_factory, "club1", host_id="host1")
    async with session_factory() as db:
        with pytest.raises(AuthorizationError):
            await services.activator.apply_activation(db, uid="someone", club_id="club1", tier="tier_b")


@pytest.mark.parametrize(
    "status, metadata, expected",
    [
        ("trialing", None, "trial"),
        ("active", {"phase": "trial"}, "active"),
        ("incomplete", {"phase": "trial"}, "trial"),
        (None, {}, "unknown"),
    ],
)
def test_host_plan_phase(status, metadata, expected):
    assert host_plan_phase(status, metadata) == expected
