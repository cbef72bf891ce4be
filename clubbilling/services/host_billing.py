"""Host plan tiers: activation routine and the periodic tier automaton.

The automaton keeps two streaks per club (periods over the upgrade threshold,
periods under the downgrade threshold). An upgrade is scheduled one warning
window ahead and executed on a later pass if the club is still over; a
downgrade becomes eligible once the under-streak reaches the cooldown and is
executed on a later pass if the club is still under. Upgrades and downgrade
eligibility never coexist; scheduling an upgrade clears eligibility.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clubbilling.core.billing_config import BillingConfig
from clubbilling.core.errors import AuthorizationError, NotFoundError, ValidationError
from clubbilling.db import upsert
from clubbilling.db.models import BillingEvent, Club, ClubUsageSnapshot, User
from clubbilling.db.patch import DELETE_FIELD, Patch
from clubbilling.db.transaction import run_in_transaction
from clubbilling.db.types import utcnow
from clubbilling.schemas.billing import ClubEvaluation, EvaluationSummary
from clubbilling.services.gateway import PaymentGateway

log = logging.getLogger(__name__)

CLUB_PAGE_SIZE = 500


def _clear_schedule() -> Patch:
    return Patch(
        upgrade_scheduled_for=DELETE_FIELD,
        upgrade_reason=DELETE_FIELD,
        downgrade_eligible_after=DELETE_FIELD,
        downgrade_reason=DELETE_FIELD,
    )


def host_plan_phase(status: str | None, metadata: dict | None = None) -> str:
    if status == "trialing":
        return "trial"
    if status == "active":
        return "active"
    phase = (metadata or {}).get("phase")
    return phase if phase in ("trial", "active") else "unknown"


class HostPlanActivator:
    """Applies a tier to a club's billing profile. Shared by checkout, webhooks and the automaton."""

    def __init__(self, config: BillingConfig):
        self.config = config

    async def _load_for_host(self, db: AsyncSession, uid: str, club_id: str) -> tuple[Club, User | None]:
        club = await db.get(Club, club_id)
        if club is None:
            raise NotFoundError("Club not found", club_id=club_id)
        if not club.host_id:
            raise ValidationError("Club has no host assigned", club_id=club_id)
        if club.host_id != uid:
            raise AuthorizationError("Only the club host can manage its plan", club_id=club_id, uid=uid)
        return club, await db.get(User, uid)

    async def apply_activation(
        self,
        db: AsyncSession,
        *,
        uid: str,
        club_id: str,
        tier: str | None,
        customer_id: str | None = None,
        subscription_id: str | None = None,
        phase: str = "active",
        now: datetime | None = None,
    ) -> Club:
        now = now or utcnow()
        club, host = await self._load_for_host(db, uid, club_id)
        cfg = self.config.tier_for(tier)

        patch = _clear_schedule().merge({
            "billing_tier": cfg.tier,
            "billing_status": phase,
            "transaction_fee_percent": cfg.transaction_fee_percent,
            "included_members": cfg.included_members,
            "soft_limits": cfg.soft_limits.as_dict(),
            "usage_paying_members": club.members_count or 0,
            "billing_updated_at": now,
        })
        if customer_id:
            patch = patch.merge({"billing_customer_id": customer_id})
        if subscription_id:
            patch = patch.merge({"billing_subscription_id": subscription_id})
        patch.apply_to(club)

        if host is not None:
            host.host_enabled = True
            host.host_billing_tier = cfg.tier
        log.info("host_plan.activated club=%s host=%s tier=%s phase=%s", club_id, uid, cfg.tier, phase)
        return club

    async def apply_cancellation(
        self,
        db: AsyncSession,
        *,
        uid: str,
        club_id: str,
        reason: str | None = "subscription_cancelled",
        now: datetime | None = None,
    ) -> Club:
        now = now or utcnow()
        club, host = await self._load_for_host(db, uid, club_id)
        cfg = self.config.tier_for(self.config.base_tier)

        _clear_schedule().merge({
            "billing_tier": cfg.tier,
            "billing_status": "cancelled",
            "transaction_fee_percent": cfg.transaction_fee_percent,
            "included_members": cfg.included_members,
            "soft_limits": cfg.soft_limits.as_dict(),
            "usage_paying_members": club.members_count or 0,
            "billing_subscription_id": DELETE_FIELD,
            "downgrade_reason": reason or DELETE_FIELD,
            "billing_updated_at": now,
        }).apply_to(club)

        if host is not None:
            host.host_enabled = False
            host.host_billing_tier = cfg.tier
        log.info("host_plan.cancelled club=%s host=%s reason=%s", club_id, uid, reason)
        return club

    @staticmethod
    def log_event(
        db: AsyncSession,
        club: Club,
        event_type: str,
        *,
        source_id: str | None = None,
        **data,
    ) -> BillingEvent:
        event = BillingEvent(
            club_id=club.id,
            host_id=club.host_id,
            type=event_type,
            source_id=source_id,
            data={k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in data.items()},
        )
        db.add(event)
        log.info("billing_event club=%s type=%s", club.id, event_type)
        return event


@dataclass
class _PendingChange:
    direction: str          # "upgrade" / "downgrade"
    target_tier: str
    host_id: str
    subscription_id: str
    customer_id: str | None
    reason: str


class HostBillingAutomaton:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        activator: HostPlanActivator,
        gateway: PaymentGateway,
        concurrency: int = 5,
    ):
        self.session_factory = session_factory
        self.config = config
        self.activator = activator
        self.gateway = gateway
        self.concurrency = max(1, concurrency)

    async def _club_ids(self):
        last_id = None
        async with self.session_factory() as db:
            while True:
                stmt = select(Club.id).order_by(Club.id).limit(CLUB_PAGE_SIZE)
                if last_id is not None:
                    stmt = stmt.where(Club.id > last_id)
                ids = list((await db.execute(stmt)).scalars())
                if not ids:
                    return
                for cid in ids:
                    yield cid
                last_id = ids[-1]

    async def evaluate_all(self, now: datetime | None = None) -> EvaluationSummary:
        now = now or utcnow()
        sem = asyncio.Semaphore(self.concurrency)
        summary = EvaluationSummary()

        async def run_one(club_id: str) -> ClubEvaluation | None:
            async with sem:
                try:
                    return await self.evaluate_club(club_id, now)
                except Exception:
                    log.exception("[Billing] evaluate failed club=%s", club_id)
                    return None

        club_ids = [cid async for cid in self._club_ids()]
        results = await asyncio.gather(*(run_one(cid) for cid in club_ids))

        for res in results:
            if res is None:
                summary.failed += 1
                continue
            summary.evaluated += 1
            summary.upgrades_scheduled += int(res.upgrade_scheduled)
            summary.downgrades_scheduled += int(res.downgrade_scheduled)
            summary.upgrades_executed += int(res.executed == "upgrade")
            summary.downgrades_executed += int(res.executed == "downgrade")
            summary.clubs.append(res)

        log.info(
            "[Billing] evaluate_all done evaluated=%d failed=%d up_sched=%d up_exec=%d down_sched=%d down_exec=%d",
            summary.evaluated, summary.failed, summary.upgrades_scheduled,
            summary.upgrades_executed, summary.downgrades_scheduled, summary.downgrades_executed,
        )
        return summary

    async def evaluate_club(self, club_id: str, now: datetime | None = None) -> ClubEvaluation:
        now = now or utcnow()

        async def work(db: AsyncSession):
            club = await db.get(Club, club_id)
            if club is None:
                raise NotFoundError("Club not found", club_id=club_id)
            return await self._advance(db, club, now)

        evaluation, pending = await run_in_transaction(
            self.session_factory, work, attempts=self.config.tx_max_attempts, label=f"evaluate:{club_id}"
        )
        if pending is not None:
            await self._execute(club_id, pending, now)
            evaluation.executed = pending.direction
            evaluation.new_tier = pending.target_tier
        return evaluation

    async def _advance(self, db: AsyncSession, club: Club, now: datetime):
        cfg = self.config
        tier = cfg.tier_for(club.billing_tier)
        next_tier = cfg.next_tier(tier.tier)
        prev_tier = cfg.previous_tier(tier.tier)
        members = club.members_count or 0

        # decisions below use the state as it was when the pass started
        scheduled_for = club.upgrade_scheduled_for
        eligible_after = club.downgrade_eligible_after

        over = next_tier is not None and members >= tier.upgrade_threshold
        below = members < tier.downgrade_threshold
        over_streak = (club.usage_streak_over_days or 0) + 1 if over else 0
        below_streak = (club.usage_streak_below_days or 0) + 1 if below else 0

        log.info(
            "[Billing] evaluate club=%s tier=%s members=%d over=%s below=%s streak_over=%d streak_below=%d",
            club.id, tier.tier, members, over, below, over_streak, below_streak,
        )

        result = ClubEvaluation(
            club_id=club.id,
            tier=tier.tier,
            members_count=members,
            over_streak=over_streak,
            below_streak=below_streak,
        )
        patch = Patch(
            usage_paying_members=members,
            usage_logged_at=now,
            usage_streak_over_days=over_streak,
            usage_streak_below_days=below_streak,
        )

        upgrade_pending = scheduled_for is not None
        if over and not upgrade_pending:
            when = now + cfg.warning_window
            patch = patch.merge({
                "upgrade_scheduled_for": when,
                "upgrade_reason": "members_threshold",
                "downgrade_eligible_after": DELETE_FIELD,
                "downgrade_reason": DELETE_FIELD,
            })
            upgrade_pending = True
            result.upgrade_scheduled = True
            self.activator.log_event(
                db, club, "host_plan_upgrade_scheduled",
                targetTier=next_tier, reason="members_threshold", scheduledFor=when,
            )
        elif not over and upgrade_pending:
            patch = patch.merge({"upgrade_scheduled_for": DELETE_FIELD, "upgrade_reason": DELETE_FIELD})
            upgrade_pending = False
            result.upgrade_cancelled = True
            log.info("[Billing] evaluate cancel-upgrade club=%s members=%d", club.id, members)

        if (
            below
            and prev_tier is not None
            and eligible_after is None
            and not upgrade_pending
            and below_streak >= cfg.downgrade_cooldown_days
        ):
            patch = patch.merge({
                "downgrade_eligible_after": now,
                "downgrade_reason": "members_below_threshold",
            })
            result.downgrade_scheduled = True
            self.activator.log_event(
                db, club, "host_plan_downgrade_scheduled",
                targetTier=prev_tier, reason="members_below_threshold",
            )
        elif eligible_after is not None and not below:
            patch = patch.merge({"downgrade_eligible_after": DELETE_FIELD, "downgrade_reason": DELETE_FIELD})
            log.info("[Billing] evaluate clear-downgrade club=%s members=%d", club.id, members)

        patch.apply_to(club)
        await self._record_usage(db, club, tier.tier, members, now)

        pending = None
        can_change = bool(club.billing_subscription_id and club.host_id)
        if scheduled_for is not None and scheduled_for <= now and next_tier and over and can_change:
            pending = _PendingChange(
                "upgrade", next_tier, club.host_id, club.billing_subscription_id,
                club.billing_customer_id, "members_threshold",
            )
        elif (
            eligible_after is not None
            and eligible_after <= now
            and prev_tier
            and below
            and can_change
        ):
            pending = _PendingChange(
                "downgrade", prev_tier, club.host_id, club.billing_subscription_id,
                club.billing_customer_id, "members_below_threshold",
            )
        return result, pending

    async def _record_usage(self, db: AsyncSession, club: Club, tier: str, members: int, now: datetime):
        values = {
            "tier": tier,
            "paying_members": members,
            "video_uploads": club.usage_video_uploads_month or 0,
            "bandwidth_gb": club.usage_bandwidth_gb_month or 0,
            "recorded_at": now,
        }
        table = ClubUsageSnapshot.__table__
        await upsert.merge_set(
            db, table, {"club_id": club.id, "period": "daily", "period_key": now.strftime("%Y-%m-%d")}, values
        )
        await upsert.merge_set(
            db, table, {"club_id": club.id, "period": "monthly", "period_key": now.strftime("%Y-%m")}, values
        )

    async def _execute(self, club_id: str, change: _PendingChange, now: datetime) -> None:
        price_id = self.config.tier_for(change.target_tier).price_id
        if not price_id:
            raise ValidationError(f"No gateway price configured for {change.target_tier}")

        log.info(
            "[Billing] evaluate execute-%s club=%s target=%s sub=%s",
            change.direction, club_id, change.target_tier, change.subscription_id,
        )
        await self.gateway.update_subscription_price(change.subscription_id, price_id)

        async def work(db: AsyncSession) -> None:
            club = await self.activator.apply_activation(
                db,
                uid=change.host_id,
                club_id=club_id,
                tier=change.target_tier,
                customer_id=change.customer_id,
                subscription_id=change.subscription_id,
                now=now,
            )
            self.activator.log_event(
                db, club,
                "host_plan_upgraded" if change.direction == "upgrade" else "host_plan_downgraded",
                source_id=change.subscription_id,
                targetTier=change.target_tier,
                reason=change.reason,
            )

        await run_in_transaction(
            self.session_factory, work, attempts=self.config.tx_max_attempts, label=f"tier_change:{club_id}"
        )
