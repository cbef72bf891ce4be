"""Idempotent ingestion of payment gateway events.

Each handler follows the same order: idempotency check, state transition,
payment or billing-event record, analytics bucket, audit entry. Everything
after the idempotency check runs in one transaction; the analytics mirror is
published after commit. Failures inside the transaction propagate so the
gateway re-delivers, and the idempotency check makes the re-delivery safe.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clubbilling.core.billing_config import BillingConfig
from clubbilling.core.errors import (
    AuthorizationError, ExternalServiceError, NotFoundError, ValidationError,
)
from clubbilling.db.models import BillingEvent, Club, Payment, SubscriptionFailure, User
from clubbilling.db.transaction import run_in_transaction
from clubbilling.db.types import utcnow
from clubbilling.schemas.billing import IngestResult
from clubbilling.schemas.events import (
    EVENT_MODELS,
    CheckoutSessionCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentEvent,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
    parse_event,
)
from clubbilling.services.analytics import AnalyticsAggregator, AnalyticsEvent
from clubbilling.services.gateway import GatewaySubscription, PaymentGateway
from clubbilling.services.host_billing import HostPlanActivator, host_plan_phase
from clubbilling.services.membership import MembershipStateMachine

log = logging.getLogger(__name__)

CHARGE_TYPES = ("subscription_first_charge", "subscription_renewal")
PAID_BILLING_REASONS = ("subscription_create", "subscription_cycle")
HOST_ACTIVATION_EVENTS = ("host_plan_trial_started", "host_plan_activated")


class _Skip(Exception):
    """Ends a handler early with a non-error result; rolls back the transaction."""

    def __init__(self, status: str, detail: str):
        super().__init__(detail)
        self.status = status
        self.detail = detail


def _redact(val: Any) -> str:
    if val is None:
        return "-"
    s = str(val)
    if len(s) <= 6:
        return "***"
    return f"{s[:3]}…{s[-2:]}"


def _from_unix(ts: int | None, default: datetime) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts else default


class PaymentEventIngestor:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        memberships: MembershipStateMachine,
        activator: HostPlanActivator,
        analytics: AnalyticsAggregator,
        gateway: PaymentGateway,
    ):
        self.session_factory = session_factory
        self.config = config
        self.memberships = memberships
        self.activator = activator
        self.analytics = analytics
        self.gateway = gateway

        self._handlers: dict[type, Callable[[Any], Awaitable[IngestResult]]] = {
            CheckoutSessionCompleted: self._on_checkout_completed,
            SubscriptionCreated: self._on_subscription_created,
            SubscriptionUpdated: self._on_subscription_updated,
            SubscriptionDeleted: self._on_subscription_deleted,
            InvoicePaid: self._on_invoice_paid,
            InvoicePaymentFailed: self._on_invoice_failed,
            UnknownEvent: self._on_unknown,
        }
        missing = [m.__name__ for m in (*EVENT_MODELS, UnknownEvent) if m not in self._handlers]
        if missing:
            raise RuntimeError(f"no ingestion handler for {', '.join(missing)}")

    async def ingest(self, raw: Mapping[str, Any] | PaymentEvent) -> IngestResult:
        event = parse_event(raw) if isinstance(raw, Mapping) else raw
        handler = self._handlers[type(event)]
        log.info("webhook.ingest.start type=%s id=%s", event.type, event.id)
        try:
            result = await handler(event)
        except _Skip as skip:
            result = IngestResult(status=skip.status, event_type=event.type, detail=skip.detail)
        except (NotFoundError, AuthorizationError, ValidationError) as e:
            log.warning("webhook.ingest.rejected type=%s id=%s err=%s ctx=%s", event.type, event.id, e, e.context)
            result = IngestResult(status="ignored", event_type=event.type, detail=e.code)
        log.info("webhook.ingest.done type=%s id=%s status=%s", event.type, event.id, result.status)
        return result

    async def _tx(self, work, label: str):
        return await run_in_transaction(
            self.session_factory, work, attempts=self.config.tx_max_attempts, label=label
        )

    def _split(self, amount: int, club: Club | None) -> tuple[float, int, int]:
        pct = self.config.default_platform_fee_percent
        if club is not None and club.transaction_fee_percent is not None:
            pct = club.transaction_fee_percent
        fee = round(amount * pct / 100)
        return pct, fee, amount - fee

    async def _exists(self, stmt) -> bool:
        async with self.session_factory() as db:
            return (await db.execute(stmt.limit(1))).first() is not None

    @staticmethod
    async def _require_member_context(db: AsyncSession, uid: str, club_id: str) -> Club:
        club = await db.get(Club, club_id)
        if club is None:
            raise _Skip("ignored", "club_not_found")
        if await db.get(User, uid) is None:
            raise _Skip("ignored", "user_not_found")
        return club

    async def _retrieve(self, subscription_id: str | None) -> GatewaySubscription | None:
        if not subscription_id:
            return None
        try:
            return await self.gateway.retrieve_subscription(subscription_id)
        except NotFoundError:
            log.warning("webhook.subscription.missing sub=%s", _redact(subscription_id))
            return None

    async def _find_host_context(self, metadata: Mapping[str, str], subscription_id: str):
        if metadata.get("clubId") and metadata.get("uid"):
            return metadata["clubId"], metadata["uid"]
        async with self.session_factory() as db:
            row = (
                await db.execute(
                    select(Club.id, Club.host_id).where(Club.billing_subscription_id == subscription_id).limit(1)
                )
            ).first()
        if row is None or not row.host_id:
            return None
        return row.id, row.host_id

    # ---- checkout ------------------------------------------------------

    async def _on_checkout_completed(self, event: CheckoutSessionCompleted) -> IngestResult:
        kind = event.object.kind
        if kind == "sub":
            return await self._member_checkout(event)
        if kind == "host_plan":
            return await self._host_plan_checkout(event)
        raise _Skip("ignored", f"unhandled_checkout_type:{kind}")

    async def _member_checkout(self, event: CheckoutSessionCompleted) -> IngestResult:
        s = event.object
        uid, club_id = s.uid, s.club_id
        if not uid or not club_id:
            log.warning("webhook.checkout.missing_metadata session=%s", _redact(s.id))
            raise _Skip("ignored", "missing_metadata")

        already = select(Payment.id).where(Payment.gateway_session_id == s.id)
        if await self._exists(already):
            log.info("webhook.checkout.duplicate session=%s", _redact(s.id))
            raise _Skip("duplicate", s.id)

        subscription = await self._retrieve(s.subscription)
        now = utcnow()
        trialing = bool(subscription and subscription.status == "trialing")

        async def work(db: AsyncSession) -> AnalyticsEvent:
            if (await db.execute(already.limit(1))).first() is not None:
                raise _Skip("duplicate", s.id)
            club = await self._require_member_context(db, uid, club_id)
            currency = (s.currency or club.currency or self.config.default_currency).upper()

            await self.memberships.apply_checkout(db, club, uid, subscription, now, customer_id=s.customer)

            common = dict(
                user_id=uid,
                club_id=club_id,
                currency=currency,
                gateway_session_id=s.id,
                gateway_subscription_id=s.subscription,
                gateway_customer_id=s.customer,
                gateway_payment_intent_id=s.payment_intent,
            )
            if trialing or s.amount_total <= 0:
                db.add(Payment(type="trial_start", status="trialing", amount=0, **common))
            else:
                pct, fee, host_amount = self._split(s.amount_total, club)
                db.add(Payment(
                    type="subscription",
                    status="succeeded",
                    amount=s.amount_total,
                    platform_fee_percent=pct,
                    platform_fee_amount=fee,
                    host_amount=host_amount,
                    **common,
                ))
            await db.flush()

            increments = {"new_subscribers": 1}
            if trialing:
                increments["trial_starts"] = 1
            analytics_event = AnalyticsEvent(
                club_id=club_id,
                type="trial_started" if trialing else "subscription_created",
                currency=currency,
                timestamp=_from_unix(event.created, now),
                increments=increments,
                user_id=uid,
                amount=s.amount_total,
                gateway_id=s.subscription or s.id,
            )
            await self.analytics.record(db, analytics_event)
            return analytics_event

        analytics_event = await self._tx(work, f"checkout:{s.id}")
        self.analytics.publish(analytics_event)
        log.info("webhook.checkout.member club=%s user=%s trialing=%s", club_id, uid, trialing)
        return IngestResult(status="processed", event_type=event.type, key=s.id)

    async def _host_plan_checkout(self, event: CheckoutSessionCompleted) -> IngestResult:
        s = event.object
        uid, club_id = s.uid, s.club_id
        if not uid or not club_id:
            raise _Skip("ignored", "missing_metadata")
        tier = s.metadata.get("tier") or self.config.base_tier

        already = select(BillingEvent.id).where(
            BillingEvent.source_id == s.id, BillingEvent.type.in_(HOST_ACTIVATION_EVENTS)
        )
        if await self._exists(already):
            raise _Skip("duplicate", s.id)

        subscription = await self._retrieve(s.subscription)
        phase = host_plan_phase(subscription.status if subscription else None, s.metadata)
        now = utcnow()

        async def work(db: AsyncSession) -> None:
            if (await db.execute(already.limit(1))).first() is not None:
                raise _Skip("duplicate", s.id)
            club = await self.activator.apply_activation(
                db,
                uid=uid,
                club_id=club_id,
                tier=tier,
                customer_id=s.customer,
                subscription_id=s.subscription,
                phase=phase,
                now=now,
            )
            self.activator.log_event(
                db, club,
                "host_plan_trial_started" if phase == "trial" else "host_plan_activated",
                source_id=s.id,
                tier=club.billing_tier,
                subscriptionId=s.subscription,
            )

        await self._tx(work, f"host_checkout:{s.id}")
        return IngestResult(status="processed", event_type=event.type, key=s.id)

    # ---- subscriptions -------------------------------------------------

    async def _on_subscription_created(self, event: SubscriptionCreated) -> IngestResult:
        sub = event.object
        if sub.kind != "sub" or not sub.uid or not sub.club_id:
            raise _Skip("ignored", "not_a_member_subscription")
        async with self.session_factory() as db:
            club = await db.get(Club, sub.club_id)
        currency = (club.currency if club else self.config.default_currency).upper()
        self.analytics.publish(AnalyticsEvent(
            club_id=sub.club_id,
            type="subscription_created",
            currency=currency,
            timestamp=_from_unix(sub.created, utcnow()),
            user_id=sub.uid,
            gateway_id=sub.id,
        ))
        return IngestResult(status="processed", event_type=event.type, key=sub.id)

    async def _on_subscription_updated(self, event: SubscriptionUpdated) -> IngestResult:
        sub = event.object
        if sub.kind and sub.kind != "host_plan":
            raise _Skip("ignored", f"unhandled_subscription_type:{sub.kind}")

        context = await self._find_host_context(sub.metadata, sub.id)
        if context is None:
            log.warning("webhook.subscription.updated.no_context sub=%s", _redact(sub.id))
            raise _Skip("ignored", "host_context_not_found")
        club_id, uid = context
        key = event.id or f"{sub.id}:{sub.status}"

        already = select(BillingEvent.id).where(
            BillingEvent.source_id == key, BillingEvent.type == "host_plan_subscription_updated"
        )
        if await self._exists(already):
            raise _Skip("duplicate", key)

        tier = sub.metadata.get("tier") or self.config.tier_from_price(sub.price_id) or self.config.base_tier
        phase = host_plan_phase(sub.status, sub.metadata)

        async def work(db: AsyncSession) -> None:
            if (await db.execute(already.limit(1))).first() is not None:
                raise _Skip("duplicate", key)
            club = await self.activator.apply_activation(
                db, uid=uid, club_id=club_id, tier=tier,
                customer_id=sub.customer, subscription_id=sub.id, phase=phase,
            )
            self.activator.log_event(
                db, club, "host_plan_subscription_updated",
                source_id=key, tier=tier, status=sub.status, subscriptionId=sub.id,
            )

        await self._tx(work, f"host_sub_updated:{sub.id}")
        return IngestResult(status="processed", event_type=event.type, key=key)

    async def _on_subscription_deleted(self, event: SubscriptionDeleted) -> IngestResult:
        sub = event.object
        if sub.kind == "sub":
            return await self._member_subscription_deleted(event)
        if sub.kind and sub.kind != "host_plan":
            raise _Skip("ignored", f"unhandled_subscription_type:{sub.kind}")
        return await self._host_subscription_deleted(event)

    async def _member_subscription_deleted(self, event: SubscriptionDeleted) -> IngestResult:
        sub = event.object
        uid, club_id = sub.uid, sub.club_id
        if not uid or not club_id:
            raise _Skip("ignored", "missing_metadata")
        now = utcnow()

        async def work(db: AsyncSession) -> AnalyticsEvent:
            await db.execute(delete(SubscriptionFailure).where(SubscriptionFailure.subscription_id == sub.id))
            club = await db.get(Club, club_id)
            outcome = await self.memberships.apply_cancellation(db, club, uid, club_id, sub.id)
            if not outcome.cancelled:
                log.info("webhook.cancel.skip already_removed club=%s user=%s", club_id, uid)
                raise _Skip("duplicate", sub.id)

            currency = ((club.currency if club else None) or self.config.default_currency).upper()
            when = _from_unix(event.created, now)
            canceled = AnalyticsEvent(
                club_id=club_id,
                type="subscription_canceled",
                currency=currency,
                timestamp=when,
                increments={"active_subscribers": 1 if outcome.was_active_paid else 0},
                mode="subtract",
                user_id=uid,
                gateway_id=sub.id,
            )
            await self.analytics.record(db, canceled)
            await self.analytics.record(db, AnalyticsEvent(
                club_id=club_id,
                type="subscription_canceled",
                currency=currency,
                timestamp=when,
                increments={"cancellations": 1},
                user_id=uid,
                gateway_id=sub.id,
            ))
            return canceled

        canceled = await self._tx(work, f"member_cancel:{sub.id}")
        self.analytics.publish(canceled)
        return IngestResult(status="processed", event_type=event.type, key=sub.id)

    async def _host_subscription_deleted(self, event: SubscriptionDeleted) -> IngestResult:
        sub = event.object
        context = await self._find_host_context(sub.metadata, sub.id)
        if context is None:
            raise _Skip("ignored", "host_context_not_found")
        club_id, uid = context

        async def work(db: AsyncSession) -> None:
            club = await db.get(Club, club_id)
            if club is None:
                raise _Skip("ignored", "club_not_found")
            if club.billing_subscription_id != sub.id:
                # already cancelled, or the club moved to another subscription
                raise _Skip("duplicate", sub.id)
            club = await self.activator.apply_cancellation(db, uid=uid, club_id=club_id)
            self.activator.log_event(
                db, club, "host_plan_subscription_cancelled",
                source_id=sub.id, subscriptionId=sub.id, status=sub.status,
            )

        await self._tx(work, f"host_cancel:{sub.id}")
        return IngestResult(status="processed", event_type=event.type, key=sub.id)

    # ---- invoices ------------------------------------------------------

    async def _on_invoice_paid(self, event: InvoicePaid) -> IngestResult:
        inv = event.object
        if inv.billing_reason not in PAID_BILLING_REASONS:
            raise _Skip("ignored", f"billing_reason:{inv.billing_reason}")
        if inv.amount_paid <= 0:
            raise _Skip("ignored", "zero_amount")
        if not inv.subscription:
            log.warning("webhook.invoice.no_subscription invoice=%s", _redact(inv.id))
            raise _Skip("ignored", "missing_subscription")

        already = select(Payment.id).where(Payment.gateway_invoice_id == inv.id, Payment.type.in_(CHARGE_TYPES))
        if await self._exists(already):
            raise _Skip("duplicate", inv.id)

        subscription = await self._retrieve(inv.subscription)
        metadata = (subscription.metadata if subscription and subscription.metadata else None) or inv.metadata
        if metadata.get("type") != "sub" or not metadata.get("uid") or not metadata.get("clubId"):
            log.warning("webhook.invoice.missing_metadata invoice=%s", _redact(inv.id))
            raise _Skip("ignored", "missing_metadata")
        uid, club_id = metadata["uid"], metadata["clubId"]

        now = utcnow()
        still_trialing = bool(subscription and subscription.trialing_at(now))
        had_trial = bool(subscription and subscription.trial_end)

        async def work(db: AsyncSession) -> AnalyticsEvent:
            if (await db.execute(already.limit(1))).first() is not None:
                raise _Skip("duplicate", inv.id)
            club = await self._require_member_context(db, uid, club_id)

            prior = select(Payment.id).where(
                Payment.gateway_subscription_id == inv.subscription, Payment.type.in_(CHARGE_TYPES)
            )
            first_charge = (await db.execute(prior.limit(1))).first() is None
            trial_conversion = first_charge and had_trial and not still_trialing
            payment_type = "subscription_first_charge" if first_charge else "subscription_renewal"
            currency = (inv.currency or club.currency or self.config.default_currency).upper()

            if still_trialing:
                log.info("webhook.invoice.still_trialing club=%s user=%s", club_id, uid)
            else:
                await self.memberships.apply_invoice_paid(
                    db, uid, club_id, inv.subscription, payment_type, now,
                    trial_conversion=trial_conversion,
                    detail=f"invoice.payment_succeeded:{inv.id}",
                )

            pct, fee, host_amount = self._split(inv.amount_paid, club)
            db.add(Payment(
                user_id=uid,
                club_id=club_id,
                type=payment_type,
                status="succeeded",
                amount=inv.amount_paid,
                currency=currency,
                platform_fee_percent=pct,
                platform_fee_amount=fee,
                host_amount=host_amount,
                gateway_invoice_id=inv.id,
                gateway_subscription_id=inv.subscription,
                gateway_customer_id=inv.customer,
                gateway_payment_intent_id=inv.payment_intent,
                billing_reason=inv.billing_reason,
            ))
            await db.execute(
                delete(SubscriptionFailure).where(SubscriptionFailure.subscription_id == inv.subscription)
            )
            await db.flush()

            if trial_conversion:
                increments = {"active_subscribers": 1, "trial_conversions": 1, "total_revenue": inv.amount_paid}
            elif first_charge:
                increments = {"active_subscribers": 1, "total_revenue": inv.amount_paid}
            else:
                increments = {"total_revenue": inv.amount_paid}
            analytics_event = AnalyticsEvent(
                club_id=club_id,
                type="trial_converted" if trial_conversion else "invoice_paid",
                currency=currency,
                timestamp=_from_unix(inv.created, now),
                increments=increments,
                user_id=uid,
                amount=inv.amount_paid,
                gateway_id=inv.id,
                is_trial_conversion=trial_conversion,
            )
            await self.analytics.record(db, analytics_event)
            return analytics_event

        analytics_event = await self._tx(work, f"invoice_paid:{inv.id}")
        self.analytics.publish(analytics_event)
        return IngestResult(status="processed", event_type=event.type, key=inv.id)

    async def _on_invoice_failed(self, event: InvoicePaymentFailed) -> IngestResult:
        inv = event.object
        if inv.billing_reason != "subscription_cycle":
            raise _Skip("ignored", f"billing_reason:{inv.billing_reason}")
        if not inv.subscription:
            raise _Skip("ignored", "missing_subscription")
        sub_id = inv.subscription

        already_failed = select(Payment.id).where(
            Payment.gateway_invoice_id == inv.id, Payment.type == "invoice_failed"
        )
        if await self._exists(already_failed):
            raise _Skip("duplicate", inv.id)

        metadata = inv.metadata
        if not (metadata.get("uid") and metadata.get("clubId")):
            subscription = await self._retrieve(sub_id)
            metadata = subscription.metadata if subscription else {}
        if metadata.get("type") != "sub" or not metadata.get("uid") or not metadata.get("clubId"):
            raise _Skip("ignored", "missing_metadata")
        uid, club_id = metadata["uid"], metadata["clubId"]
        now = utcnow()

        async def work(db: AsyncSession) -> int:
            tracker = await db.get(SubscriptionFailure, sub_id)
            if tracker is not None and tracker.last_invoice_id == inv.id:
                raise _Skip("duplicate", inv.id)
            if (await db.execute(already_failed.limit(1))).first() is not None:
                raise _Skip("duplicate", inv.id)
            club = await self._require_member_context(db, uid, club_id)

            if tracker is None:
                tracker = SubscriptionFailure(subscription_id=sub_id, user_id=uid, club_id=club_id, count=0)
                db.add(tracker)
            tracker.count = (tracker.count or 0) + 1
            tracker.last_invoice_id = inv.id
            tracker.last_failed_at = now

            await self.memberships.apply_invoice_failed(
                db, uid, club_id, sub_id, tracker.count, now,
                detail=inv.failure_message or f"invoice.payment_failed:{inv.id}",
            )
            db.add(Payment(
                user_id=uid,
                club_id=club_id,
                type="invoice_failed",
                status="failed",
                amount=inv.amount_due,
                currency=(inv.currency or club.currency or self.config.default_currency).upper(),
                gateway_invoice_id=inv.id,
                gateway_subscription_id=sub_id,
                gateway_customer_id=inv.customer,
                billing_reason=inv.billing_reason,
            ))
            await db.flush()
            return tracker.count

        failures = await self._tx(work, f"invoice_failed:{inv.id}")
        log.info("webhook.invoice.failed club=%s user=%s failures=%d", club_id, uid, failures)

        if failures >= self.config.max_failed_payments:
            await self._auto_cancel(uid, club_id, sub_id, inv.id, failures)
        return IngestResult(status="processed", event_type=event.type, key=inv.id)

    async def _auto_cancel(self, uid: str, club_id: str, sub_id: str, invoice_id: str, failures: int) -> None:
        try:
            await self.gateway.cancel_subscription(sub_id)
        except (ExternalServiceError, NotFoundError) as e:
            log.error("webhook.auto_cancel.gateway_failed sub=%s err=%s", _redact(sub_id), e)
            return

        async def work(db: AsyncSession) -> None:
            club = await db.get(Club, club_id)
            db.add(BillingEvent(
                club_id=club_id,
                host_id=club.host_id if club else None,
                user_id=uid,
                type="member_subscription_auto_cancelled_after_failures",
                source_id=sub_id,
                data={"subscriptionId": sub_id, "failureCount": failures, "invoiceId": invoice_id},
            ))
            await db.execute(delete(SubscriptionFailure).where(SubscriptionFailure.subscription_id == sub_id))

        try:
            await self._tx(work, f"auto_cancel:{sub_id}")
        except Exception:
            log.exception("webhook.auto_cancel.record_failed sub=%s club=%s", _redact(sub_id), club_id)

    async def _on_unknown(self, event: UnknownEvent) -> IngestResult:
        log.info("webhook.unhandled type=%s id=%s", event.type, event.id)
        return IngestResult(status="ignored", event_type=event.type, detail="unhandled_event_type")
