"""Membership state machine.

States: active, trialing, payment_required, canceled. The ``apply_*`` methods
run inside a transaction owned by the caller (webhook ingestion, enforcement);
``join_free`` and ``leave_club`` open their own.

Every status change appends exactly one audit entry. Failed payments are also
audited although the status does not move.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clubbilling.core.billing_config import BillingConfig
from clubbilling.core.errors import (
    AuthenticationError, AuthorizationError, NotFoundError, ValidationError,
    validate_id,
)
from clubbilling.db.models import BillingEvent, Club, ClubMembership, User
from clubbilling.db.patch import DELETE_FIELD, Patch
from clubbilling.db.transaction import run_in_transaction
from clubbilling.db.types import utcnow
from clubbilling.schemas.billing import JoinFreeResult, LeaveClubResult
from clubbilling.services.audit import AuditLogWriter
from clubbilling.services.gateway import GatewaySubscription, PaymentGateway

log = logging.getLogger(__name__)


@dataclass
class Transition:
    old_status: str | None
    new_status: str | None

    @property
    def changed(self) -> bool:
        return self.old_status != self.new_status


@dataclass
class CancellationOutcome:
    cancelled: bool
    was_active_paid: bool = False
    old_status: str | None = None


class MembershipStateMachine:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        audit: AuditLogWriter,
        gateway: PaymentGateway | None = None,
    ):
        self.session_factory = session_factory
        self.config = config
        self.audit = audit
        self.gateway = gateway

    # ---- helpers -------------------------------------------------------

    @staticmethod
    async def get_membership(db: AsyncSession, user_id: str, club_id: str) -> ClubMembership | None:
        return await db.get(ClubMembership, (user_id, club_id))

    async def _membership_for_update(self, db: AsyncSession, user_id: str, club_id: str) -> ClubMembership:
        m = await self.get_membership(db, user_id, club_id)
        if m is None:
            m = ClubMembership(user_id=user_id, club_id=club_id, is_member=False, consecutive_failed_payments=0)
            db.add(m)
        return m

    def _apply(
        self,
        db: AsyncSession,
        m: ClubMembership,
        patch: Patch,
        *,
        reason: str,
        changed_by: str = "system",
        detail: str | None = None,
        always_audit: bool = False,
    ) -> Transition:
        old = m.status
        patch.apply_to(m)
        t = Transition(old, m.status)
        if t.changed or always_audit:
            self.audit.record(
                db,
                club_id=m.club_id,
                user_id=m.user_id,
                old_status=old,
                new_status=m.status,
                reason=reason,
                changed_by=changed_by,
                detail=detail,
            )
        return t

    @staticmethod
    def _count_member(club: Club, m: ClubMembership) -> None:
        if not m.is_member:
            m.is_member = True
            m.joined_at = m.joined_at or utcnow()
            club.members_count = (club.members_count or 0) + 1

    @staticmethod
    def _uncount_member(club: Club | None, m: ClubMembership) -> None:
        if m.is_member:
            m.is_member = False
            if club is not None:
                club.members_count = max((club.members_count or 0) - 1, 0)

    # ---- caller-facing operations -------------------------------------

    async def join_free(self, club_id: str, user_id: str | None) -> JoinFreeResult:
        if not user_id:
            raise AuthenticationError("Sign in to join this club")
        validate_id(club_id, "club id")
        validate_id(user_id, "user id")

        async def work(db: AsyncSession) -> JoinFreeResult:
            club = await db.get(Club, club_id)
            if club is None:
                raise NotFoundError("Club not found", club_id=club_id)
            if await db.get(User, user_id) is None:
                raise NotFoundError("User not found", user_id=user_id)
            if (club.price or 0) > 0:
                raise ValidationError("This club requires a paid membership")

            m = await self._membership_for_update(db, user_id, club_id)
            if m.is_member and m.status == "active":
                log.info("membership.join_free.already_member club=%s user=%s", club_id, user_id)
                return JoinFreeResult(club_id=club_id, already_member=True)

            self._count_member(club, m)
            self._apply(
                db,
                m,
                Patch(
                    status="active",
                    is_trialing=False,
                    trial_ends_at=DELETE_FIELD,
                    last_payment_type="free",
                    last_payment_at=utcnow(),
                    consecutive_failed_payments=0,
                ),
                reason="free_join",
            )
            return JoinFreeResult(club_id=club_id)

        result = await run_in_transaction(
            self.session_factory, work, attempts=self.config.tx_max_attempts, label="join_free"
        )
        log.info("membership.join_free club=%s user=%s already=%s", club_id, user_id, result.already_member)
        return result

    async def leave_club(self, club_id: str, user_id: str | None) -> LeaveClubResult:
        """Member-initiated cancellation; the gateway subscription is cancelled first."""
        if not user_id:
            raise AuthenticationError("Sign in to manage your membership")
        validate_id(club_id, "club id")

        async with self.session_factory() as db:
            club = await db.get(Club, club_id)
            m = await self.get_membership(db, user_id, club_id)
        if club is None:
            raise NotFoundError("Club not found", club_id=club_id)
        if club.host_id == user_id:
            raise AuthorizationError("Hosts cannot leave their own club")
        if m is None or not m.is_member:
            raise NotFoundError("You are not a member of this club", club_id=club_id)

        cancelled = False
        if m.external_subscription_id:
            if self.gateway is None:
                raise RuntimeError("payment gateway not configured")
            try:
                await self.gateway.cancel_subscription(m.external_subscription_id)
                cancelled = True
            except NotFoundError:
                log.info("membership.leave.subscription_missing sub=%s", m.external_subscription_id)

        async def work(db: AsyncSession) -> None:
            club_row = await db.get(Club, club_id)
            row = await self.get_membership(db, user_id, club_id)
            if row is None or not row.is_member:
                return
            self._uncount_member(club_row, row)
            self._apply(
                db,
                row,
                Patch(
                    status="canceled",
                    is_trialing=False,
                    trial_ends_at=DELETE_FIELD,
                    last_payment_type="member_cancelled",
                ),
                reason="member_left",
                detail="member_requested",
            )
            db.add(BillingEvent(
                club_id=club_id,
                host_id=club_row.host_id if club_row else None,
                user_id=user_id,
                type="member_subscription_cancelled_by_member",
                source_id=row.external_subscription_id,
                data={"subscriptionId": row.external_subscription_id},
            ))

        await run_in_transaction(
            self.session_factory, work, attempts=self.config.tx_max_attempts, label="leave_club"
        )
        log.info("membership.leave club=%s user=%s cancelled=%s", club_id, user_id, cancelled)
        return LeaveClubResult(club_id=club_id, subscription_cancelled=cancelled)

    # ---- transitions used inside ingestion / enforcement transactions --

    async def apply_checkout(
        self,
        db: AsyncSession,
        club: Club,
        user_id: str,
        subscription: GatewaySubscription | None,
        now: datetime,
        customer_id: str | None = None,
    ) -> Transition:
        trialing = bool(subscription and subscription.status == "trialing")
        m = await self._membership_for_update(db, user_id, club.id)
        self._count_member(club, m)
        return self._apply(
            db,
            m,
            Patch(
                status="trialing" if trialing else "active",
                is_trialing=trialing,
                trial_ends_at=subscription.trial_end if trialing else DELETE_FIELD,
                external_subscription_id=subscription.id if subscription else m.external_subscription_id,
                external_customer_id=customer_id or m.external_customer_id,
                last_payment_type="trial_start" if trialing else "subscription",
                last_payment_at=now,
                consecutive_failed_payments=0,
            ),
            reason="free_to_paid",
            detail="checkout.session.completed: " + ("trial_started" if trialing else "activated"),
        )

    async def apply_invoice_paid(
        self,
        db: AsyncSession,
        user_id: str,
        club_id: str,
        subscription_id: str,
        payment_type: str,
        now: datetime,
        *,
        trial_conversion: bool,
        detail: str,
    ) -> Transition:
        m = await self._membership_for_update(db, user_id, club_id)
        return self._apply(
            db,
            m,
            Patch(
                status="active",
                is_trialing=False,
                trial_ends_at=DELETE_FIELD,
                external_subscription_id=subscription_id,
                last_payment_type=payment_type,
                last_payment_at=now,
                consecutive_failed_payments=0,
            ),
            reason="trial_end" if trial_conversion else "free_to_paid",
            detail=detail,
        )

    async def apply_invoice_failed(
        self,
        db: AsyncSession,
        user_id: str,
        club_id: str,
        subscription_id: str,
        failure_count: int,
        now: datetime,
        detail: str,
    ) -> Transition:
        m = await self._membership_for_update(db, user_id, club_id)
        return self._apply(
            db,
            m,
            Patch(
                external_subscription_id=subscription_id,
                last_payment_type="invoice_failed",
                last_payment_at=now,
                consecutive_failed_payments=failure_count,
            ),
            reason="payment_failed",
            detail=detail,
            always_audit=True,
        )

    async def apply_cancellation(
        self,
        db: AsyncSession,
        club: Club | None,
        user_id: str,
        club_id: str,
        subscription_id: str,
    ) -> CancellationOutcome:
        m = await self.get_membership(db, user_id, club_id)
        if m is None or not m.is_member:
            return CancellationOutcome(cancelled=False)

        was_active_paid = m.status == "active" and not m.is_trialing
        self._uncount_member(club, m)
        t = self._apply(
            db,
            m,
            Patch(
                status="canceled",
                is_trialing=False,
                trial_ends_at=DELETE_FIELD,
                external_subscription_id=subscription_id or m.external_subscription_id,
                last_payment_type=m.last_payment_type or "invoice_failed",
            ),
            reason="subscription_canceled",
            detail=f"customer.subscription.deleted:{subscription_id}",
        )
        return CancellationOutcome(cancelled=True, was_active_paid=was_active_paid, old_status=t.old_status)

    def apply_payment_required(
        self, db: AsyncSession, m: ClubMembership, host_uid: str, now: datetime
    ) -> Transition:
        return self._apply(
            db,
            m,
            Patch(
                status="payment_required",
                is_trialing=False,
                trial_ends_at=DELETE_FIELD,
                external_subscription_id=DELETE_FIELD,
                consecutive_failed_payments=0,
                last_payment_type="free_expired",
                last_payment_at=now,
            ),
            reason="payment_required",
            changed_by="host",
            detail=f"host_enabled_paid_membership:{host_uid}",
            always_audit=True,
        )
