import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clubbilling.core.billing_config import BillingConfig
from clubbilling.core.errors import AuthenticationError, NotFoundError, ValidationError, validate_id
from clubbilling.db.models import Club, ClubMembership, Payment, User
from clubbilling.schemas.billing import CheckoutSessionOut
from clubbilling.services.gateway import PaymentGateway

log = logging.getLogger(__name__)

MEMBERSHIP_PAYMENT_TYPES = ("trial_start", "subscription", "subscription_first_charge", "subscription_renewal")


@dataclass(frozen=True)
class TrialDecision:
    trial_days: int
    no_trial: bool
    reason: str | None = None


def decide_trial(
    membership: ClubMembership | None,
    pricing_locked: bool | None,
    has_prior_payments: bool,
    default_days: int,
) -> TrialDecision:
    """
    Returning members (free access expired, or payment required) get no trial
    while pricing is locked. An explicitly unlocked price keeps the trial.
    Anyone who already trialled or paid for the club gets no second trial
    unless pricing is unlocked.
    """
    returning = membership is not None and (
        membership.last_payment_type == "free_expired" or membership.status == "payment_required"
    )
    if returning and pricing_locked is False:
        return TrialDecision(default_days, False, "pricing_unlocked_trial_override")
    if returning:
        return TrialDecision(0, True, "returning_member")
    if has_prior_payments and pricing_locked is not False and default_days > 0:
        return TrialDecision(0, True, "prior_trial_or_payment")
    return TrialDecision(default_days, False)


class CheckoutService:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        gateway: PaymentGateway,
        app_url: str,
    ):
        self.session_factory = session_factory
        self.config = config
        self.gateway = gateway
        self.app_url = app_url.rstrip("/")

    async def create_member_checkout(self, club_id: str, uid: str | None) -> CheckoutSessionOut:
        if not uid:
            raise AuthenticationError("Login required")
        validate_id(club_id, "club id")

        async with self.session_factory() as db:
            club = await db.get(Club, club_id)
            if club is None:
                raise NotFoundError("Club not found", club_id=club_id)
            user = await db.get(User, uid)
            membership = await db.get(ClubMembership, (uid, club_id))
            prior = await db.execute(
                select(Payment.id)
                .where(
                    Payment.user_id == uid,
                    Payment.club_id == club_id,
                    Payment.type.in_(MEMBERSHIP_PAYMENT_TYPES),
                )
                .limit(1)
            )
            has_prior = prior.first() is not None

        if not club.price or club.price <= 0:
            log.error("[Billing] checkout invalid_price club=%s uid=%s", club_id, uid)
            raise ValidationError("Club price must be configured before starting checkout")

        decision = decide_trial(membership, club.pricing_locked, has_prior, self.config.default_trial_days)
        log.info(
            "[Billing] checkout trial club=%s uid=%s days=%d no_trial=%s reason=%s",
            club_id, uid, decision.trial_days, decision.no_trial, decision.reason,
        )

        slug = club.slug or club.id
        metadata = {"uid": uid, "clubId": club_id, "type": "sub", "noTrial": str(decision.no_trial).lower()}
        session = await self.gateway.create_checkout_session(
            customer_email=user.email if user else None,
            currency=club.currency or self.config.default_currency,
            unit_amount=round(club.price * 100),
            product_name=club.name or "Club Membership",
            metadata=metadata,
            trial_days=decision.trial_days or None,
            success_url=f"{self.app_url}/club/{slug}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.app_url}/club/{slug}/overview",
        )
        log.info("[Billing] checkout session created club=%s uid=%s", club_id, uid)
        return CheckoutSessionOut(id=session.id, url=session.url, trial_days=decision.trial_days)
