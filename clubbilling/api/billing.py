import hmac
import logging
import re

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from clubbilling.core.errors import AuthorizationError, NotFoundError, validate_id
from clubbilling.db.models import Club
from clubbilling.db.types import utcnow
from clubbilling.schemas.billing import BillingAnalyticsOut
from clubbilling.services.analytics import month_key
from clubbilling.services.container import Services
from clubbilling.utils.deps import get_current_uid, get_services

log = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])

MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@router.get("/clubs/{club_id}/analytics/billing")
async def billing_analytics(
    club_id: str,
    month: str | None = Query(default=None),
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    validate_id(club_id, "club id")
    month = month if month and MONTH_RE.match(month) else month_key(utcnow())

    async with services.session_factory() as db:
        club = await db.get(Club, club_id)
        if club is None:
            raise NotFoundError("Club not found")
        if club.host_id != uid:
            raise AuthorizationError("Only the club host can view billing analytics")
        bucket = await services.analytics.get_bucket(db, club_id, month)

    if bucket is None:
        return BillingAnalyticsOut(
            club_id=club_id, month=month, currency=(club.currency or services.config.default_currency).upper()
        ).model_dump()
    return BillingAnalyticsOut(
        club_id=club_id,
        month=month,
        currency=bucket.currency,
        new_subscribers=bucket.new_subscribers,
        trial_starts=bucket.trial_starts,
        trial_conversions=bucket.trial_conversions,
        active_subscribers=bucket.active_subscribers,
        cancellations=bucket.cancellations,
        total_revenue=bucket.total_revenue,
        updated_at=bucket.updated_at,
    ).model_dump()


@router.post("/billing/evaluate")
async def evaluate_all_club_billing(
    x_cron_token: str | None = Header(default=None),
    services: Services = Depends(get_services),
):
    """Manual / cron trigger for the tier automaton; the scheduler runs the same thing."""
    expected = services.settings.CRON_TOKEN
    if not expected or not x_cron_token or not hmac.compare_digest(x_cron_token, expected):
        raise HTTPException(403, {"ok": False, "error": "permission_denied", "message": "Invalid cron token"})

    async with services.lock("billing:evaluate", timeout=services.settings.LOCK_TIMEOUT, retry_count=1, raise_on_fail=False) as acquired:
        if not acquired:
            log.info("billing.evaluate.skipped lock_held")
            return {"ok": True, "skipped": True}
        summary = await services.automaton.evaluate_all()

    return {"ok": True, "skipped": False, **summary.model_dump(exclude={"clubs"})}
