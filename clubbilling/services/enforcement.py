import logging
import time
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clubbilling.core.billing_config import BillingConfig
from clubbilling.core.errors import AuthorizationError, NotFoundError, ValidationError, validate_id
from clubbilling.db.models import Club, ClubMembership
from clubbilling.db.patch import Patch
from clubbilling.db.transaction import run_in_transaction
from clubbilling.db.types import utcnow
from clubbilling.schemas.billing import EnforcementResult
from clubbilling.services.membership import MembershipStateMachine

log = logging.getLogger(__name__)


class PaymentEnforcementJob:
    """
    Moves every free member of a club to ``payment_required`` once the host
    puts a price on it.

    Works page by page (one transaction each) and stops with ``partial=True``
    when the time budget runs out. Calling it again picks up the remaining
    members, since converted members no longer match the free-member query.
    Members who join for free between runs are picked up by the next run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        memberships: MembershipStateMachine,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.config = config
        self.memberships = memberships
        self.clock = clock

    async def enforce(self, club_id: str, host_uid: str) -> EnforcementResult:
        validate_id(club_id, "club id")
        validate_id(host_uid, "host id")
        started = self.clock()
        budget = self.config.enforcement_timeout - self.config.enforcement_timeout_buffer

        async with self.session_factory() as db:
            club = await db.get(Club, club_id)
        if club is None:
            raise NotFoundError("Club not found", club_id=club_id)
        if club.host_id != host_uid:
            raise AuthorizationError("Only the club host can change membership pricing")
        if not club.price or club.price <= 0:
            raise ValidationError("Set a price above zero before requiring payment")

        result = EnforcementResult()
        cursor: str | None = None
        log.info("[RequirePayment] start club=%s host=%s", club_id, host_uid)

        while True:
            updated, cursor = await run_in_transaction(
                self.session_factory,
                lambda db, after=cursor: self._process_page(db, club_id, host_uid, after),
                attempts=self.config.tx_max_attempts,
                label=f"require_payment:{club_id}",
            )
            if updated == 0:
                break
            result.updated_members += updated
            result.batches_processed += 1
            log.info(
                "[RequirePayment] batch club=%s batch=%d updated=%d total=%d",
                club_id, result.batches_processed, updated, result.updated_members,
            )

            if self.clock() - started > budget:
                result.partial = True
                log.warning(
                    "[RequirePayment] time budget reached club=%s updated=%d batches=%d",
                    club_id, result.updated_members, result.batches_processed,
                )
                return result
            if updated < self.config.enforcement_page_size:
                break

        result.pricing_locked = await run_in_transaction(
            self.session_factory,
            lambda db: self._lock_pricing(db, club_id),
            attempts=self.config.tx_max_attempts,
            label=f"lock_pricing:{club_id}",
        )
        log.info(
            "[RequirePayment] done club=%s updated=%d batches=%d",
            club_id, result.updated_members, result.batches_processed,
        )
        return result

    async def _process_page(
        self, db: AsyncSession, club_id: str, host_uid: str, after: str | None
    ) -> tuple[int, str | None]:
        stmt = (
            select(ClubMembership)
            .where(ClubMembership.club_id == club_id, ClubMembership.last_payment_type == "free")
            .order_by(ClubMembership.user_id)
            .limit(self.config.enforcement_page_size)
        )
        if after is not None:
            stmt = stmt.where(ClubMembership.user_id > after)
        members = list((await db.execute(stmt)).scalars())
        if not members:
            return 0, after

        now = utcnow()
        for m in members:
            self.memberships.apply_payment_required(db, m, host_uid, now)
        return len(members), members[-1].user_id

    async def _lock_pricing(self, db: AsyncSession, club_id: str) -> bool:
        club = await db.get(Club, club_id)
        if club is None:
            raise NotFoundError("Club not found", club_id=club_id)
        if club.pricing_locked:
            log.info("[RequirePayment] pricing already locked club=%s", club_id)
            return True
        Patch(pricing_locked=True, price_changed_at=utcnow()).apply_to(club)
        return True
