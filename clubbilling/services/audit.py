import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clubbilling.db.models import AUDIT_ACTORS, AUDIT_REASONS, MembershipAuditLog

log = logging.getLogger(__name__)


class AuditLogWriter:
    """Appends membership audit entries inside the caller's transaction."""

    def record(
        self,
        db: AsyncSession,
        *,
        club_id: str,
        user_id: str,
        old_status: str | None,
        new_status: str | None,
        reason: str,
        changed_by: str = "system",
        detail: str | None = None,
    ) -> MembershipAuditLog | None:
        if not club_id or not user_id:
            log.warning("audit.skip missing identifiers club=%s user=%s", club_id, user_id)
            return None
        if reason not in AUDIT_REASONS:
            raise ValueError(f"unknown audit reason {reason!r}")
        if changed_by not in AUDIT_ACTORS:
            raise ValueError(f"unknown audit actor {changed_by!r}")

        entry = MembershipAuditLog(
            club_id=club_id,
            user_id=user_id,
            old_status=old_status,
            new_status=new_status,
            reason=reason,
            changed_by=changed_by,
            detail=detail,
        )
        db.add(entry)
        log.info(
            "audit.membership club=%s user=%s %s->%s reason=%s by=%s",
            club_id, user_id, old_status, new_status, reason, changed_by,
        )
        return entry

    async def entries_for(self, db: AsyncSession, club_id: str, user_id: str | None = None):
        stmt = select(MembershipAuditLog).where(MembershipAuditLog.club_id == club_id)
        if user_id:
            stmt = stmt.where(MembershipAuditLog.user_id == user_id)
        res = await db.execute(stmt.order_by(MembershipAuditLog.id))
        return list(res.scalars())
