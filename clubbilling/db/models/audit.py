from datetime import datetime

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from clubbilling.db.types import UTCDateTime, utcnow
from .base import Base

AUDIT_REASONS = (
    "free_join",
    "free_to_paid",
    "trial_end",
    "payment_failed",
    "payment_required",
    "subscription_canceled",
    "member_left",
)

AUDIT_ACTORS = ("system", "host")


class MembershipAuditLog(Base):
    """Append-only record of membership status changes."""

    __tablename__ = "membership_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    club_id: Mapped[str] = mapped_column(String(128), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reason: Mapped[str] = mapped_column(String(48), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(16), nullable=False)   # "system" or "host"
    detail: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_membership_audit_logs_user_club", "user_id", "club_id"),
    )
