from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clubbilling.db.types import UTCDateTime, utcnow
from .base import Base

MEMBERSHIP_STATUSES = ("active", "trialing", "payment_required", "canceled")


class ClubMembership(Base):
    """Per-user, per-club payment and access state. Never deleted."""

    __tablename__ = "club_memberships"

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    club_id: Mapped[str] = mapped_column(
        ForeignKey("clubs.id", ondelete="CASCADE"), primary_key=True
    )
    # True while the club is listed among the user's joined clubs
    is_member: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_trialing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_payment_type: Mapped[str | None] = mapped_column(String(48), nullable=True)
    last_payment_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    consecutive_failed_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)

    joined_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    user = relationship("User", back_populates="memberships", lazy="noload")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_club_memberships_club_payment_type", "club_id", "last_payment_type", "user_id"),
    )
