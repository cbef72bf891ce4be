"""Club and embedded host billing profile."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Float, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from clubbilling.db.types import UTCDateTime, utcnow
from .base import Base


class Club(Base):
    __tablename__ = "clubs"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    host_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    slug: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)

    # Owned by club-info edits; read by payment enforcement and checkout
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0)   # major units
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="aud")
    pricing_locked: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    price_changed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    members_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Host plan billing profile
    billing_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="tier_a")
    billing_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transaction_fee_percent: Mapped[float] = mapped_column(Float, nullable=False, default=5)
    included_members: Mapped[int] = mapped_column(BigInteger, nullable=False, default=100)
    soft_limits: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    usage_paying_members: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_streak_over_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_streak_below_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_video_uploads_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_bandwidth_gb_month: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    usage_logged_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    upgrade_scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    upgrade_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    downgrade_eligible_after: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    downgrade_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    billing_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    billing_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
