"""Payments, billing events, failure trackers, analytics buckets and usage snapshots."""

from datetime import datetime

from sqlalchemy import (
    BigInteger, Float, ForeignKey, Index, Integer, JSON, String, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from clubbilling.db.types import UTCDateTime, utcnow
from .base import Base


class Payment(Base):
    """One record per monetary event; unique per (gateway id, type)."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    club_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # trial_start / subscription / subscription_first_charge / subscription_renewal / invoice_failed
    type: Mapped[str] = mapped_column(String(48), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)     # succeeded / trialing / failed
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)   # minor units
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="aud")
    platform_fee_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    platform_fee_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    host_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    gateway_session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_invoice_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    gateway_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_reason: Mapped[str | None] = mapped_column(String(48), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("gateway_session_id", "type", name="uq_payments_session_type"),
        UniqueConstraint("gateway_invoice_id", "type", name="uq_payments_invoice_type"),
        Index("ix_payments_user_club", "user_id", "club_id"),
    )


class BillingEvent(Base):
    __tablename__ = "billing_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    club_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    host_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    # gateway object the event was derived from (session / subscription id)
    source_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class SubscriptionFailure(Base):
    """Consecutive failed invoices for one gateway subscription."""

    __tablename__ = "subscription_failures"

    subscription_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    club_id: Mapped[str] = mapped_column(String(128), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_invoice_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


ANALYTICS_COUNTERS = (
    "new_subscribers",
    "trial_starts",
    "trial_conversions",
    "active_subscribers",
    "cancellations",
    "total_revenue",
)


class BillingAnalyticsMonthly(Base):
    __tablename__ = "billing_analytics_monthly"

    club_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    month: Mapped[str] = mapped_column(String(7), primary_key=True)     # YYYY-MM
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="aud")

    new_subscribers: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    trial_starts: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    trial_conversions: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    active_subscribers: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cancellations: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_revenue: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class ClubUsageSnapshot(Base):
    __tablename__ = "club_usage_snapshots"

    club_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    period: Mapped[str] = mapped_column(String(8), primary_key=True)        # daily / monthly
    period_key: Mapped[str] = mapped_column(String(10), primary_key=True)   # YYYY-MM-DD / YYYY-MM
    tier: Mapped[str | None] = mapped_column(String(16), nullable=True)
    paying_members: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    video_uploads: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bandwidth_gb: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
