from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class IngestResult(BaseModel):
    status: Literal["processed", "duplicate", "ignored"]
    event_type: str
    key: str | None = None
    detail: str | None = None


class JoinFreeResult(BaseModel):
    ok: bool = True
    club_id: str
    status: str = "active"
    already_member: bool = False


class LeaveClubResult(BaseModel):
    ok: bool = True
    club_id: str
    subscription_cancelled: bool = False


class EnforcementResult(BaseModel):
    updated_members: int = 0
    batches_processed: int = 0
    partial: bool = False
    pricing_locked: bool = False


class ClubEvaluation(BaseModel):
    club_id: str
    tier: str
    members_count: int
    over_streak: int = 0
    below_streak: int = 0
    upgrade_scheduled: bool = False
    upgrade_cancelled: bool = False
    downgrade_scheduled: bool = False
    executed: Literal["upgrade", "downgrade"] | None = None
    new_tier: str | None = None


class EvaluationSummary(BaseModel):
    evaluated: int = 0
    failed: int = 0
    upgrades_scheduled: int = 0
    upgrades_executed: int = 0
    downgrades_scheduled: int = 0
    downgrades_executed: int = 0
    clubs: list[ClubEvaluation] = Field(default_factory=list)


class CheckoutSessionOut(BaseModel):
    id: str
    url: str | None = None
    trial_days: int | None = None


class BillingAnalyticsOut(BaseModel):
    club_id: str
    month: str
    currency: str
    new_subscribers: int = 0
    trial_starts: int = 0
    trial_conversions: int = 0
    active_subscribers: int = 0
    cancellations: int = 0
    total_revenue: int = 0
    updated_at: datetime | None = None
