"""Monthly billing analytics buckets plus a best-effort Amplitude mirror."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Mapping, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from clubbilling.db import upsert
from clubbilling.db.models import ANALYTICS_COUNTERS, BillingAnalyticsMonthly
from clubbilling.db.types import utcnow

log = logging.getLogger(__name__)

AMPLITUDE_EVENT_NAMES = {
    "subscription_created": "Subscription Created",
    "trial_started": "Trial Started",
    "trial_converted": "Trial Converted",
    "invoice_paid": "Invoice Paid",
    "subscription_canceled": "Subscription Canceled",
    "refund": "Refund Issued",
}


def month_key(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m")


@dataclass(frozen=True)
class AnalyticsEvent:
    club_id: str
    type: str
    currency: str
    timestamp: datetime                     # selects the bucket, never wall clock
    increments: Mapping[str, int] = field(default_factory=dict)
    mode: Literal["add", "subtract"] = "add"
    user_id: str | None = None
    amount: int = 0
    gateway_id: str | None = None
    is_trial_conversion: bool = False

    @property
    def month(self) -> str:
        return month_key(self.timestamp)

    @property
    def insert_id(self) -> str:
        # stable across replays so the sink can dedupe
        ref = self.gateway_id or f"{self.club_id}-{self.month}"
        return f"{self.type}-{self.user_id or self.club_id}-{ref}"

    def signed_increments(self) -> dict[str, int]:
        direction = -1 if self.mode == "subtract" else 1
        out = {}
        for name, value in self.increments.items():
            if name not in ANALYTICS_COUNTERS:
                raise ValueError(f"unknown analytics counter {name!r}")
            if value:
                out[name] = value * direction
        return out


class AnalyticsSink(Protocol):
    async def send(self, event: AnalyticsEvent) -> None: ...


class AmplitudeSink:
    def __init__(
        self,
        api_key: str | None,
        endpoint: str = "https://api2.amplitude.com/2/httpapi",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self._transport = transport
        self._timeout = timeout

    def payload(self, event: AnalyticsEvent) -> dict:
        return {
            "api_key": self.api_key,
            "events": [
                {
                    "event_type": AMPLITUDE_EVENT_NAMES.get(event.type, event.type),
                    "user_id": event.user_id or f"club:{event.club_id}",
                    "time": int(event.timestamp.timestamp() * 1000),
                    "insert_id": event.insert_id,
                    "event_properties": {
                        "clubId": event.club_id,
                        "amount": event.amount,
                        "currency": event.currency,
                        "stripeId": event.gateway_id,
                        "isTrialConversion": event.is_trial_conversion,
                    },
                }
            ],
        }

    async def send(self, event: AnalyticsEvent) -> None:
        if not self.api_key:
            return
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            r = await client.post(self.endpoint, json=self.payload(event))
            r.raise_for_status()


class AnalyticsAggregator:

    def __init__(self, sink: AnalyticsSink | None = None):
        self._sink = sink
        self._pending: set[asyncio.Task] = set()

    async def record(self, db: AsyncSession, event: AnalyticsEvent) -> dict[str, int]:
        """Apply the event's increments to its monthly bucket in ``db``'s transaction."""
        increments = event.signed_increments()
        if not increments:
            return {}
        await upsert.increment(
            db,
            BillingAnalyticsMonthly.__table__,
            key={"club_id": event.club_id, "month": event.month},
            increments=increments,
            values={"currency": event.currency.upper(), "updated_at": utcnow()},
        )
        log.debug("analytics.bucket club=%s month=%s %s", event.club_id, event.month, increments)
        return increments

    def publish(self, event: AnalyticsEvent) -> asyncio.Task | None:
        """Mirror to the external sink without making the caller wait on it."""
        if self._sink is None:
            return None
        task = asyncio.create_task(self._sink.send(event), name=f"analytics:{event.insert_id}")
        self._pending.add(task)
        task.add_done_callback(self._mirror_done)
        return task

    def _mirror_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("analytics.mirror.failed task=%s err=%r", task.get_name(), exc)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def get_bucket(self, db: AsyncSession, club_id: str, month: str):
        return await db.get(BillingAnalyticsMonthly, (club_id, month))
