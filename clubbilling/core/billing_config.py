"""Host plan tiers and billing rules.

Built once at startup with :func:`load_billing_config` and handed to every
service constructor. Nothing in here is mutated after construction.
"""

import sys
from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import Mapping

from clubbilling.core.config import Settings

UNLIMITED = sys.maxsize


@dataclass(frozen=True)
class SoftLimits:
    paying_members: int
    video_uploads: int
    bandwidth_gb: int

    def as_dict(self) -> dict:
        return {
            "payingMembers": self.paying_members,
            "videoUploads": self.video_uploads,
            "bandwidthGb": self.bandwidth_gb,
        }


@dataclass(frozen=True)
class TierConfig:
    tier: str
    price: float
    transaction_fee_percent: float
    included_members: int
    upgrade_threshold: int
    downgrade_threshold: int
    soft_limits: SoftLimits
    price_id: str | None = None


@dataclass(frozen=True)
class BillingConfig:
    tiers: Mapping[str, TierConfig]
    tier_order: tuple[str, ...]
    warning_window: timedelta = timedelta(hours=48)
    downgrade_cooldown_days: int = 30
    max_failed_payments: int = 3
    default_trial_days: int = 7
    default_platform_fee_percent: float = 5.0
    default_currency: str = "aud"
    enforcement_page_size: int = 500
    enforcement_timeout: float = 150.0
    enforcement_timeout_buffer: float = 5.0
    tx_max_attempts: int = 3
    price_to_tier: Mapping[str, str] = field(default_factory=dict)

    @property
    def base_tier(self) -> str:
        return self.tier_order[0]

    def tier_for(self, tier: str | None) -> TierConfig:
        return self.tiers.get(tier or self.base_tier) or self.tiers[self.base_tier]

    def next_tier(self, tier: str | None) -> str | None:
        idx = self._index(tier)
        if idx + 1 < len(self.tier_order):
            return self.tier_order[idx + 1]
        return None

    def previous_tier(self, tier: str | None) -> str | None:
        idx = self._index(tier)
        return self.tier_order[idx - 1] if idx > 0 else None

    def tier_from_price(self, price_id: str | None) -> str | None:
        if not price_id:
            return None
        return self.price_to_tier.get(price_id)

    def _index(self, tier: str | None) -> int:
        try:
            return self.tier_order.index(tier or self.base_tier)
        except ValueError:
            return 0


def load_billing_config(settings: Settings) -> BillingConfig:
    tiers = {
        "tier_a": TierConfig(
            tier="tier_a",
            price=49.99,
            transaction_fee_percent=5,
            included_members=100,
            upgrade_threshold=100,
            downgrade_threshold=100,
            soft_limits=SoftLimits(99, 50, 300),
            price_id=settings.STRIPE_PRICE_ID_TIER_A,
        ),
        "tier_b": TierConfig(
            tier="tier_b",
            price=99,
            transaction_fee_percent=3,
            included_members=500,
            upgrade_threshold=500,
            downgrade_threshold=100,
            soft_limits=SoftLimits(499, 200, 2000),
            price_id=settings.STRIPE_PRICE_ID_TIER_B,
        ),
        "tier_c": TierConfig(
            tier="tier_c",
            price=199,
            transaction_fee_percent=2,
            included_members=UNLIMITED,
            upgrade_threshold=UNLIMITED,
            downgrade_threshold=500,
            soft_limits=SoftLimits(UNLIMITED, 1000, 10000),
            price_id=settings.STRIPE_PRICE_ID_TIER_C,
        ),
    }
    price_to_tier = {t.price_id: name for name, t in tiers.items() if t.price_id}

    return BillingConfig(
        tiers=MappingProxyType(tiers),
        tier_order=("tier_a", "tier_b", "tier_c"),
        warning_window=timedelta(hours=settings.HOST_PLAN_WARNING_HOURS),
        downgrade_cooldown_days=settings.DOWNGRADE_COOLDOWN_DAYS,
        max_failed_payments=settings.MAX_CONSECUTIVE_FAILED_PAYMENTS,
        default_trial_days=settings.DEFAULT_TRIAL_DAYS,
        default_platform_fee_percent=settings.DEFAULT_PLATFORM_FEE_PERCENT,
        default_currency=settings.DEFAULT_CURRENCY,
        enforcement_page_size=settings.ENFORCEMENT_PAGE_SIZE,
        enforcement_timeout=settings.ENFORCEMENT_TIMEOUT_SECONDS,
        enforcement_timeout_buffer=settings.ENFORCEMENT_TIMEOUT_BUFFER_SECONDS,
        tx_max_attempts=settings.TX_MAX_ATTEMPTS,
        price_to_tier=MappingProxyType(price_to_tier),
    )
