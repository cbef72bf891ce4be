"""
SQLAlchemy database models.

Organized by domain:
- base: Base declarative class
- user: User accounts
- club: Clubs and the host plan billing profile
- membership: Per-user club membership state
- billing: Payments, billing events, failure trackers, analytics, usage
- audit: Membership status audit trail

Import any model from this module:
    from clubbilling.db.models import Club, ClubMembership, Payment
"""

from .base import Base

from .user import User
from .club import Club
from .membership import ClubMembership, MEMBERSHIP_STATUSES
from .billing import (
    ANALYTICS_COUNTERS,
    BillingAnalyticsMonthly,
    BillingEvent,
    ClubUsageSnapshot,
    Payment,
    SubscriptionFailure,
)
from .audit import AUDIT_ACTORS, AUDIT_REASONS, MembershipAuditLog

__all__ = [
    "Base",
    "User",
    "Club",
    "ClubMembership",
    "MEMBERSHIP_STATUSES",
    "Payment",
    "BillingEvent",
    "SubscriptionFailure",
    "BillingAnalyticsMonthly",
    "ANALYTICS_COUNTERS",
    "ClubUsageSnapshot",
    "MembershipAuditLog",
    "AUDIT_ACTORS",
    "AUDIT_REASONS",
]
