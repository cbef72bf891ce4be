"""Wires the billing services together once per process."""

from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clubbilling.core.billing_config import BillingConfig, load_billing_config
from clubbilling.core.config import Settings
from clubbilling.services.analytics import AmplitudeSink, AnalyticsAggregator, AnalyticsSink
from clubbilling.services.audit import AuditLogWriter
from clubbilling.services.checkout import CheckoutService
from clubbilling.services.enforcement import PaymentEnforcementJob
from clubbilling.services.gateway import PaymentGateway, StripeGateway
from clubbilling.services.host_billing import HostBillingAutomaton, HostPlanActivator
from clubbilling.services.ingestion import PaymentEventIngestor
from clubbilling.services.membership import MembershipStateMachine
from clubbilling.utils.concurrency import advisory_lock


@dataclass
class Services:
    settings: Settings
    config: BillingConfig
    session_factory: async_sessionmaker[AsyncSession]
    gateway: PaymentGateway
    analytics: AnalyticsAggregator
    memberships: MembershipStateMachine
    activator: HostPlanActivator
    ingestor: PaymentEventIngestor
    automaton: HostBillingAutomaton
    enforcement: PaymentEnforcementJob
    checkout: CheckoutService
    lock: Callable[..., Any] = advisory_lock


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    gateway: PaymentGateway | None = None,
    sink: AnalyticsSink | None = None,
    lock: Callable[..., Any] = advisory_lock,
) -> Services:
    config = load_billing_config(settings)
    gateway = gateway or StripeGateway(settings.STRIPE_SECRET_KEY)
    if sink is None and settings.AMPLITUDE_SERVER_API_KEY:
        sink = AmplitudeSink(settings.AMPLITUDE_SERVER_API_KEY, settings.AMPLITUDE_ENDPOINT)

    audit = AuditLogWriter()
    analytics = AnalyticsAggregator(sink)
    memberships = MembershipStateMachine(session_factory, config, audit, gateway)
    activator = HostPlanActivator(config)

    return Services(
        settings=settings,
        config=config,
        session_factory=session_factory,
        gateway=gateway,
        analytics=analytics,
        memberships=memberships,
        activator=activator,
        ingestor=PaymentEventIngestor(session_factory, config, memberships, activator, analytics, gateway),
        automaton=HostBillingAutomaton(
            session_factory, config, activator, gateway, concurrency=settings.BILLING_EVAL_CONCURRENCY
        ),
        enforcement=PaymentEnforcementJob(session_factory, config, memberships),
        checkout=CheckoutService(session_factory, config, gateway, settings.APP_URL),
        lock=lock,
    )
