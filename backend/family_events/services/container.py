"""Composition root: builds the pipeline from Settings.

Nothing here is a module-level singleton; the FastAPI lifespan (or a test)
calls ``build_services`` once and keeps the result on ``app.state``.
"""

from dataclasses import dataclass

import structlog

from family_events.core.config import Settings
from family_events.db.base import close_db, init_db
from family_events.db.memory_store import InMemoryEventStore
from family_events.db.store import EventStore, SqlEventStore
from family_events.domain.scoring import EventScorer
from family_events.integrations.browser import BrowserEngine, PlaywrightBrowserEngine
from family_events.integrations.calendars import CalendarProvider, GoogleCalendarProvider
from family_events.integrations.fakes import (
    FakeBrowserEngine,
    FakeCalendarProvider,
    FakeReportSink,
    FakeResolver,
    FakeSmsGateway,
)
from family_events.integrations.mail import GmailReportSink, ReportSink
from family_events.integrations.resolver import DnsResolver, HostResolver
from family_events.integrations.sms import SmsGateway, TwilioSmsGateway
from family_events.services.approval_service import SmsApprovalManager
from family_events.services.conflict_checker import CalendarConflictChecker
from family_events.services.registration_automator import RegistrationAutomator
from family_events.services.registration_orchestrator import RegistrationOrchestrator
from family_events.services.reporting_service import ReportingService
from family_events.services.scheduler import PipelineScheduler
from family_events.services.scoring_service import ScoringService

logger = structlog.get_logger(__name__)

MEMORY_URL = "memory://"


@dataclass
class Integrations:
    sms: SmsGateway
    calendar: CalendarProvider
    browser: BrowserEngine
    resolver: HostResolver
    report_sink: ReportSink | None


@dataclass
class Services:
    settings: Settings
    store: EventStore
    integrations: Integrations
    scoring: ScoringService
    conflict_checker: CalendarConflictChecker
    approvals: SmsApprovalManager
    automator: RegistrationAutomator
    reporting: ReportingService
    orchestrator: RegistrationOrchestrator
    scheduler: PipelineScheduler
    owns_database: bool = False

    async def close(self) -> None:
        await self.scheduler.stop()
        if self.owns_database:
            await close_db()


def build_integrations(settings: Settings) -> Integrations:
    if settings.use_fake_integrations:
        logger.info("integrations_faked")
        return Integrations(
            sms=FakeSmsGateway(),
            calendar=FakeCalendarProvider(),
            browser=FakeBrowserEngine(),
            resolver=FakeResolver(),
            report_sink=FakeReportSink(),
        )

    report_sink = None
    if settings.gmail_access_token:
        report_sink = GmailReportSink(
            access_token=settings.gmail_access_token,
            sender=settings.gmail_sender,
            base_url=settings.gmail_base_url,
            timeout=settings.report_timeout_seconds,
        )
    return Integrations(
        sms=TwilioSmsGateway(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            base_url=settings.twilio_base_url,
            timeout=settings.sms_timeout_seconds,
        ),
        calendar=GoogleCalendarProvider(
            base_url=settings.google_calendar_base_url,
            timeout=settings.calendar_timeout_seconds,
        ),
        browser=PlaywrightBrowserEngine(
            headless=settings.browser_headless,
            navigation_timeout=settings.registration_timeout_seconds,
        ),
        resolver=DnsResolver(),
        report_sink=report_sink,
    )


async def build_store(settings: Settings) -> tuple[EventStore, bool]:
    """Return the configured store and whether it owns the shared database engine."""
    if settings.database_url.startswith(MEMORY_URL):
        return InMemoryEventStore(), False
    session_factory = await init_db(settings.database_url)
    return SqlEventStore(session_factory), True


def assemble_services(
    settings: Settings,
    store: EventStore,
    integrations: Integrations,
    owns_database: bool = False,
) -> Services:
    scoring = ScoringService(store, EventScorer.from_settings(settings))
    conflict_checker = CalendarConflictChecker(
        provider=integrations.calendar,
        members=settings.calendar_members,
        buffer_minutes=settings.calendar_buffer_minutes,
        timeout_seconds=settings.calendar_timeout_seconds,
    )
    approvals = SmsApprovalManager(
        store=store,
        sms=integrations.sms,
        approval_phone=settings.approval_phone_number,
        daily_limit=settings.daily_approval_limit,
        expiry_hours=settings.approval_expiry_hours,
        sms_timeout=settings.sms_timeout_seconds,
    )
    automator = RegistrationAutomator(
        engine=integrations.browser,
        resolver=integrations.resolver,
        parents=settings.parents,
        children=settings.children,
        home_zip=settings.home_zip,
        emergency_phone=settings.emergency_contact_phone,
        max_sessions=settings.max_browser_sessions,
        timeout_seconds=settings.registration_timeout_seconds,
        dns_timeout_seconds=settings.dns_timeout_seconds,
    )
    reporting = ReportingService(
        sink=integrations.report_sink,
        reports_dir=settings.reports_dir,
        recipients=settings.report_recipients,
        retention_days=settings.report_retention_days,
        timeout_seconds=settings.report_timeout_seconds,
    )
    orchestrator = RegistrationOrchestrator(
        store=store,
        automator=automator,
        approvals=approvals,
        scoring=scoring,
        conflict_checker=conflict_checker,
        sms=integrations.sms,
        calendar=integrations.calendar,
        calendar_members=settings.calendar_members,
        reporting=reporting,
        notify_phone=settings.approval_phone_number,
        batch_size=settings.registration_batch_size,
        lease_seconds=settings.registration_lease_seconds,
        min_score_to_propose=settings.min_score_to_propose,
        side_effect_timeout=settings.calendar_timeout_seconds,
    )
    scheduler = PipelineScheduler(
        orchestrator,
        interval_seconds=settings.scheduler_interval_seconds,
        reporting=reporting,
    )
    return Services(
        settings=settings,
        store=store,
        integrations=integrations,
        scoring=scoring,
        conflict_checker=conflict_checker,
        approvals=approvals,
        automator=automator,
        reporting=reporting,
        orchestrator=orchestrator,
        scheduler=scheduler,
        owns_database=owns_database,
    )


async def build_services(settings: Settings) -> Services:
    store, owns_database = await build_store(settings)
    return assemble_services(settings, store, build_integrations(settings), owns_database=owns_database)
