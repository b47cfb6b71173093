"""Shared test fixtures for all test groups."""

from datetime import date, datetime, timedelta, timezone

import pytest

from family_events.core.config import CalendarMember, Child, Parent, Settings
from family_events.db.base import create_engine, create_schema, create_session_factory
from family_events.db.memory_store import InMemoryEventStore
from family_events.db.store import SqlEventStore
from family_events.integrations.fakes import (
    FakeBrowserEngine,
    FakeCalendarProvider,
    FakeReportSink,
    FakeResolver,
    FakeSmsGateway,
)
from family_events.schemas.events import AgeRange, Location, NewEvent, SocialProof
from family_events.services.container import Integrations, assemble_services

APPROVAL_PHONE = "+15555550100"

# Monday 2 March 2026, 15:00 UTC
NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def parents() -> list[Parent]:
    return [Parent(first_name="Joyce", last_name="Rivera", email="joyce@example.com", phone="+15555550100")]


@pytest.fixture
def children() -> list[Child]:
    # Ages 2.5 and 4 on NOW
    return [
        Child(name="Ava", birthdate=date(2023, 9, 1)),
        Child(name="Leo", birthdate=date(2022, 3, 1)),
    ]


@pytest.fixture
def calendar_members() -> list[CalendarMember]:
    return [
        CalendarMember(member_id="joyce", name="Joyce", blocking=True),
        CalendarMember(member_id="sam", name="Sam", blocking=False),
    ]


@pytest.fixture
def settings(parents, children, calendar_members, tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="memory://",
        approval_phone_number=APPROVAL_PHONE,
        parents=parents,
        children=children,
        calendar_members=calendar_members,
        home_zip="98101",
        reports_dir=str(tmp_path / "reports"),
        report_recipients=["joyce@example.com"],
        use_fake_integrations=True,
        registration_batch_size=25,
    )


@pytest.fixture
def make_event(now):
    """Factory for candidate events; every field can be overridden."""

    counter = iter(range(1, 1_000_000))

    def _make(**overrides) -> NewEvent:
        n = next(counter)
        fields = {
            "source": "library",
            "external_id": f"evt-{n}",
            "title": f"Toddler Story Time #{n}",
            "description": "Songs, stories and crafts.",
            "start_time": now + timedelta(days=7),
            "duration_minutes": 60,
            "location": Location(name="Central Library", address="1000 4th Ave, Seattle"),
            "cost": 0.0,
            "age_range": AgeRange(min=2, max=5),
            "registration_url": f"https://events.example.org/register/{n}",
            "social_proof": SocialProof(rating=4.6, review_count=120),
        }
        fields.update(overrides)
        return NewEvent(**fields)

    return _make


@pytest.fixture
def memory_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
async def sqlite_store(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'events.db'}", busy_timeout=30.0)
    await create_schema(engine)
    yield SqlEventStore(create_session_factory(engine))
    await engine.dispose()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Runs the test against both EventStore implementations."""
    if request.param == "memory":
        yield InMemoryEventStore()
        return
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'events.db'}", busy_timeout=30.0)
    await create_schema(engine)
    yield SqlEventStore(create_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def sms() -> FakeSmsGateway:
    return FakeSmsGateway()


@pytest.fixture
def calendar() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def browser() -> FakeBrowserEngine:
    return FakeBrowserEngine(scenario="success")


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def report_sink() -> FakeReportSink:
    return FakeReportSink()


@pytest.fixture
def integrations(sms, calendar, browser, resolver, report_sink) -> Integrations:
    return Integrations(sms=sms, calendar=calendar, browser=browser, resolver=resolver, report_sink=report_sink)


@pytest.fixture
def services(settings, memory_store, integrations):
    """Fully wired pipeline on the in-memory store with fake collaborators."""
    return assemble_services(settings, memory_store, integrations)
