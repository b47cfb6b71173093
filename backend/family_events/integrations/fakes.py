"""Deterministic in-process fakes for every external collaborator.

Used by the test suite and by local runs with ``use_fake_integrations=True``.
All fakes return instantly unless a delay is configured, and record what they
were asked to do so callers can assert on it.
"""

import asyncio
import itertools
import socket
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from family_events.core.config import CalendarMember
from family_events.core.exceptions import (
    AutomationUnavailableError,
    MessagingError,
    ReportDeliveryError,
)
from family_events.integrations.browser import FormField
from family_events.integrations.calendars import BusyBlock
from family_events.schemas.events import EventRecord


class FakeSmsGateway:
    """Records outbound messages; fails the next ``failures`` sends when set."""

    def __init__(self, failures: int = 0, error: Exception | None = None, delay: float = 0.0):
        self.sent: list[tuple[str, str, str]] = []
        self.failures = failures
        self.error = error
        self.delay = delay
        self._ids = itertools.count(1)

    async def send(self, destination: str, text: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise self.error or MessagingError("Fake SMS gateway failure")
        sid = f"SM{next(self._ids):08d}"
        self.sent.append((destination, text, sid))
        return sid

    def messages_to(self, destination: str) -> list[str]:
        return [text for dest, text, _ in self.sent if dest == destination]


class FakeCalendarProvider:
    """Per-member busy blocks, failures and delays."""

    def __init__(
        self,
        busy: dict[str, list[BusyBlock]] | None = None,
        failures: dict[str, Exception] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.busy = busy or {}
        self.failures = failures or {}
        self.delays = delays or {}
        self.created: list[tuple[str, int]] = []
        self.queries: list[tuple[str, datetime, datetime]] = []

    async def list_busy(self, member: CalendarMember, start: datetime, end: datetime) -> list[BusyBlock]:
        self.queries.append((member.member_id, start, end))
        if member.member_id in self.delays:
            await asyncio.sleep(self.delays[member.member_id])
        if member.member_id in self.failures:
            raise self.failures[member.member_id]
        return [b for b in self.busy.get(member.member_id, []) if b.overlaps(start, end)]

    async def create_event(self, member: CalendarMember, event: EventRecord) -> str:
        if member.member_id in self.failures:
            raise self.failures[member.member_id]
        self.created.append((member.member_id, event.id))
        return f"cal-{member.member_id}-{event.id}"


class FakeResolver:
    """Resolves every host except those listed (or any ``.invalid`` host)."""

    def __init__(self, unresolvable: set[str] | None = None, delay: float = 0.0):
        self.unresolvable = unresolvable or set()
        self.delay = delay
        self.lookups: list[str] = []

    async def resolve(self, host: str) -> list[str]:
        self.lookups.append(host)
        if self.delay:
            await asyncio.sleep(self.delay)
        if host in self.unresolvable or host.endswith(".invalid"):
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return ["203.0.113.10"]


DEFAULT_FORM = [
    FormField(selector="#first_name", name="first_name", element_id="first_name", label="First name", required=True),
    FormField(selector="#last_name", name="last_name", element_id="last_name", label="Last name", required=True),
    FormField(selector="#email", name="email", element_id="email", field_type="email", label="Email", required=True),
    FormField(selector="#phone", name="phone", element_id="phone", field_type="tel", label="Phone"),
    FormField(selector="#child_name", name="child_name", element_id="child_name", label="Child's name"),
    FormField(selector="#child_age", name="child_age", element_id="child_age", field_type="number", label="Child's age"),
    FormField(selector="#num_children", name="num_children", element_id="num_children", field_type="number", label="Number of children"),
]

PAYMENT_FORM = [
    *DEFAULT_FORM[:3],
    FormField(selector="#card_number", name="card_number", element_id="card_number", label="Card number", required=True),
]


class FakeBrowserPage:
    def __init__(self, engine: "FakeBrowserEngine"):
        self._engine = engine
        self.url: str | None = None
        self.filled: dict[str, str] = {}
        self.submitted = False

    async def open(self, url: str) -> None:
        self.url = url
        scenario = self._engine.scenario
        if scenario == "page_error":
            raise RuntimeError(f"net::ERR_CONNECTION_REFUSED at {url}")
        if scenario == "slow":
            await asyncio.sleep(self._engine.delay)

    async def body_text(self) -> str:
        scenario = self._engine.scenario
        if self.submitted:
            if scenario == "unconfirmed":
                return "Please correct the errors below."
            return f"Thank you! Your registration is confirmed. Confirmation number: {self._engine.confirmation_number}"
        if scenario == "payment_page":
            return "Complete your purchase. Total: $35.00. Enter your credit card below."
        return "Family Story Time - Register below. Free event for ages 2-5."

    async def count(self, selector: str) -> int:
        if self._engine.scenario == "payment_page" and ("card" in selector or "payment" in selector):
            return 1
        return 0

    async def form_fields(self) -> list[FormField]:
        scenario = self._engine.scenario
        if scenario == "no_form":
            return []
        if scenario == "sensitive_form":
            return list(PAYMENT_FORM)
        return list(self._engine.fields)

    async def fill(self, field: FormField, value: str) -> None:
        self.filled[field.selector] = value

    async def submit(self) -> None:
        self.submitted = True


class FakeBrowserEngine:
    """Scenario-driven browser double.

    Scenarios:
        success         form found, filled, confirmation page with a number
        payment_page    page asks for card details
        sensitive_form  form itself contains a card-number field
        no_form         page has no form controls
        unconfirmed     submit lands on a page without success wording
        page_error      navigation fails
        launch_failure  engine cannot start
        slow            navigation takes ``delay`` seconds
    """

    VALID_SCENARIOS = {
        "success",
        "payment_page",
        "sensitive_form",
        "no_form",
        "unconfirmed",
        "page_error",
        "launch_failure",
        "slow",
    }

    def __init__(
        self,
        scenario: str = "success",
        delay: float = 0.0,
        confirmation_number: str = "CONF-12345",
        fields: list[FormField] | None = None,
    ):
        if scenario not in self.VALID_SCENARIOS:
            raise ValueError(f"Unknown scenario: {scenario}. Valid scenarios: {self.VALID_SCENARIOS}")
        self.scenario = scenario
        self.delay = delay
        self.confirmation_number = confirmation_number
        self.fields = fields if fields is not None else list(DEFAULT_FORM)
        self.pages: list[FakeBrowserPage] = []
        self.active_sessions = 0
        self.max_active_sessions = 0

    @asynccontextmanager
    async def session(self) -> AsyncIterator[FakeBrowserPage]:
        if self.scenario == "launch_failure":
            raise AutomationUnavailableError("Chromium launch failed: executable not found")
        self.active_sessions += 1
        self.max_active_sessions = max(self.max_active_sessions, self.active_sessions)
        page = FakeBrowserPage(self)
        self.pages.append(page)
        try:
            # Yield control so concurrent sessions overlap the way real ones do
            await asyncio.sleep(0)
            yield page
        finally:
            self.active_sessions -= 1


class FakeReportSink:
    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.delivered: list[tuple[str, str, list[str]]] = []

    async def deliver(self, subject: str, body: str, recipients: list[str]) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ReportDeliveryError("Fake report sink failure")
        self.delivered.append((subject, body, list(recipients)))
        return f"report-{len(self.delivered)}"
