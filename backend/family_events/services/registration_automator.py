"""RegistrationAutomator — unattended registration on third-party event sites.

Public API:
    register_for_event(event) -> RegistrationResult

Never raises to the caller. Every way automation can fall short maps to a
``manual_required`` result with a ``failure_kind``:

    invalid_event          event record fails validation
    invalid_url            missing or non-http(s) registration URL
    payment_required       paid event, payment page, or sensitive form fields
    unresolvable_host      registration host does not resolve
    page_load_failed       navigation failed
    form_not_found         no fillable form on the page
    form_incomplete        required fields we cannot answer
    unconfirmed            submitted but no confirmation shown
    timeout                whole browser session exceeded its budget
    automation_unavailable browser engine could not start
    automation_error       anything else

Paid events are never auto-registered. Browser sessions are bounded by a
semaphore (capacity only: no state is shared between sessions). Callers that
must not start a clock before a session is free (the orchestrator claims its
registration lease inside the slot) acquire ``session_slot()`` themselves and
pass ``slot_held=True``.
"""

import asyncio
import contextlib
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from urllib.parse import urlsplit

import structlog
from pydantic import ValidationError

from family_events.core.exceptions import AutomationUnavailableError
from family_events.domain.registration_forms import (
    PAYMENT_SELECTORS,
    build_registrant,
    extract_confirmation_number,
    find_payment_signals,
    looks_confirmed,
    plan_form_fill,
)
from family_events.domain.scoring import to_utc_datetime
from family_events.integrations.browser import BrowserEngine, BrowserPage
from family_events.integrations.resolver import HostResolver
from family_events.schemas.events import EventRecord

logger = structlog.get_logger(__name__)


class RegistrationStatus(StrEnum):
    REGISTERED = "registered"
    MANUAL_REQUIRED = "manual_required"


class FailureKind(StrEnum):
    INVALID_EVENT = "invalid_event"
    INVALID_URL = "invalid_url"
    PAYMENT_REQUIRED = "payment_required"
    UNRESOLVABLE_HOST = "unresolvable_host"
    PAGE_LOAD_FAILED = "page_load_failed"
    FORM_NOT_FOUND = "form_not_found"
    FORM_INCOMPLETE = "form_incomplete"
    UNCONFIRMED = "unconfirmed"
    TIMEOUT = "timeout"
    AUTOMATION_UNAVAILABLE = "automation_unavailable"
    AUTOMATION_ERROR = "automation_error"


@dataclass(frozen=True)
class RegistrationResult:
    outcome: RegistrationStatus
    message: str
    confirmation_number: str | None = None
    failure_kind: FailureKind | None = None
    event_id: int | None = None

    @property
    def success(self) -> bool:
        return self.outcome == RegistrationStatus.REGISTERED

    @property
    def requires_manual_action(self) -> bool:
        return self.outcome == RegistrationStatus.MANUAL_REQUIRED

    @property
    def payment_required(self) -> bool:
        return self.failure_kind == FailureKind.PAYMENT_REQUIRED

    @classmethod
    def registered(cls, event_id: int, message: str, confirmation_number: str | None) -> "RegistrationResult":
        return cls(
            outcome=RegistrationStatus.REGISTERED,
            message=message,
            confirmation_number=confirmation_number,
            event_id=event_id,
        )

    @classmethod
    def manual(cls, kind: FailureKind, message: str, event_id: int | None = None) -> "RegistrationResult":
        return cls(
            outcome=RegistrationStatus.MANUAL_REQUIRED,
            message=message,
            failure_kind=kind,
            event_id=event_id,
        )


def coerce_event(event: Any) -> EventRecord:
    """Validate an event for registration. Raises ValueError naming the bad field."""
    if isinstance(event, EventRecord):
        record = event
    elif isinstance(event, Mapping):
        event_id = event.get("id")
        if not isinstance(event_id, int) or isinstance(event_id, bool):
            raise ValueError(f"id must be an integer, got {event_id!r}")
        title = event.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValueError("title is missing")
        start = to_utc_datetime(event.get("start_time", event.get("date")))
        cost = event.get("cost")
        if isinstance(cost, bool) or not isinstance(cost, (int, float)) or not math.isfinite(cost):
            raise ValueError(f"cost must be a number, got {cost!r}")
        try:
            record = EventRecord.model_validate({**event, "start_time": start})
        except ValidationError as exc:
            raise ValueError(str(exc).splitlines()[0]) from None
    else:
        raise ValueError(f"unsupported event type {type(event).__name__}")

    if not record.title.strip():
        raise ValueError("title is missing")
    if record.cost < 0:
        raise ValueError(f"cost is negative: {record.cost}")
    return record


class RegistrationAutomator:
    def __init__(
        self,
        engine: BrowserEngine,
        resolver: HostResolver,
        parents: Sequence,
        children: Sequence,
        home_zip: str = "",
        emergency_phone: str = "",
        max_sessions: int = 3,
        timeout_seconds: float = 90.0,
        dns_timeout_seconds: float = 5.0,
    ):
        if engine is None or resolver is None:
            raise TypeError("RegistrationAutomator requires a browser engine and a host resolver")
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.engine = engine
        self.resolver = resolver
        self.parents = list(parents)
        self.children = list(children)
        self.home_zip = home_zip
        self.emergency_phone = emergency_phone
        self.timeout_seconds = timeout_seconds
        self.dns_timeout_seconds = dns_timeout_seconds
        self._slots = asyncio.Semaphore(max_sessions)

    @property
    def max_runtime_seconds(self) -> float:
        """Upper bound on one registration once a browser slot is held."""
        return self.timeout_seconds + self.dns_timeout_seconds

    def session_slot(self) -> asyncio.Semaphore:
        return self._slots

    async def register_for_event(self, event: Any, slot_held: bool = False) -> RegistrationResult:
        try:
            record = coerce_event(event)
        except ValueError as exc:
            raw_id = event.get("id") if isinstance(event, Mapping) else getattr(event, "id", None)
            logger.warning("registration_invalid_event", event_id=raw_id, error=str(exc))
            return RegistrationResult.manual(FailureKind.INVALID_EVENT, f"Invalid event data: {exc}")

        log = logger.bind(event_id=record.id)

        url = (record.registration_url or "").strip()
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            log.info("registration_invalid_url", url=url)
            return RegistrationResult.manual(
                FailureKind.INVALID_URL, f"No usable registration URL: {url!r}", record.id
            )

        if record.cost > 0:
            log.info("registration_payment_required", cost=record.cost)
            return RegistrationResult.manual(
                FailureKind.PAYMENT_REQUIRED,
                f"Event costs ${record.cost:.2f}; payment must be completed manually",
                record.id,
            )

        try:
            await asyncio.wait_for(self.resolver.resolve(parts.hostname), timeout=self.dns_timeout_seconds)
        except (OSError, ValueError, asyncio.TimeoutError) as exc:
            log.warning("registration_host_unresolvable", host=parts.hostname, error_type=type(exc).__name__)
            return RegistrationResult.manual(
                FailureKind.UNRESOLVABLE_HOST, f"Host {parts.hostname} could not be resolved", record.id
            )

        slot = contextlib.nullcontext() if slot_held else self._slots
        try:
            async with slot:
                result = await asyncio.wait_for(self._drive_browser(record, url), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            log.warning("registration_timeout", timeout_seconds=self.timeout_seconds)
            return RegistrationResult.manual(
                FailureKind.TIMEOUT, f"Registration timed out after {self.timeout_seconds:.0f}s", record.id
            )
        except AutomationUnavailableError as exc:
            log.warning("registration_automation_unavailable", error=str(exc))
            return RegistrationResult.manual(
                FailureKind.AUTOMATION_UNAVAILABLE, f"Browser automation unavailable: {exc}", record.id
            )
        except Exception as exc:
            log.warning("registration_automation_error", error=str(exc), error_type=type(exc).__name__)
            return RegistrationResult.manual(
                FailureKind.AUTOMATION_ERROR, f"Automation error: {type(exc).__name__}: {exc}", record.id
            )

        log.info(
            "registration_attempt_finished",
            outcome=result.outcome.value,
            failure_kind=result.failure_kind.value if result.failure_kind else None,
        )
        return result

    async def _drive_browser(self, record: EventRecord, url: str) -> RegistrationResult:
        async with self.engine.session() as page:
            try:
                await page.open(url)
            except Exception as exc:
                return RegistrationResult.manual(
                    FailureKind.PAGE_LOAD_FAILED, f"Could not load registration page: {exc}", record.id
                )

            signals = await self._payment_signals(page)
            if signals:
                return RegistrationResult.manual(
                    FailureKind.PAYMENT_REQUIRED,
                    f"Registration page asks for payment ({', '.join(signals[:3])})",
                    record.id,
                )

            fields = await page.form_fields()
            if not fields:
                return RegistrationResult.manual(FailureKind.FORM_NOT_FOUND, "No registration form found", record.id)

            try:
                registrant = build_registrant(
                    self.parents,
                    self.children,
                    record.start_time.date(),
                    age_min=record.age_range.min if record.age_range else None,
                    age_max=record.age_range.max if record.age_range else None,
                    zip_code=self.home_zip,
                    emergency_phone=self.emergency_phone,
                )
            except ValueError as exc:
                return RegistrationResult.manual(FailureKind.FORM_INCOMPLETE, str(exc), record.id)

            plan = plan_form_fill(fields, registrant)
            if plan.refused:
                names = ", ".join(f.name or f.selector for f in plan.refused)
                return RegistrationResult.manual(
                    FailureKind.PAYMENT_REQUIRED, f"Refused to fill sensitive fields: {names}", record.id
                )
            if not plan.assignments:
                return RegistrationResult.manual(
                    FailureKind.FORM_NOT_FOUND, "No recognizable fields in registration form", record.id
                )
            if plan.missing_required:
                names = ", ".join(f.label or f.name or f.selector for f in plan.missing_required)
                return RegistrationResult.manual(
                    FailureKind.FORM_INCOMPLETE, f"Cannot answer required fields: {names}", record.id
                )

            for form_field, value in plan.assignments:
                await page.fill(form_field, value)
            await page.submit()

            confirmation_text = await page.body_text()
            if not looks_confirmed(confirmation_text):
                return RegistrationResult.manual(
                    FailureKind.UNCONFIRMED, "Form submitted but no confirmation was shown", record.id
                )
            number = extract_confirmation_number(confirmation_text)
            return RegistrationResult.registered(
                record.id,
                f"Registered for {record.title}",
                confirmation_number=number,
            )

    async def _payment_signals(self, page: BrowserPage) -> list[str]:
        signals = find_payment_signals(await page.body_text())
        for selector in PAYMENT_SELECTORS:
            if await page.count(selector):
                signals.append(f"element {selector}")
        return signals
