"""Tests for RegistrationOrchestrator: proposal, batch registration and leases.

Runs on the in-memory store with every integration faked.
"""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from family_events.core.exceptions import PersistenceError
from family_events.domain.lifecycle import EventStatus
from family_events.integrations.calendars import BusyBlock
from family_events.integrations.fakes import FakeBrowserEngine, FakeResolver
from family_events.schemas.events import AgeRange
from family_events.schemas.pipeline import OutcomeStatus
from family_events.services import registration_orchestrator as orchestrator_module
from family_events.services.registration_automator import RegistrationAutomator
from family_events.services.registration_orchestrator import RegistrationOrchestrator

pytestmark = pytest.mark.unit

PHONE = "+15555550100"


async def _approved(services, make_event, now, **overrides):
    store = services.store
    event = await store.add_event(make_event(**overrides), now=now)
    async with store.begin_approval(event.id, PHONE, "Reply YES", now=now) as handle:
        handle.message_sid = "SMtest"
    await store.resolve_approval(handle.approval_id, approved=True, response_text="yes", now=now)
    return event


def _orchestrator(services, **overrides) -> RegistrationOrchestrator:
    kwargs = {
        "store": services.store,
        "automator": services.automator,
        "approvals": services.approvals,
        "scoring": services.scoring,
        "conflict_checker": services.conflict_checker,
        "sms": services.integrations.sms,
        "calendar": services.integrations.calendar,
        "calendar_members": services.settings.calendar_members,
        "reporting": services.reporting,
        "notify_phone": PHONE,
    }
    kwargs.update(overrides)
    return RegistrationOrchestrator(**kwargs)


class _LeaseThief:
    """Automator double that lets another worker take the lease mid-registration."""

    def __init__(self, store, inner):
        self.store = store
        self.inner = inner
        self.max_runtime_seconds = inner.max_runtime_seconds
        self.session_slot = inner.session_slot

    async def register_for_event(self, event, slot_held=False):
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        assert await self.store.claim_registration(event.id, "intruder", 600, now=later)
        return await self.inner.register_for_event(event, slot_held=slot_held)


class _ExplodingAutomator:
    max_runtime_seconds = 1.0

    def __init__(self):
        self._slot = asyncio.Semaphore(1)

    def session_slot(self):
        return self._slot

    async def register_for_event(self, event, slot_held=False):
        raise RuntimeError("browser crashed")


# ── Single-event registration ────────────────────────────────────────────


async def test_free_event_is_registered_with_side_effects(services, make_event, now):
    event = await _approved(services, make_event, now)

    outcome = await services.orchestrator.process_auto_registration(event.id)

    assert outcome.status == OutcomeStatus.REGISTERED
    assert outcome.confirmation_number == "CONF-12345"
    stored = await services.store.get_event(event.id)
    assert stored.status == EventStatus.REGISTERED
    assert stored.confirmation_number == "CONF-12345"
    # Only the blocking member gets a calendar entry
    assert services.integrations.calendar.created == [("joyce", event.id)]
    assert "Registered for" in services.integrations.sms.messages_to(PHONE)[-1]


async def test_paid_event_requires_manual_registration(services, make_event, now):
    event = await _approved(services, make_event, now, cost=40)

    outcome = await services.orchestrator.process_auto_registration(event.id)

    assert outcome.status == OutcomeStatus.MANUAL_REQUIRED
    assert outcome.failure_kind == "payment_required"
    assert (await services.store.get_event(event.id)).status == EventStatus.MANUAL_REQUIRED
    assert services.integrations.calendar.created == []
    notice = services.integrations.sms.messages_to(PHONE)[-1]
    assert event.registration_url in notice
    attempt = (await services.store.list_registration_attempts(event.id))[0]
    assert attempt.payment_required


async def test_approval_id_is_recorded_on_the_attempt(services, make_event, now):
    event = await _approved(services, make_event, now)

    await services.orchestrator.process_auto_registration(event.id, approval_id=77)

    assert (await services.store.list_registration_attempts(event.id))[0].approval_id == 77


async def test_unapproved_or_missing_event_is_skipped(services, make_event, now):
    event = await services.store.add_event(make_event(), now=now)

    assert (await services.orchestrator.process_auto_registration(event.id)).status == OutcomeStatus.SKIPPED
    assert (await services.orchestrator.process_auto_registration(4242)).status == OutcomeStatus.SKIPPED
    assert services.integrations.browser.pages == []


async def test_event_leased_elsewhere_is_skipped(services, make_event, now):
    event = await _approved(services, make_event, now)
    assert await services.store.claim_registration(event.id, "other-worker", ttl_seconds=600)

    outcome = await services.orchestrator.process_auto_registration(event.id)

    assert outcome.status == OutcomeStatus.SKIPPED
    assert (await services.store.get_event(event.id)).status == EventStatus.APPROVED


async def test_lost_lease_discards_the_result(services, make_event, now):
    event = await _approved(services, make_event, now)
    orchestrator = _orchestrator(services, automator=_LeaseThief(services.store, services.automator))

    outcome = await orchestrator.process_auto_registration(event.id)

    assert outcome.status == OutcomeStatus.CONFLICT
    assert (await services.store.get_event(event.id)).status == EventStatus.APPROVED
    assert await services.store.list_registration_attempts() == []
    assert services.integrations.sms.sent == []


async def test_unexpected_error_releases_the_lease(services, make_event, now):
    event = await _approved(services, make_event, now)
    orchestrator = _orchestrator(services, automator=_ExplodingAutomator())

    outcome = await orchestrator.process_auto_registration(event.id)

    assert outcome.status == OutcomeStatus.ERROR
    assert "browser crashed" in outcome.message
    assert await services.store.claim_registration(event.id, "retry-worker", ttl_seconds=600)


async def test_failed_side_effects_do_not_change_the_outcome(services, make_event, now):
    event = await _approved(services, make_event, now)
    services.integrations.sms.failures = 1
    services.integrations.calendar.failures["joyce"] = RuntimeError("calendar down")

    outcome = await services.orchestrator.process_auto_registration(event.id)

    assert outcome.status == OutcomeStatus.REGISTERED
    assert (await services.store.get_event(event.id)).status == EventStatus.REGISTERED


# ── Batch runs ───────────────────────────────────────────────────────────


async def test_batch_run_handles_a_thousand_events(services, make_event, now, monkeypatch):
    mock_logger = MagicMock()
    monkeypatch.setattr(orchestrator_module, "logger", mock_logger)
    events = [await _approved(services, make_event, now) for _ in range(1000)]

    outcomes = await services.orchestrator.process_approved_events()

    assert len(outcomes) == 1000
    assert {o.event_id for o in outcomes} == {e.id for e in events}
    assert all(o.status == OutcomeStatus.REGISTERED for o in outcomes)
    assert services.integrations.browser.max_active_sessions <= services.settings.max_browser_sessions

    summary_calls = [c for c in mock_logger.info.call_args_list if c.args[0] == "registration_run_summary"]
    assert len(summary_calls) == 1
    assert summary_calls[0].kwargs["total"] == 1000
    assert summary_calls[0].kwargs["registered"] == 1000

    # One run report for the whole batch
    assert len(services.integrations.report_sink.delivered) == 1


async def test_one_bad_event_does_not_abort_the_batch(services, make_event, now):
    good = await _approved(services, make_event, now)
    bad = await _approved(services, make_event, now, registration_url="https://broken.invalid/x")
    paid = await _approved(services, make_event, now, cost=10)

    outcomes = {o.event_id: o for o in await services.orchestrator.process_approved_events()}

    assert outcomes[good.id].status == OutcomeStatus.REGISTERED
    assert outcomes[bad.id].failure_kind == "unresolvable_host"
    assert outcomes[paid.id].status == OutcomeStatus.MANUAL_REQUIRED


async def test_concurrent_runs_register_each_event_once(services, make_event, now):
    events = [await _approved(services, make_event, now) for _ in range(10)]

    first, second = await asyncio.gather(
        services.orchestrator.process_approved_events(),
        services.orchestrator.process_approved_events(),
    )

    registered = [o for o in first + second if o.status == OutcomeStatus.REGISTERED]
    assert sorted(o.event_id for o in registered) == sorted(e.id for e in events)
    for event in events:
        assert len(await services.store.list_registration_attempts(event.id)) == 1


async def test_lease_is_not_spent_waiting_for_a_browser_slot(services, make_event, now, parents, children):
    # One browser slot and a short lease: the last event of the first run
    # waits longer for the slot than the lease lasts.
    engine = FakeBrowserEngine("slow", delay=0.5)
    automator = RegistrationAutomator(
        engine,
        FakeResolver(),
        parents,
        children,
        max_sessions=1,
        timeout_seconds=1.0,
        dns_timeout_seconds=0.1,
    )
    orchestrator = _orchestrator(services, automator=automator, lease_seconds=2)
    events = [await _approved(services, make_event, now) for _ in range(5)]

    async def late_run():
        await asyncio.sleep(2.2)
        return await orchestrator.process_approved_events()

    first, second = await asyncio.gather(orchestrator.process_approved_events(), late_run())

    assert all(o.status == OutcomeStatus.REGISTERED for o in first)
    assert all(o.status == OutcomeStatus.SKIPPED for o in second)
    opened = Counter(page.url for page in engine.pages)
    assert sorted(opened.values()) == [1] * len(events)
    for event in events:
        assert len(await services.store.list_registration_attempts(event.id)) == 1


async def test_storage_failure_returns_no_outcomes(services, monkeypatch):
    monkeypatch.setattr(services.store, "list_events", AsyncMock(side_effect=PersistenceError("db down")))

    assert await services.orchestrator.process_approved_events() == []
    assert services.integrations.report_sink.delivered == []


async def test_empty_run_sends_no_report(services):
    assert await services.orchestrator.process_approved_events() == []
    assert services.integrations.report_sink.delivered == []


# ── Proposal ─────────────────────────────────────────────────────────────


async def test_propose_skips_low_scores_and_calendar_conflicts(services, make_event, now):
    store = services.store
    good = await store.add_event(make_event(title="Story Time"), now=now)
    weak = await store.add_event(
        make_event(
            title="Teen Coding Camp",
            start_time=now - timedelta(days=2),
            cost=200,
            age_range=AgeRange(min=12, max=16),
            social_proof=None,
        ),
        now=now,
    )
    clash_start = now + timedelta(days=10)
    clashing = await store.add_event(make_event(title="Music Class", start_time=clash_start), now=now)
    services.integrations.calendar.busy["joyce"] = [
        BusyBlock(clash_start, clash_start + timedelta(hours=2), "Work trip")
    ]

    summary = await services.orchestrator.propose_events(now=now)

    assert summary.considered == 3
    assert summary.proposed == [good.id]
    assert summary.below_threshold == 1
    assert summary.calendar_conflicts == 1
    assert (await store.get_event(good.id)).status == EventStatus.PENDING
    assert (await store.get_event(weak.id)).status == EventStatus.DISCOVERED
    assert (await store.get_event(clashing.id)).status == EventStatus.DISCOVERED
    assert len(await store.list_score_history(weak.id)) == 1
    assert "Story Time" in services.integrations.sms.messages_to(PHONE)[0]


async def test_propose_stops_at_the_daily_limit(services, make_event, now):
    for _ in range(5):
        await services.store.add_event(make_event(), now=now)

    summary = await services.orchestrator.propose_events(now=now)

    assert len(summary.proposed) == services.settings.daily_approval_limit
    assert summary.daily_limit_reached
    assert len(await services.store.list_events(EventStatus.DISCOVERED)) == 2


async def test_propose_respects_limit_and_rank_order(services, make_event, now):
    await services.store.add_event(make_event(title="Pricey", cost=60), now=now)
    free = await services.store.add_event(make_event(title="Free"), now=now)

    summary = await services.orchestrator.propose_events(limit=1, now=now)

    assert summary.proposed == [free.id]


async def test_propose_counts_failed_sends(services, make_event, now):
    await services.store.add_event(make_event(), now=now)
    services.integrations.sms.failures = 1

    summary = await services.orchestrator.propose_events(now=now)

    assert summary.failed == 1
    assert summary.proposed == []


def test_constructor_validation(services):
    with pytest.raises(TypeError):
        _orchestrator(services, automator=None)
    with pytest.raises(ValueError):
        _orchestrator(services, batch_size=0)
    with pytest.raises(ValueError, match="lease_seconds"):
        _orchestrator(services, lease_seconds=int(services.automator.max_runtime_seconds))
