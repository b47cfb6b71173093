"""Tests for SmsApprovalManager: dispatch, daily cap and reply handling."""

import asyncio
from datetime import timedelta

import pytest

from family_events.core.exceptions import (
    ApprovalDispatchError,
    DailyApprovalLimitError,
    InvalidTransitionError,
)
from family_events.domain.lifecycle import ApprovalStatus, EventStatus
from family_events.integrations.fakes import FakeSmsGateway
from family_events.services.approval_service import NO_PENDING_MESSAGE, SmsApprovalManager

pytestmark = pytest.mark.unit

PHONE = "+15555550100"


@pytest.fixture
def manager(store, sms) -> SmsApprovalManager:
    return SmsApprovalManager(store, sms, approval_phone=PHONE, daily_limit=3, sms_timeout=0.5)


async def _propose(manager, store, make_event, now, **overrides):
    event = await store.add_event(make_event(**overrides), now=now)
    approval_id = await manager.send_event_for_approval(event, now=now)
    return event, approval_id


async def test_send_moves_event_to_pending_and_texts_parent(manager, store, sms, make_event, now):
    event, approval_id = await _propose(manager, store, make_event, now)

    assert (await store.get_event(event.id)).status == EventStatus.PENDING
    approval = await store.get_approval(approval_id)
    assert approval.message_sid == sms.sent[0][2]
    assert sms.sent[0][0] == PHONE
    assert event.title in sms.sent[0][1]


async def test_daily_cap_is_enforced(manager, store, sms, make_event, now):
    for _ in range(3):
        await _propose(manager, store, make_event, now)
    fourth = await store.add_event(make_event(), now=now)

    with pytest.raises(DailyApprovalLimitError) as exc_info:
        await manager.send_event_for_approval(fourth, now=now)

    assert exc_info.value.limit == 3
    assert len(sms.sent) == 3
    assert (await store.get_event(fourth.id)).status == EventStatus.DISCOVERED


async def test_daily_cap_resets_at_midnight_utc(manager, store, make_event, now):
    for _ in range(3):
        await _propose(manager, store, make_event, now)

    tomorrow = now + timedelta(days=1)
    event = await store.add_event(make_event(), now=tomorrow)
    assert await manager.send_event_for_approval(event, now=tomorrow)


async def test_concurrent_sends_respect_the_cap(manager, store, sms, make_event, now):
    events = [await store.add_event(make_event(), now=now) for _ in range(6)]

    results = await asyncio.gather(
        *(manager.send_event_for_approval(e, now=now) for e in events), return_exceptions=True
    )

    assert sum(isinstance(r, int) for r in results) == 3
    assert sum(isinstance(r, DailyApprovalLimitError) for r in results) == 3
    assert len(sms.sent) == 3


async def test_failed_sms_leaves_nothing_behind(store, make_event, now):
    sms = FakeSmsGateway(failures=1)
    manager = SmsApprovalManager(store, sms, approval_phone=PHONE)
    event = await store.add_event(make_event(), now=now)

    with pytest.raises(ApprovalDispatchError):
        await manager.send_event_for_approval(event, now=now)

    assert (await store.get_event(event.id)).status == EventStatus.DISCOVERED
    assert await manager.approvals_sent_today(now) == 0

    # Retry succeeds and is the only request
    approval_id = await manager.send_event_for_approval(event, now=now)
    assert [a.id for a in await store.find_pending_approvals(PHONE, now - timedelta(hours=1))] == [approval_id]


async def test_sms_timeout_is_a_dispatch_error(store, make_event, now):
    manager = SmsApprovalManager(store, FakeSmsGateway(delay=1.0), approval_phone=PHONE, sms_timeout=0.05)
    event = await store.add_event(make_event(), now=now)

    with pytest.raises(ApprovalDispatchError):
        await manager.send_event_for_approval(event, now=now)
    assert (await store.get_event(event.id)).status == EventStatus.DISCOVERED


async def test_missing_approval_phone_is_a_dispatch_error(store, sms, make_event, now):
    manager = SmsApprovalManager(store, sms, approval_phone="")
    event = await store.add_event(make_event(), now=now)

    with pytest.raises(ApprovalDispatchError):
        await manager.send_event_for_approval(event, now=now)
    assert sms.sent == []


async def test_already_pending_event_cannot_be_resent(manager, store, make_event, now):
    event, _ = await _propose(manager, store, make_event, now)
    pending = await store.get_event(event.id)

    with pytest.raises(InvalidTransitionError):
        await manager.send_event_for_approval(pending, now=now)


async def test_yes_approves_and_confirms(manager, store, sms, make_event, now):
    event, approval_id = await _propose(manager, store, make_event, now)

    decision = await manager.handle_incoming_response(PHONE, "YES", message_id="SMin1", now=now)

    assert decision.approved
    assert decision.approval_id == approval_id
    assert decision.event_id == event.id
    assert not decision.requires_payment
    assert (await store.get_event(event.id)).status == EventStatus.APPROVED
    assert "booked automatically" in sms.messages_to(PHONE)[-1]


async def test_no_rejects(manager, store, make_event, now):
    event, approval_id = await _propose(manager, store, make_event, now)

    decision = await manager.handle_incoming_response(PHONE, "not interested", now=now)

    assert not decision.approved
    assert (await store.get_event(event.id)).status == EventStatus.REJECTED
    assert (await store.get_approval(approval_id)).response_text == "not interested"


async def test_paid_event_approval_flags_payment(manager, store, make_event, now):
    await _propose(manager, store, make_event, now, cost=30)

    decision = await manager.handle_incoming_response(PHONE, "yes", now=now)

    assert decision.requires_payment


async def test_yes_then_no_keeps_first_decision(manager, store, sms, make_event, now):
    event, approval_id = await _propose(manager, store, make_event, now)

    first = await manager.handle_incoming_response(PHONE, "yes", now=now)
    second = await manager.handle_incoming_response(PHONE, "no", now=now + timedelta(minutes=1))

    assert first.approved
    assert second is None
    assert (await store.get_event(event.id)).status == EventStatus.APPROVED
    assert (await store.get_approval(approval_id)).status == ApprovalStatus.APPROVED


async def test_concurrent_yes_and_no_resolve_once(manager, store, make_event, now):
    event, approval_id = await _propose(manager, store, make_event, now)

    results = await asyncio.gather(
        manager.handle_incoming_response(PHONE, "yes", message_id="a", now=now),
        manager.handle_incoming_response(PHONE, "no", message_id="b", now=now),
    )

    decisions = [r for r in results if r is not None]
    assert len(decisions) == 1
    stored = await store.get_event(event.id)
    assert stored.status == (EventStatus.APPROVED if decisions[0].approved else EventStatus.REJECTED)


async def test_reply_resolves_most_recent_request(manager, store, make_event, now):
    older, _ = await _propose(manager, store, make_event, now - timedelta(hours=2))
    newer, _ = await _propose(manager, store, make_event, now - timedelta(hours=1))

    decision = await manager.handle_incoming_response(PHONE, "yes", now=now)

    assert decision.event_id == newer.id
    assert (await store.get_event(older.id)).status == EventStatus.PENDING


async def test_expired_request_is_not_resolved(manager, store, sms, make_event, now):
    event, _ = await _propose(manager, store, make_event, now - timedelta(hours=30))

    assert await manager.handle_incoming_response(PHONE, "yes", now=now) is None
    assert (await store.get_event(event.id)).status == EventStatus.PENDING
    assert sms.messages_to(PHONE)[-1] == NO_PENDING_MESSAGE


async def test_orphan_reply_gets_notice(manager, sms, now):
    assert await manager.handle_incoming_response(PHONE, "yes", now=now) is None
    assert sms.messages_to(PHONE) == [NO_PENDING_MESSAGE]


async def test_unclear_reply_asks_again(manager, store, sms, make_event, now):
    event, _ = await _propose(manager, store, make_event, now)

    assert await manager.handle_incoming_response(PHONE, "what is this?", now=now) is None

    assert (await store.get_event(event.id)).status == EventStatus.PENDING
    assert "Please reply YES" in sms.messages_to(PHONE)[-1]


@pytest.mark.parametrize("body", [None, "", "   "])
async def test_empty_reply_changes_nothing(manager, store, sms, make_event, now, body):
    event, _ = await _propose(manager, store, make_event, now)
    sent_before = len(sms.sent)

    assert await manager.handle_incoming_response(PHONE, body, now=now) is None
    assert len(sms.sent) == sent_before
    assert (await store.get_event(event.id)).status == EventStatus.PENDING


async def test_other_numbers_cannot_resolve(manager, store, make_event, now):
    event, _ = await _propose(manager, store, make_event, now)

    assert await manager.handle_incoming_response("+15555559999", "yes", now=now) is None
    assert (await store.get_event(event.id)).status == EventStatus.PENDING


async def test_confirmation_failure_does_not_undo_decision(store, make_event, now):
    sms = FakeSmsGateway()
    manager = SmsApprovalManager(store, sms, approval_phone=PHONE)
    event, _ = await _propose(manager, store, make_event, now)
    sms.failures = 1

    decision = await manager.handle_incoming_response(PHONE, "yes", now=now)

    assert decision.approved
    assert (await store.get_event(event.id)).status == EventStatus.APPROVED


async def test_slow_send_does_not_hold_up_other_replies(store, make_event, now):
    manager = SmsApprovalManager(store, FakeSmsGateway(delay=0.5), approval_phone=PHONE, sms_timeout=2.0)
    waiting = await store.add_event(make_event(), now=now)
    unrelated = await store.add_event(make_event(), now=now)

    send = asyncio.create_task(manager.send_event_for_approval(waiting, now=now))
    await asyncio.sleep(0.05)

    loop = asyncio.get_running_loop()
    started = loop.time()
    assert (await store.get_event(unrelated.id)).status == EventStatus.DISCOVERED
    assert loop.time() - started < 0.25

    await send
    assert (await store.get_event(waiting.id)).status == EventStatus.PENDING
