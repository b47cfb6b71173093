"""Tests for ScoringService and Settings-driven scorer construction."""

from unittest.mock import AsyncMock

import pytest

from family_events.core.config import Settings
from family_events.core.exceptions import PersistenceError
from family_events.domain.scoring import EventScorer
from family_events.services.scoring_service import ScoringService

pytestmark = pytest.mark.unit


@pytest.fixture
def scoring(store, settings) -> ScoringService:
    return ScoringService(store, EventScorer.from_settings(settings))


async def test_score_and_record_ranks_and_keeps_history(scoring, store, make_event, now):
    paid = await store.add_event(make_event(cost=80), now=now)
    free = await store.add_event(make_event(cost=0), now=now)

    ranked = await scoring.score_and_record([paid, free], now=now)

    assert [s.event.id for s in ranked] == [free.id, paid.id]
    history = await store.list_score_history(free.id)
    assert len(history) == 1
    assert history[0].breakdown["cost"] == 1.0
    assert (await store.get_event(free.id)).score == pytest.approx(ranked[0].result.total_score)


async def test_rescore_appends_history(scoring, store, make_event, now):
    event = await store.add_event(make_event(), now=now)

    await scoring.rescore(event.id, now=now)
    result = await scoring.rescore(event.id, now=now)

    assert result.total_score > 0
    assert len(await store.list_score_history(event.id)) == 2
    assert await scoring.rescore(999, now=now) is None


async def test_history_write_failure_keeps_event_in_ranking(settings, memory_store, make_event, now, monkeypatch):
    event = await memory_store.add_event(make_event(), now=now)
    monkeypatch.setattr(memory_store, "record_score", AsyncMock(side_effect=PersistenceError("disk full")))
    scoring = ScoringService(memory_store, EventScorer.from_settings(settings))

    ranked = await scoring.score_and_record([event], now=now)

    assert [s.event.id for s in ranked] == [event.id]


def test_scorer_reads_weights_and_family_from_settings(settings):
    tuned = settings.model_copy(update={"weight_cost": 0.0, "cost_half_score_usd": 10.0})

    scorer = EventScorer.from_settings(tuned)

    assert scorer.weights.cost == 0.0
    assert scorer.cost_half_score_usd == 10.0
    assert scorer.child_birthdates == [c.birthdate for c in settings.children]


def test_family_profile_from_nested_environment(monkeypatch):
    monkeypatch.setenv("CHILDREN", '[{"name": "Ava", "birthdate": "2023-09-01"}]')
    monkeypatch.setenv("CALENDAR_MEMBERS", '[{"member_id": "joyce", "name": "Joyce", "blocking": false}]')
    monkeypatch.setenv("DAILY_APPROVAL_LIMIT", "5")

    settings = Settings(_env_file=None)

    assert settings.children[0].name == "Ava"
    assert settings.calendar_members[0].blocking is False
    assert settings.daily_approval_limit == 5
