"""ScoringService — scores stored events and keeps the score history."""

from collections.abc import Iterable
from datetime import datetime, timezone

import structlog

from family_events.core.exceptions import PersistenceError
from family_events.db.store import EventStore
from family_events.domain.scoring import EventScorer, ScoredEvent, ScoreResult
from family_events.schemas.events import EventRecord

logger = structlog.get_logger(__name__)


class ScoringService:
    def __init__(self, store: EventStore, scorer: EventScorer):
        self.store = store
        self.scorer = scorer

    async def score_and_record(
        self, events: Iterable[EventRecord], now: datetime | None = None
    ) -> list[ScoredEvent]:
        """Score ``events``, append each result to history, return them ranked.

        A history write failure is logged and does not drop the event from
        the ranking.
        """
        now = now or datetime.now(timezone.utc)
        ranked = self.scorer.score_events(events, now=now)
        for scored in ranked:
            result = scored.result
            if result.error:
                logger.info("event_scored_partially", event_id=scored.event.id, error=result.error)
            try:
                await self.store.record_score(
                    scored.event.id,
                    result.total_score,
                    result.breakdown.as_dict(),
                    error=result.error,
                    now=now,
                )
            except PersistenceError as exc:
                logger.warning("event_score_not_recorded", event_id=scored.event.id, error=str(exc))
        return ranked

    async def rescore(self, event_id: int, now: datetime | None = None) -> ScoreResult | None:
        event = await self.store.get_event(event_id)
        if event is None:
            return None
        ranked = await self.score_and_record([event], now=now)
        return ranked[0].result
