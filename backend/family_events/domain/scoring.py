"""Event scoring: pure, deterministic ranking of candidate events.

Each factor is normalized to [0, 1] and combined with configurable weights
into a 0-100 total:

- age compatibility: share of the family's children the age range fits,
  with partial credit for near misses
- cost: 1 / (1 + cost / half_score_cost), so $0 -> 1.0 and the curve never
  goes negative
- timing: ramps up to a sweet spot a few days out, then decays
- social proof: rating and review volume, neutral when absent

``EventScorer.score`` never raises. A malformed field makes its factor
contribute 0 (social proof falls back to neutral) and is reported in
``ScoreResult.error``.
"""

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

NEUTRAL = 0.5

# Non-fitting children earn up to this share of a fit, scaled by how close they are
NEAR_MISS_WEIGHT = 0.4

_ALIASES: dict[str, tuple[str, ...]] = {
    "start_time": ("start_time", "date", "start"),
    "age_range": ("age_range", "ageRange"),
    "social_proof": ("social_proof", "socialProof"),
}


@dataclass(frozen=True)
class ScoringWeights:
    age: float = 0.35
    cost: float = 0.25
    timing: float = 0.25
    social: float = 0.15

    def __post_init__(self) -> None:
        values = (self.age, self.cost, self.timing, self.social)
        if any(v < 0 for v in values) or sum(values) <= 0:
            raise ValueError(f"Scoring weights must be non-negative with a positive sum: {values}")

    def normalized(self) -> "ScoringWeights":
        total = self.age + self.cost + self.timing + self.social
        return ScoringWeights(
            age=self.age / total,
            cost=self.cost / total,
            timing=self.timing / total,
            social=self.social / total,
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    age_compatibility: float
    cost: float
    timing: float
    social_proof: float
    total: float

    def as_dict(self) -> dict[str, float]:
        return {
            "age_compatibility": self.age_compatibility,
            "cost": self.cost,
            "timing": self.timing,
            "social_proof": self.social_proof,
            "total": self.total,
        }


@dataclass(frozen=True)
class ScoreResult:
    total_score: float
    breakdown: ScoreBreakdown
    error: str | None = None


@dataclass(frozen=True)
class ScoredEvent:
    event: Any
    result: ScoreResult


def _get(event: Any, field: str) -> Any:
    names = _ALIASES.get(field, (field,))
    for name in names:
        if isinstance(event, Mapping):
            if name in event:
                return event[name]
        elif hasattr(event, name):
            return getattr(event, name)
    return None


def _age_bounds(age_range: Any) -> tuple[Any, Any]:
    """Accept {"min", "max"} mappings, objects with min/max, or a [min, max] pair."""
    if isinstance(age_range, (str, bytes)):
        raise ValueError(f"unsupported age range: {age_range!r}")
    if isinstance(age_range, Sequence):
        if len(age_range) != 2:
            raise ValueError(f"age range needs [min, max], got {len(age_range)} values")
        return age_range[0], age_range[1]
    if isinstance(age_range, Mapping) or hasattr(age_range, "min") or hasattr(age_range, "max"):
        return _get(age_range, "min"), _get(age_range, "max")
    raise ValueError(f"unsupported age range: {age_range!r}")


def _to_number(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{label} is not numeric: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} is not numeric: {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"{label} is not finite: {value!r}")
    return number


def to_utc_datetime(value: Any) -> datetime:
    """Coerce a datetime or ISO-8601 string to an aware UTC datetime.

    Naive values are taken to be UTC. Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"invalid date: {value!r}") from None
    else:
        raise ValueError(f"missing or invalid date: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class EventScorer:
    """Scores events against the family profile.

    Args:
        child_birthdates: Birthdates of the children events are for
        weights: Factor weights (normalized internally)
        cost_half_score_usd: Cost at which the cost factor reaches 0.5
        sweet_spot_days: Lead time at which timing peaks
        falloff_days: Exponential decay constant past the sweet spot
        review_saturation: Review count treated as "plenty"
    """

    def __init__(
        self,
        child_birthdates: Sequence[date] = (),
        weights: ScoringWeights | None = None,
        cost_half_score_usd: float = 25.0,
        sweet_spot_days: float = 7.0,
        falloff_days: float = 21.0,
        review_saturation: int = 500,
    ):
        if cost_half_score_usd <= 0 or sweet_spot_days <= 0 or falloff_days <= 0:
            raise ValueError("Scoring curve constants must be positive")
        if review_saturation < 1:
            raise ValueError("review_saturation must be at least 1")
        self.child_birthdates = list(child_birthdates)
        self.weights = (weights or ScoringWeights()).normalized()
        self.cost_half_score_usd = cost_half_score_usd
        self.sweet_spot_days = sweet_spot_days
        self.falloff_days = falloff_days
        self.review_saturation = review_saturation

    @classmethod
    def from_settings(cls, settings) -> "EventScorer":
        return cls(
            child_birthdates=[child.birthdate for child in settings.children],
            weights=ScoringWeights(
                age=settings.weight_age,
                cost=settings.weight_cost,
                timing=settings.weight_timing,
                social=settings.weight_social,
            ),
            cost_half_score_usd=settings.cost_half_score_usd,
            sweet_spot_days=settings.timing_sweet_spot_days,
            falloff_days=settings.timing_falloff_days,
            review_saturation=settings.review_saturation,
        )

    def score(self, event: Any, now: datetime | None = None) -> ScoreResult:
        """Score one event. Never raises; see module docstring."""
        now = now or datetime.now(timezone.utc)
        errors: list[str] = []

        start: datetime | None = None
        try:
            start = to_utc_datetime(_get(event, "start_time"))
        except ValueError as exc:
            errors.append(f"start_time: {exc}")

        reference_day = (start or to_utc_datetime(now)).date()
        age = self._factor("age_range", errors, 0.0, self.age_score, _get(event, "age_range"), reference_day)
        cost = self._factor("cost", errors, 0.0, self.cost_score, _get(event, "cost"))
        timing = 0.0 if start is None else self._factor("timing", errors, 0.0, self.timing_score, start, now)
        social = self._factor("social_proof", errors, NEUTRAL, self.social_score, _get(event, "social_proof"))

        w = self.weights
        total = 100.0 * (w.age * age + w.cost * cost + w.timing * timing + w.social * social)
        breakdown = ScoreBreakdown(
            age_compatibility=age,
            cost=cost,
            timing=timing,
            social_proof=social,
            total=total,
        )
        return ScoreResult(total_score=total, breakdown=breakdown, error="; ".join(errors) or None)

    @staticmethod
    def _factor(label: str, errors: list[str], fallback: float, fn, *args) -> float:
        try:
            return fn(*args)
        except Exception as exc:
            errors.append(f"{label}: {exc}")
            return fallback

    # ── Factors ────────────────────────────────────────────────────────────

    def cost_score(self, cost: Any) -> float:
        if cost is None:
            return NEUTRAL
        value = _to_number(cost, "cost")
        if value < 0:
            raise ValueError(f"negative cost: {value}")
        return 1.0 / (1.0 + value / self.cost_half_score_usd)

    def age_score(self, age_range: Any, on: date) -> float:
        if age_range is None or not self.child_birthdates:
            return NEUTRAL
        low_raw, high_raw = _age_bounds(age_range)
        if low_raw is None and high_raw is None:
            return NEUTRAL
        low = 0.0 if low_raw is None else _to_number(low_raw, "age_range.min")
        high = 99.0 if high_raw is None else _to_number(high_raw, "age_range.max")
        if low > high:
            raise ValueError(f"inverted age range: {low}-{high}")

        ages = [(on - birthdate).days / 365.25 for birthdate in self.child_birthdates]
        fits = [age for age in ages if low <= age <= high]
        misses = [age for age in ages if not (low <= age <= high)]
        near_credit = 0.0
        if misses:
            near_credit = sum(_near_miss_credit(age, low, high) for age in misses) / len(misses)
        return (len(fits) + NEAR_MISS_WEIGHT * near_credit) / len(ages)

    def timing_score(self, start: datetime, now: datetime) -> float:
        days_out = (start - to_utc_datetime(now)).total_seconds() / 86400.0
        if days_out < 0:
            return 0.0
        if days_out < self.sweet_spot_days:
            return days_out / self.sweet_spot_days
        return math.exp(-(days_out - self.sweet_spot_days) / self.falloff_days)

    def social_score(self, social_proof: Any) -> float:
        if social_proof is None:
            return NEUTRAL
        rating_raw = _get(social_proof, "rating")
        reviews_raw = _get(social_proof, "review_count")

        if rating_raw is None:
            rating_part = NEUTRAL
        else:
            rating = _to_number(rating_raw, "rating")
            if not 0 <= rating <= 5:
                raise ValueError(f"rating out of range 0-5: {rating}")
            rating_part = rating / 5.0

        reviews = 0.0 if reviews_raw is None else _to_number(reviews_raw, "review_count")
        if reviews < 0:
            raise ValueError(f"negative review_count: {reviews}")
        volume_part = min(1.0, math.log1p(reviews) / math.log1p(self.review_saturation))
        return 0.6 * rating_part + 0.4 * volume_part

    def score_events(self, events: Iterable[Any], now: datetime | None = None) -> list[ScoredEvent]:
        """Score a batch and sort by total score, descending. Ties keep input order."""
        now = now or datetime.now(timezone.utc)
        scored = [ScoredEvent(event=event, result=self.score(event, now=now)) for event in events]
        return sorted(scored, key=lambda s: s.result.total_score, reverse=True)


def _near_miss_credit(age: float, low: float, high: float) -> float:
    distance = low - age if age < low else age - high
    if distance <= 1.0:
        return 1.0
    if distance <= 2.0:
        return 0.5
    return 0.0
