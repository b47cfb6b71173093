"""CalendarConflictChecker — checks a proposed event time against family calendars.

Architecture:
- Each member's calendar is queried concurrently, each query bounded by a timeout
- The query window is padded by a buffer on both sides (travel / transition time)
- Busy blocks from blocking members are hard conflicts; other members only warn
- An unreadable calendar never produces a conflict; it is reported as
  inaccessible with a warning naming the member
- Never raises: provider failures degrade to warnings
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from family_events.core.config import CalendarMember
from family_events.core.exceptions import (
    CalendarAccessDeniedError,
    CalendarRateLimitedError,
)
from family_events.integrations.calendars import BusyBlock, CalendarProvider

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CalendarConflict:
    member_id: str
    member_name: str
    start: datetime
    end: datetime
    summary: str = ""


@dataclass
class ConflictReport:
    has_conflict: bool = False
    has_warning: bool = False
    blocking_conflicts: list[CalendarConflict] = field(default_factory=list)
    warning_conflicts: list[CalendarConflict] = field(default_factory=list)
    calendar_accessible: dict[str, bool] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _MemberResult:
    member: CalendarMember
    busy: list[BusyBlock] | None
    failure: str | None = None


class CalendarConflictChecker:
    """Public API:
        get_conflict_details(proposed_start, duration_minutes=120) -> ConflictReport
        has_conflict(proposed_start, duration_minutes=120) -> bool
    """

    def __init__(
        self,
        provider: CalendarProvider,
        members: list[CalendarMember],
        buffer_minutes: int = 30,
        timeout_seconds: float = 10.0,
    ):
        if provider is None:
            raise TypeError("CalendarConflictChecker requires a calendar provider")
        self.provider = provider
        self.members = list(members)
        self.buffer = timedelta(minutes=buffer_minutes)
        self.timeout_seconds = timeout_seconds

    async def get_conflict_details(self, proposed_start: datetime, duration_minutes: int = 120) -> ConflictReport:
        window_start = proposed_start - self.buffer
        window_end = proposed_start + timedelta(minutes=duration_minutes) + self.buffer

        report = ConflictReport()
        if not self.members:
            return report

        results = await asyncio.gather(
            *(self._query_member(m, window_start, window_end) for m in self.members)
        )

        failures: list[str] = []
        for result in results:
            member = result.member
            if result.busy is None:
                report.calendar_accessible[member.member_id] = False
                failures.append(f"{member.name}: {result.failure}")
                continue

            report.calendar_accessible[member.member_id] = True
            for block in result.busy:
                if not block.overlaps(window_start, window_end):
                    continue
                conflict = CalendarConflict(
                    member_id=member.member_id,
                    member_name=member.name,
                    start=block.start,
                    end=block.end,
                    summary=block.summary,
                )
                if member.blocking:
                    report.blocking_conflicts.append(conflict)
                else:
                    report.warning_conflicts.append(conflict)

        if failures and len(failures) == len(self.members):
            report.warnings.append("Calendar system completely unavailable: " + "; ".join(failures))
        else:
            for failure in failures:
                report.warnings.append(f"Calendar for {failure}")

        report.has_conflict = bool(report.blocking_conflicts)
        report.has_warning = bool(report.warning_conflicts or report.warnings)

        logger.info(
            "calendar_conflicts_checked",
            proposed_start=proposed_start.isoformat(),
            blocking=len(report.blocking_conflicts),
            warnings=len(report.warning_conflicts) + len(report.warnings),
            inaccessible=len(failures),
        )
        return report

    async def has_conflict(self, proposed_start: datetime, duration_minutes: int = 120) -> bool:
        report = await self.get_conflict_details(proposed_start, duration_minutes)
        return report.has_conflict

    async def _query_member(self, member: CalendarMember, start: datetime, end: datetime) -> _MemberResult:
        try:
            busy = await asyncio.wait_for(
                self.provider.list_busy(member, start, end),
                timeout=self.timeout_seconds,
            )
            return _MemberResult(member=member, busy=list(busy))
        except CalendarAccessDeniedError as exc:
            reason = "access denied"
            error: Exception = exc
        except CalendarRateLimitedError as exc:
            reason = "unavailable (rate limited)"
            error = exc
        except asyncio.TimeoutError as exc:
            reason = "unavailable (timed out)"
            error = exc
        except Exception as exc:
            reason = "unavailable"
            error = exc

        logger.warning(
            "calendar_member_unavailable",
            member_id=member.member_id,
            reason=reason,
            error=str(error),
            error_type=type(error).__name__,
        )
        return _MemberResult(member=member, busy=None, failure=reason)
