"""ReportingService — run reports with email delivery and an on-disk fallback.

Delivery order:
1. Primary sink (email), bounded by a timeout
2. On failure, the report is written to ``reports/report-YYYYMMDD-HHMMSS.txt``
   and the result says ``success=False, fallback="file_saved"``
3. If the file write fails too, ``fallback=None`` and ``error`` carries both reasons

Blocking file I/O runs in worker threads via asyncio.to_thread().
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog

from family_events.integrations.mail import ReportSink
from family_events.schemas.pipeline import (
    OutcomeStatus,
    RegistrationOutcome,
    ReportDeliveryResult,
    RunSummary,
)

logger = structlog.get_logger(__name__)

_REPORT_NAME_RE = re.compile(r"^report-(\d{8}-\d{6})(?:-\d+)?\.txt$")
_REPORT_STAMP = "%Y%m%d-%H%M%S"


@dataclass(frozen=True)
class StoredReport:
    filename: str
    path: Path
    created_at: datetime
    size_bytes: int


def _stamp_of(filename: str) -> datetime | None:
    match = _REPORT_NAME_RE.match(filename)
    if not match:
        return None
    return datetime.strptime(match.group(1), _REPORT_STAMP).replace(tzinfo=timezone.utc)


class ReportingService:
    def __init__(
        self,
        sink: ReportSink | None,
        reports_dir: str | Path,
        recipients: list[str] | None = None,
        retention_days: int = 30,
        timeout_seconds: float = 15.0,
    ):
        self.sink = sink
        self.reports_dir = Path(reports_dir)
        self.recipients = list(recipients or [])
        self.retention_days = retention_days
        self.timeout_seconds = timeout_seconds

    def build_run_report(self, outcomes: list[RegistrationOutcome], now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        summary = RunSummary.from_outcomes(outcomes)
        lines = [
            f"Family Event Planner - registration run {now.strftime('%Y-%m-%d %H:%M UTC')}",
            "",
            f"Processed: {summary.total}",
            f"Registered: {summary.registered}",
            f"Needs manual action: {summary.manual_required}",
            f"Skipped: {summary.skipped}",
            f"Conflicts: {summary.conflicts}",
            f"Errors: {summary.errors}",
        ]

        registered = [o for o in outcomes if o.status == OutcomeStatus.REGISTERED]
        if registered:
            lines += ["", "Registered:"]
            for o in registered:
                conf = f" (confirmation {o.confirmation_number})" if o.confirmation_number else ""
                lines.append(f"  - #{o.event_id} {o.event_title or ''}{conf}".rstrip())

        manual = [o for o in outcomes if o.status == OutcomeStatus.MANUAL_REQUIRED]
        if manual:
            lines += ["", "Needs manual registration:"]
            for o in manual:
                lines.append(f"  - #{o.event_id} {o.event_title or ''}: {o.message}")

        errors = [o for o in outcomes if o.status == OutcomeStatus.ERROR]
        if errors:
            lines += ["", "Errors:"]
            for o in errors:
                lines.append(f"  - #{o.event_id}: {o.message}")

        return "\n".join(lines) + "\n"

    async def deliver_report(
        self, content: str, subject: str | None = None, now: datetime | None = None
    ) -> ReportDeliveryResult:
        """Send ``content`` via the sink, falling back to a file. Never raises."""
        now = now or datetime.now(timezone.utc)
        subject = subject or f"Family events report {now.strftime('%Y-%m-%d')}"

        if self.sink is not None:
            try:
                message_id = await asyncio.wait_for(
                    self.sink.deliver(subject, content, self.recipients),
                    timeout=self.timeout_seconds,
                )
                return ReportDeliveryResult(success=True, message_id=message_id)
            except Exception as exc:
                delivery_error = f"{type(exc).__name__}: {exc}"
                logger.warning("report_delivery_failed", error=str(exc), error_type=type(exc).__name__)
        else:
            delivery_error = "No report sink configured"

        try:
            path = await self.save_report(content, now=now)
        except OSError as exc:
            logger.error("report_fallback_failed", error=str(exc), error_type=type(exc).__name__)
            return ReportDeliveryResult(
                success=False,
                fallback=None,
                error=f"{delivery_error}; file fallback failed: {exc}",
            )
        return ReportDeliveryResult(
            success=False,
            fallback="file_saved",
            file_path=str(path),
            error=delivery_error,
        )

    async def send_run_report(
        self, outcomes: list[RegistrationOutcome], now: datetime | None = None
    ) -> ReportDeliveryResult:
        return await self.deliver_report(self.build_run_report(outcomes, now=now), now=now)

    async def save_report(self, content: str, now: datetime | None = None) -> Path:
        now = now or datetime.now(timezone.utc)
        path = await asyncio.to_thread(self._write_report, content, now)
        logger.info("report_saved", path=str(path))
        return path

    def _write_report(self, content: str, now: datetime) -> Path:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        stem = f"report-{now.astimezone(timezone.utc).strftime(_REPORT_STAMP)}"
        suffix = 0
        while True:
            name = f"{stem}.txt" if suffix == 0 else f"{stem}-{suffix}.txt"
            path = self.reports_dir / name
            try:
                # "x" fails if another writer took the name first
                with path.open("x", encoding="utf-8") as fh:
                    fh.write(content)
                return path
            except FileExistsError:
                suffix += 1

    async def cleanup_old_reports(
        self, retention_days: int | None = None, now: datetime | None = None
    ) -> int:
        """Delete reports older than the retention window. Returns how many were removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days if retention_days is not None else self.retention_days)
        removed = await asyncio.to_thread(self._delete_before, cutoff)
        if removed:
            logger.info("reports_cleaned_up", removed=removed)
        return removed

    def _delete_before(self, cutoff: datetime) -> int:
        removed = 0
        for report in self._list_reports():
            if report.created_at < cutoff:
                try:
                    report.path.unlink()
                    removed += 1
                except OSError as exc:
                    logger.warning("report_delete_failed", path=str(report.path), error=str(exc))
        return removed

    async def get_recent_reports(self, days: int = 7, now: datetime | None = None) -> list[StoredReport]:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days)
        reports = await asyncio.to_thread(self._list_reports)
        recent = [r for r in reports if r.created_at >= cutoff]
        return sorted(recent, key=lambda r: r.created_at, reverse=True)

    async def read_report(self, filename: str) -> str | None:
        if _stamp_of(filename) is None:
            return None
        path = self.reports_dir / filename
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None

    def _list_reports(self) -> list[StoredReport]:
        if not self.reports_dir.is_dir():
            return []
        reports = []
        for path in self.reports_dir.iterdir():
            created_at = _stamp_of(path.name)
            if created_at is None or not path.is_file():
                continue
            reports.append(
                StoredReport(
                    filename=path.name,
                    path=path,
                    created_at=created_at,
                    size_bytes=path.stat().st_size,
                )
            )
        return reports
