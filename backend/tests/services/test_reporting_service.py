"""Tests for ReportingService: delivery, file fallback and retention."""

import asyncio
from datetime import timedelta

import pytest

from family_events.integrations.fakes import FakeReportSink
from family_events.schemas.pipeline import OutcomeStatus, RegistrationOutcome
from family_events.services.reporting_service import ReportingService

pytestmark = pytest.mark.unit


@pytest.fixture
def outcomes():
    return [
        RegistrationOutcome(
            event_id=1,
            status=OutcomeStatus.REGISTERED,
            event_title="Story Time",
            confirmation_number="CONF-1",
        ),
        RegistrationOutcome(
            event_id=2,
            status=OutcomeStatus.MANUAL_REQUIRED,
            event_title="Swim Lessons",
            message="Event costs $40.00; payment must be completed manually",
            failure_kind="payment_required",
        ),
        RegistrationOutcome(event_id=3, status=OutcomeStatus.ERROR, message="RuntimeError: boom"),
    ]


def _service(tmp_path, sink=None, **kwargs) -> ReportingService:
    return ReportingService(sink, tmp_path / "reports", recipients=["joyce@example.com"], **kwargs)


def test_run_report_lists_every_outcome(tmp_path, outcomes, now):
    report = _service(tmp_path).build_run_report(outcomes, now=now)

    assert "Processed: 3" in report
    assert "Registered: 1" in report
    assert "#1 Story Time (confirmation CONF-1)" in report
    assert "#2 Swim Lessons: Event costs $40.00" in report
    assert "#3: RuntimeError: boom" in report


async def test_report_is_emailed_when_sink_works(tmp_path, outcomes, now):
    sink = FakeReportSink()

    result = await _service(tmp_path, sink).send_run_report(outcomes, now=now)

    assert result.success
    assert result.message_id == "report-1"
    subject, body, recipients = sink.delivered[0]
    assert "2026-03-02" in subject
    assert recipients == ["joyce@example.com"]
    assert not (tmp_path / "reports").exists()


async def test_failed_delivery_falls_back_to_file(tmp_path, outcomes, now):
    service = _service(tmp_path, FakeReportSink(fail=True))

    result = await service.send_run_report(outcomes, now=now)

    assert not result.success
    assert result.fallback == "file_saved"
    assert result.file_path.endswith("report-20260302-150000.txt")
    assert "Fake report sink failure" in result.error
    assert "Story Time" in await service.read_report("report-20260302-150000.txt")


async def test_slow_sink_times_out_to_file(tmp_path, now):
    service = _service(tmp_path, FakeReportSink(delay=1.0), timeout_seconds=0.05)

    result = await service.deliver_report("body", now=now)

    assert result.fallback == "file_saved"
    assert "TimeoutError" in result.error


async def test_no_sink_saves_to_file(tmp_path, now):
    result = await _service(tmp_path).deliver_report("body", now=now)

    assert result.fallback == "file_saved"
    assert result.error == "No report sink configured"


async def test_file_fallback_failure_is_reported_not_raised(tmp_path, now):
    blocker = tmp_path / "reports"
    blocker.write_text("not a directory")
    service = ReportingService(FakeReportSink(fail=True), blocker)

    result = await service.deliver_report("body", now=now)

    assert not result.success
    assert result.fallback is None
    assert "file fallback failed" in result.error


async def test_same_second_reports_do_not_overwrite(tmp_path, now):
    service = _service(tmp_path)

    first = await service.save_report("one", now=now)
    second = await service.save_report("two", now=now)

    assert first != second
    assert second.name == "report-20260302-150000-1.txt"
    assert first.read_text() == "one"


async def test_concurrent_saves_in_one_second_keep_every_report(tmp_path, now):
    service = _service(tmp_path)

    paths = await asyncio.gather(*(service.save_report(f"body {i}", now=now) for i in range(8)))

    assert len(set(paths)) == 8
    assert sorted(p.read_text() for p in paths) == sorted(f"body {i}" for i in range(8))



async def test_cleanup_removes_only_expired_reports(tmp_path, now):
    service = _service(tmp_path, retention_days=30)
    old = await service.save_report("old", now=now - timedelta(days=45))
    fresh = await service.save_report("fresh", now=now - timedelta(days=3))
    (tmp_path / "reports" / "notes.txt").write_text("not a report")

    removed = await service.cleanup_old_reports(now=now)

    assert removed == 1
    assert not old.exists()
    assert fresh.exists()
    assert (tmp_path / "reports" / "notes.txt").exists()


async def test_cleanup_without_directory(tmp_path, now):
    assert await _service(tmp_path).cleanup_old_reports(now=now) == 0


async def test_recent_reports_newest_first(tmp_path, now):
    service = _service(tmp_path)
    await service.save_report("a", now=now - timedelta(days=10))
    await service.save_report("b", now=now - timedelta(days=2))
    await service.save_report("c", now=now - timedelta(hours=1))

    recent = await service.get_recent_reports(days=7, now=now)

    assert [r.filename for r in recent] == ["report-20260302-140000.txt", "report-20260228-150000.txt"]
    assert all(r.size_bytes == 1 for r in recent)


async def test_read_report_rejects_foreign_names(tmp_path, now):
    service = _service(tmp_path)
    await service.save_report("x", now=now)

    assert await service.read_report("../secrets.txt") is None
    assert await service.read_report("report-20990101-000000.txt") is None
