from fleet_drift.application.notifier import RunNotifier, build_summary
from fleet_drift.domain.models import (
    Action,
    AggregateEntry,
    AggregateView,
    DetectorKind,
    RepositoryOutcome,
    RunReport,
)
from tests.fakes import NOW, RecordingSink


def _report() -> RunReport:
    report = RunReport(kind=DetectorKind.GO_VERSION, started_at=NOW)
    report.record(RepositoryOutcome.succeeded(("acme", "a"), Action.CREATE))
    report.record(RepositoryOutcome.skipped(("acme", "fork"), "fork"))
    report.record(RepositoryOutcome.failed(("acme", "b"), "RateLimitExceeded", "secondary rate limit"))
    return report


def _view() -> AggregateView:
    return AggregateView(
        kind=DetectorKind.GO_VERSION,
        entries=[AggregateEntry("acme", "a", 1)],
        generated_at=NOW,
        url="https://github.com/acme/fleet-status/issues/9",
    )


def test_summary_has_counts_and_link() -> None:
    text = build_summary(_report(), _view())

    assert "1 repositories drifted." in text
    assert "issues/9" in text
    assert "1 succeeded, 1 skipped, 1 failed." in text
    assert "acme/b (RateLimitExceeded)" in text


def test_notify_sends_summary() -> None:
    sink = RecordingSink()

    assert RunNotifier(sink).notify(_report(), _view()) is True
    assert len(sink.messages) == 1


def test_notification_failure_is_swallowed() -> None:
    sink = RecordingSink(error=ConnectionError("webhook unreachable"))

    assert RunNotifier(sink).notify(_report(), None) is False


def test_no_sink_configured() -> None:
    assert RunNotifier(None).notify(_report(), _view()) is False
