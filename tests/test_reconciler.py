import pytest

from fleet_drift.application.detectors import GoVersionDetector
from fleet_drift.application.reconciler import IssueReconciler, decide, render_issue_body
from fleet_drift.domain.errors import ReconciliationError
from fleet_drift.domain.markers import matches_key
from fleet_drift.domain.models import Action, DetectorKind, Finding, IssueKey, IssueState, Severity, TrackingIssue
from tests.fakes import FakeTracker, make_repo

DRIFT = Finding(current_value="1.19", desired_value="1.22", severity=Severity.MEDIUM)
DRIFT_CHANGED = Finding(current_value="1.20", desired_value="1.22", severity=Severity.MEDIUM)
CLEAN = Finding(current_value="1.22", desired_value="1.22", present=False)
KEY = IssueKey("acme", "foo", DetectorKind.GO_VERSION)


def _issue(state: IssueState, finding=DRIFT) -> TrackingIssue:
    return TrackingIssue(key=KEY, number=7, state=state, last_synced_finding=finding)


@pytest.mark.parametrize(
    "existing, finding, expected",
    [
        (None, DRIFT, Action.CREATE),
        (None, CLEAN, Action.NOOP),
        (None, None, Action.NOOP),
        (_issue(IssueState.OPEN), DRIFT, Action.NOOP),
        (_issue(IssueState.OPEN), DRIFT_CHANGED, Action.UPDATE),
        (_issue(IssueState.OPEN), CLEAN, Action.CLOSE),
        (_issue(IssueState.OPEN), None, Action.CLOSE),
        (_issue(IssueState.CLOSED), DRIFT, Action.CREATE),
        (_issue(IssueState.CLOSED), DRIFT_CHANGED, Action.CREATE),
        (_issue(IssueState.CLOSED), CLEAN, Action.NOOP),
    ],
)
def test_decision_table(existing, finding, expected) -> None:
    assert decide(finding, existing) is expected


def test_open_issue_without_state_marker_is_updated() -> None:
    assert decide(DRIFT, _issue(IssueState.OPEN, finding=None)) is Action.UPDATE


def test_reconcile_twice_is_noop_the_second_time() -> None:
    tracker = FakeTracker()
    reconciler = IssueReconciler(tracker)
    repo = make_repo("acme/foo")
    detector = GoVersionDetector()

    first = reconciler.reconcile(repo, detector, DRIFT, reconciler.find_existing(repo, detector))
    second = reconciler.reconcile(repo, detector, DRIFT, reconciler.find_existing(repo, detector))

    assert first is Action.CREATE
    assert second is Action.NOOP
    assert [action for action, _ in tracker.writes] == ["create"]


def test_finding_transitions_converge_create_update_close() -> None:
    tracker = FakeTracker()
    reconciler = IssueReconciler(tracker)
    repo = make_repo("acme/foo")
    detector = GoVersionDetector()

    actions = []
    for finding in [None, DRIFT, DRIFT_CHANGED, None]:
        existing = reconciler.find_existing(repo, detector)
        actions.append(reconciler.reconcile(repo, detector, finding, existing))

    assert actions == [Action.NOOP, Action.CREATE, Action.UPDATE, Action.CLOSE]
    assert tracker.open_issues(KEY) == []
    assert len(tracker.issues[KEY]) == 1


def test_reappearing_drift_creates_a_new_issue() -> None:
    tracker = FakeTracker()
    reconciler = IssueReconciler(tracker)
    repo = make_repo("acme/foo")
    detector = GoVersionDetector()

    for finding in [DRIFT, None, DRIFT_CHANGED]:
        reconciler.reconcile(repo, detector, finding, reconciler.find_existing(repo, detector))

    history = tracker.issues[KEY]
    assert [issue.state for issue in history] == [IssueState.CLOSED, IssueState.OPEN]
    assert history[0].number != history[1].number


def test_exact_identity_for_prefix_named_repositories() -> None:
    tracker = FakeTracker()
    reconciler = IssueReconciler(tracker)
    detector = GoVersionDetector()
    foo, foo_bar = make_repo("acme/foo"), make_repo("acme/foo-bar")

    reconciler.reconcile(foo_bar, detector, DRIFT, reconciler.find_existing(foo_bar, detector))
    action = reconciler.reconcile(foo, detector, CLEAN, reconciler.find_existing(foo, detector))

    foo_bar_key = IssueKey("acme", "foo-bar", DetectorKind.GO_VERSION)
    assert action is Action.NOOP
    assert len(tracker.open_issues(foo_bar_key)) == 1
    assert KEY not in tracker.issues
    assert all(key in (KEY, foo_bar_key) for key in tracker.lookups)


def test_issue_body_carries_exact_identity_and_state() -> None:
    body = render_issue_body(KEY, GoVersionDetector(), DRIFT, "https://github.com/acme/foo/pull/3")

    assert matches_key(body, KEY)
    assert not matches_key(body, IssueKey("acme", "foo-bar", DetectorKind.GO_VERSION))
    assert "`1.19`" in body
    assert "pull/3" in body


def test_failed_write_raises_reconciliation_error() -> None:
    tracker = FakeTracker(failing={"acme/foo"})
    reconciler = IssueReconciler(tracker)
    repo = make_repo("acme/foo")

    with pytest.raises(ReconciliationError) as exc_info:
        reconciler.reconcile(repo, GoVersionDetector(), DRIFT, None)

    assert exc_info.value.reason == "RuntimeError"


def test_dry_run_decides_without_writing() -> None:
    tracker = FakeTracker()
    reconciler = IssueReconciler(tracker, dry_run=True)

    action = reconciler.reconcile(make_repo("acme/foo"), GoVersionDetector(), DRIFT, None)

    assert action is Action.CREATE
    assert tracker.writes == []
