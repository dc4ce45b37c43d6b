"""Converges tracking issue state with the freshly computed finding."""

import logging
from typing import Optional

from fleet_drift.application.detectors import Detector
from fleet_drift.application.rate_limit import ApiBudget
from fleet_drift.domain.errors import ReconciliationError
from fleet_drift.domain.markers import identity_marker, state_marker
from fleet_drift.domain.models import Action, Finding, IssueKey, TrackingIssue
from fleet_drift.domain.ports import IssueTracker
from fleet_drift.domain.repository import Repository

logger = logging.getLogger(__name__)


def decide(finding: Optional[Finding], existing: Optional[TrackingIssue]) -> Action:
    """
    Pick the single action that converges the tracker to the finding.

    A missing finding means the same as a finding without drift. A closed
    issue is history: drift that reappears always gets a new issue.
    """
    present = finding is not None and finding.present
    if existing is None or not existing.is_open:
        return Action.CREATE if present else Action.NOOP
    if not present:
        return Action.CLOSE
    if finding.same_value(existing.last_synced_finding):
        return Action.NOOP
    return Action.UPDATE


def render_issue_body(
    key: IssueKey,
    detector: Detector,
    finding: Finding,
    pull_request_url: Optional[str] = None,
) -> str:
    lines = [
        identity_marker(key),
        state_marker(finding),
        f"## {detector.title}",
        "",
        f"Repository `{key.full_name}` has drifted for check `{key.kind.value}`.",
        "",
        "| | |",
        "|---|---|",
        f"| Current | `{finding.current_value}` |",
        f"| Desired | `{finding.desired_value}` |",
        f"| Severity | {finding.severity.value} |",
    ]
    if finding.details:
        lines += ["", finding.details]
    if pull_request_url:
        lines += ["", f"A remediation pull request may already exist: {pull_request_url}"]
    lines += [
        "",
        "_This issue is managed automatically. It is updated when the detected "
        "value changes and closed once the drift is resolved._",
    ]
    return "\n".join(lines)


class IssueReconciler:
    """The only component that writes per-repository tracking issues."""

    def __init__(self, tracker: IssueTracker, budget: Optional[ApiBudget] = None, dry_run: bool = False):
        self.tracker = tracker
        self.budget = budget
        self.dry_run = dry_run

    def find_existing(self, repo: Repository, detector: Detector) -> Optional[TrackingIssue]:
        key = IssueKey(repo.owner, repo.name, detector.kind)
        try:
            issue = self._call(lambda: self.tracker.find_issue(key), f"find issue {key.marker}")
        except Exception as e:
            raise ReconciliationError(f"Failed to look up issue {key.marker}: {e}", cause=e) from e
        if issue is not None and issue.key != key:
            raise ReconciliationError(f"Tracker returned {issue.key.marker} for {key.marker}")
        return issue

    def reconcile(
        self,
        repo: Repository,
        detector: Detector,
        finding: Optional[Finding],
        existing: Optional[TrackingIssue],
        pull_request_url: Optional[str] = None,
    ) -> Action:
        """
        Perform at most one write so the tracker matches the finding.

        Args:
            repo: Repository the finding belongs to
            detector: Detector that produced the finding
            finding: Current finding, or None when the detector found nothing
            existing: Issue found by exact key lookup, or None
            pull_request_url: Open remediation pull request, if any

        Returns:
            The action taken (or that would be taken, in dry-run mode)

        Raises:
            ReconciliationError: If the tracker write failed
        """
        key = IssueKey(repo.owner, repo.name, detector.kind)
        action = decide(finding, existing)
        if action is Action.NOOP:
            return action
        if self.dry_run:
            logger.info(f"[dry-run] would {action.value} issue for {key.marker}")
            return action

        description = f"{action.value} issue {key.marker}"
        try:
            if action is Action.CREATE:
                body = render_issue_body(key, detector, finding, pull_request_url)
                issue = self._call(
                    lambda: self.tracker.create_issue(key, detector.issue_title(finding), body),
                    description,
                )
                logger.info(f"Created issue #{issue.number} for {key.marker}")
            elif action is Action.UPDATE:
                body = render_issue_body(key, detector, finding, pull_request_url)
                self._call(lambda: self.tracker.update_issue(existing, body), description)
                logger.info(f"Updated issue #{existing.number} for {key.marker}")
            else:
                self._call(lambda: self.tracker.close_issue(existing), description)
                logger.info(f"Closed issue #{existing.number} for {key.marker}")
        except ReconciliationError:
            raise
        except Exception as e:
            raise ReconciliationError(f"Failed to {description}: {e}", cause=e) from e
        return action

    def _call(self, operation, description: str):
        if self.budget is None:
            return operation()
        return self.budget.call(operation, description)
