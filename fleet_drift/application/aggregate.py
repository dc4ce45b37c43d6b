"""Per-detector rollup of every repository with an open tracking issue."""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional

from fleet_drift.application.rate_limit import ApiBudget
from fleet_drift.domain.markers import identity_marker
from fleet_drift.domain.models import AggregateEntry, AggregateView, DetectorKind, IssueKey, IssueScope
from fleet_drift.domain.ports import IssueTracker
from fleet_drift.domain.repository import RepositoryKey

logger = logging.getLogger(__name__)


def render_aggregate(view: AggregateView) -> str:
    lines = [
        f"## Drift rollup: `{view.kind.value}`",
        "",
        f"{len(view.entries)} repositories currently have an open tracking issue.",
    ]
    if view.entries:
        lines += ["", "| Repository | Current | Desired | Severity | Issue |", "|---|---|---|---|---|"]
        for entry in view.entries:
            finding = entry.finding
            current = f"`{finding.current_value}`" if finding else ""
            desired = f"`{finding.desired_value}`" if finding else ""
            severity = finding.severity.value if finding else ""
            issue = f"[#{entry.issue_number}]({entry.issue_url})" if entry.issue_url else f"#{entry.issue_number}"
            lines.append(f"| `{entry.full_name}` | {current} | {desired} | {severity} | {issue} |")
    lines += ["", "_Rebuilt from the open tracking issues on every scan._"]
    return "\n".join(lines)


class AggregateBuilder:
    """Rebuilds rollups from scratch; never patches a previous rollup."""

    def __init__(
        self,
        tracker: IssueTracker,
        budget: Optional[ApiBudget] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.tracker = tracker
        self.budget = budget
        self.clock = clock

    def rebuild(self, kind: DetectorKind, organizations: Iterable[str]) -> AggregateView:
        """
        Query the tracker for open tracking issues and build the rollup.

        Args:
            kind: Detector whose rollup to build
            organizations: Organizations in the fleet

        Returns:
            AggregateView sorted by repository full name
        """
        orgs = list(organizations)
        issues = self._call(lambda: self.tracker.list_open_issues(kind, orgs), f"list open {kind.value} issues")

        entries: Dict[RepositoryKey, AggregateEntry] = {}
        for issue in issues:
            key = issue.key
            if key.kind is not kind or key.scope is not IssueScope.REPOSITORY or not issue.is_open:
                continue
            if key.owner not in orgs:
                continue
            repo_key = (key.owner, key.name)
            if repo_key in entries:
                logger.warning(
                    f"Duplicate open {kind.value} issues for {key.full_name}: "
                    f"#{entries[repo_key].issue_number} and #{issue.number}"
                )
                if entries[repo_key].issue_number < issue.number:
                    continue
            entries[repo_key] = AggregateEntry(
                owner=key.owner,
                name=key.name,
                issue_number=issue.number,
                issue_url=issue.url,
                finding=issue.last_synced_finding,
            )

        view = AggregateView(
            kind=kind,
            entries=[entries[k] for k in sorted(entries)],
            generated_at=self.clock(),
        )
        logger.info(f"Rebuilt {kind.value} rollup: {len(view.entries)} repositories with open issues")
        return view

    def publish(self, view: AggregateView, rollup_repository: RepositoryKey, dry_run: bool = False) -> str:
        """
        Converge the single rollup issue for view.kind in the rollup repository.

        Returns:
            URL of the rollup issue ("" in dry-run mode when none exists yet)
        """
        owner, name = rollup_repository
        key = IssueKey(owner, name, view.kind, IssueScope.ROLLUP)
        body = f"{identity_marker(key)}\n{render_aggregate(view)}"
        existing = self._call(lambda: self.tracker.find_issue(key), f"find rollup {key.marker}")

        if dry_run:
            logger.info(f"[dry-run] would publish {view.kind.value} rollup to {key.full_name}")
            view.url = existing.url if existing is not None else ""
            return view.url

        if existing is None or not existing.is_open:
            issue = self._call(
                lambda: self.tracker.create_issue(key, f"Drift rollup: {view.kind.value}", body),
                f"create rollup {key.marker}",
            )
            logger.info(f"Created rollup issue #{issue.number} in {key.full_name}")
        elif existing.body != body:
            issue = self._call(lambda: self.tracker.update_issue(existing, body), f"update rollup {key.marker}")
            logger.info(f"Updated rollup issue #{existing.number} in {key.full_name}")
        else:
            issue = existing
        view.url = issue.url
        return view.url

    def _call(self, operation, description: str):
        if self.budget is None:
            return operation()
        return self.budget.call(operation, description)
