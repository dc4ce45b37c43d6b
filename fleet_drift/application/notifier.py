"""Best-effort run summaries."""

import logging
from typing import Optional

from fleet_drift.domain.models import AggregateView, RunReport
from fleet_drift.domain.ports import NotificationSink

logger = logging.getLogger(__name__)


def build_summary(report: RunReport, view: Optional[AggregateView]) -> str:
    lines = [f"Drift scan `{report.kind.value}` finished."]
    if view is not None:
        link = f" <{view.url}|rollup>" if view.url else ""
        lines.append(f"{len(view.entries)} repositories drifted.{link}")
    lines.append(
        f"{report.succeeded} succeeded, {report.skipped} skipped, {report.failed} failed."
    )
    if report.cancelled:
        lines.append("The run was cancelled before every repository was scanned.")
    failures = report.failures()
    if failures:
        shown = ", ".join(f"{o.full_name} ({o.reason})" for o in failures[:10])
        more = f" and {len(failures) - 10} more" if len(failures) > 10 else ""
        lines.append(f"Failures: {shown}{more}")
    return "\n".join(lines)


class RunNotifier:
    """Sends a summary after a run. Never raises."""

    def __init__(self, sink: Optional[NotificationSink]):
        self.sink = sink

    def notify(self, report: RunReport, view: Optional[AggregateView]) -> bool:
        if self.sink is None:
            logger.debug("No notification sink configured")
            return False
        try:
            self.sink.send(build_summary(report, view))
        except Exception as e:
            logger.warning(f"Failed to send {report.kind.value} summary: {e}")
            return False
        return True
