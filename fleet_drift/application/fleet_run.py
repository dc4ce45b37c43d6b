"""Multi-detector fleet run: scan, rebuild rollups, notify."""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from fleet_drift.application.aggregate import AggregateBuilder
from fleet_drift.application.classifier import RepositoryClassifier
from fleet_drift.application.detectors import build_detector
from fleet_drift.application.notifier import RunNotifier
from fleet_drift.application.rate_limit import ApiBudget, RetryPolicy, TokenBucket
from fleet_drift.application.reconciler import IssueReconciler
from fleet_drift.application.scan_service import FleetScanService
from fleet_drift.config import ScanSettings
from fleet_drift.domain.errors import FatalConfigurationError
from fleet_drift.domain.models import AggregateView, RunReport
from fleet_drift.domain.ports import (
    CacheStore,
    ContentReader,
    IssueTracker,
    NotificationSink,
    RepositoryInspector,
    RepositoryLister,
)

logger = logging.getLogger(__name__)


@dataclass
class DetectorRun:
    report: RunReport
    view: Optional[AggregateView]


def scan_fleet(
    settings: ScanSettings,
    lister: RepositoryLister,
    inspector: RepositoryInspector,
    reader: ContentReader,
    tracker: IssueTracker,
    cache_store: CacheStore,
    sink: Optional[NotificationSink] = None,
    budget: Optional[ApiBudget] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[DetectorRun]:
    """
    Run every configured detector over the fleet.

    The repository set is listed once and shared by all detectors. A rollup
    that fails to rebuild or publish is logged; the run reports still stand.

    Raises:
        FatalConfigurationError: If the organizations cannot be listed
    """
    if budget is None:
        budget = ApiBudget(
            TokenBucket(settings.rate_per_second, settings.rate_burst),
            RetryPolicy(max_attempts=settings.max_retries + 1),
        )

    try:
        repositories = list(lister.list_repositories(settings.organizations))
    except FatalConfigurationError:
        raise
    except Exception as e:
        raise FatalConfigurationError(f"Could not list repositories of {settings.organizations}: {e}") from e
    logger.info(f"Listed {len(repositories)} repositories across {len(settings.organizations)} organizations")

    detectors = {kind: build_detector(kind, settings.desired_values.get(kind)) for kind in settings.detectors}
    classifier = RepositoryClassifier(cache_store, inspector, policy=settings.cache_policy, budget=budget)
    reconciler = IssueReconciler(tracker, budget=budget, dry_run=settings.dry_run)
    service = FleetScanService(classifier, reconciler, reader, detectors=detectors, budget=budget)
    builder = AggregateBuilder(tracker, budget=budget)
    notifier = RunNotifier(sink)

    runs: List[DetectorRun] = []
    for kind in settings.detectors:
        report = service.run(
            kind,
            repositories,
            concurrency_limit=settings.concurrency,
            cancel_event=cancel_event,
            timeout_seconds=settings.run_timeout_seconds,
        )

        view = None
        try:
            view = builder.rebuild(kind, settings.organizations)
            if settings.rollup_repository is not None:
                builder.publish(view, settings.rollup_repository, dry_run=settings.dry_run)
        except Exception as e:
            logger.error(f"Failed to rebuild {kind.value} rollup: {e}", exc_info=True)

        notifier.notify(report, view)
        runs.append(DetectorRun(report=report, view=view))

        if report.cancelled:
            logger.warning("Run cancelled; remaining detectors not started")
            break
    return runs
