"""Application service that scans the fleet for one detector and converges tracking issues."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from fleet_drift.application.classifier import RepositoryClassifier
from fleet_drift.application.detectors import Detector, build_detector
from fleet_drift.application.rate_limit import ApiBudget
from fleet_drift.application.reconciler import IssueReconciler
from fleet_drift.domain.errors import ClassificationError, FatalConfigurationError, ReconciliationError
from fleet_drift.domain.models import Classification, DetectorKind, RepositoryOutcome, RunReport
from fleet_drift.domain.ports import ContentReader
from fleet_drift.domain.repository import Repository, RepositoryKey

logger = logging.getLogger(__name__)


class BudgetedContentReader:
    """Content reader whose every call goes through the shared API budget."""

    def __init__(self, reader: ContentReader, budget: Optional[ApiBudget]):
        self.reader = reader
        self.budget = budget

    def read_file(self, owner: str, name: str, path: str) -> Optional[bytes]:
        if self.budget is None:
            return self.reader.read_file(owner, name, path)
        return self.budget.call(
            lambda: self.reader.read_file(owner, name, path),
            f"read {owner}/{name}:{path}",
        )


class FleetScanService:
    """Runs Classifier -> Detector -> Reconciler for every repository of the fleet."""

    PROGRESS_LOG_EVERY = 100

    def __init__(
        self,
        classifier: RepositoryClassifier,
        reconciler: IssueReconciler,
        content_reader: ContentReader,
        detectors: Optional[Dict[DetectorKind, Detector]] = None,
        budget: Optional[ApiBudget] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize scan service.

        Args:
            classifier: Repository classifier backed by the classification cache
            reconciler: Issue reconciler, the only writer to the tracker
            content_reader: Read-only access to repository files
            detectors: Detector instances by kind; missing kinds use defaults
            budget: Shared API budget (token bucket plus retry policy)
            clock: Returns the current timezone-aware time
        """
        self.classifier = classifier
        self.reconciler = reconciler
        self.content_reader = BudgetedContentReader(content_reader, budget)
        self.detectors = dict(detectors or {})
        self.budget = budget
        self.clock = clock

    def detector_for(self, kind: DetectorKind) -> Detector:
        if kind not in self.detectors:
            self.detectors[kind] = build_detector(kind)
        return self.detectors[kind]

    def run(
        self,
        kind: DetectorKind,
        repositories: Iterable[Repository],
        concurrency_limit: int = 8,
        cancel_event: Optional[threading.Event] = None,
        timeout_seconds: Optional[float] = None,
    ) -> RunReport:
        """
        Scan every repository for one detector.

        Each repository is an independent unit of work; a failure in one never
        stops the others. The run is complete once every repository has an
        outcome in the report.

        Args:
            kind: Detector to run
            repositories: Repository set (may be a lazy, paginated listing)
            concurrency_limit: Maximum number of worker threads
            cancel_event: Set to stop starting new repositories
            timeout_seconds: Cancel the run after this many seconds

        Returns:
            RunReport with one outcome per distinct repository

        Raises:
            FatalConfigurationError: If the repository set cannot be enumerated
        """
        if concurrency_limit < 1:
            raise FatalConfigurationError("concurrency_limit must be at least 1")
        detector = self.detector_for(kind)
        repos = self._enumerate(repositories)
        cancel_event = cancel_event or threading.Event()
        report = RunReport(kind=kind, started_at=self.clock())
        logger.info(f"Starting {kind.value} scan of {len(repos)} repositories with {concurrency_limit} workers")

        timer = None
        if timeout_seconds is not None:
            timer = threading.Timer(timeout_seconds, cancel_event.set)
            timer.daemon = True
            timer.start()

        try:
            with ThreadPoolExecutor(max_workers=concurrency_limit, thread_name_prefix="fleet-drift") as executor:
                futures = {
                    executor.submit(self._process, repo, detector, cancel_event): repo
                    for repo in repos
                }
                for done, future in enumerate(as_completed(futures), start=1):
                    repo = futures[future]
                    try:
                        outcome = future.result()
                    except Exception as e:
                        logger.error(f"Unexpected error scanning {repo.full_name}: {e}", exc_info=True)
                        outcome = RepositoryOutcome.failed(repo.key, type(e).__name__, str(e))
                    report.record(outcome)
                    if done % self.PROGRESS_LOG_EVERY == 0:
                        logger.info(f"Scanned {done}/{len(repos)} repositories for {kind.value}")
        finally:
            if timer is not None:
                timer.cancel()

        report.cancelled = cancel_event.is_set()
        report.finished_at = self.clock()
        logger.info(f"Scan completed. {report.summary()}")
        for failure in report.failures():
            logger.warning(f"{failure.full_name} failed: {failure.reason} {failure.detail}")
        return report

    def _enumerate(self, repositories: Iterable[Repository]) -> List[Repository]:
        seen: Dict[RepositoryKey, Repository] = {}
        try:
            for repo in repositories:
                if repo.key not in seen:
                    seen[repo.key] = repo
        except FatalConfigurationError:
            raise
        except Exception as e:
            raise FatalConfigurationError(f"Could not enumerate repositories: {e}") from e
        return list(seen.values())

    def _process(self, repo: Repository, detector: Detector, cancel_event: threading.Event) -> RepositoryOutcome:
        if cancel_event.is_set():
            return RepositoryOutcome.skipped(repo.key, "cancelled")

        try:
            classification = self.classifier.classify(repo, detector.languages)
        except ClassificationError as e:
            logger.warning(f"Skipping {repo.full_name}: {e}")
            return RepositoryOutcome.skipped(repo.key, "classification-error", str(e))
        if classification is not Classification.ELIGIBLE:
            return RepositoryOutcome.skipped(repo.key, classification.value)

        try:
            finding = detector.detect(repo, self.content_reader)
        except Exception as e:
            logger.error(f"Error reading {repo.full_name} for {detector.kind.value}: {e}")
            return RepositoryOutcome.failed(repo.key, type(e).__name__, str(e))

        try:
            existing = self.reconciler.find_existing(repo, detector)
            pull_request_url = None
            if finding is not None and finding.present and detector.remediation_branch_prefix:
                pull_request_url = self._find_pull_request(repo, detector.remediation_branch_prefix)
            action = self.reconciler.reconcile(repo, detector, finding, existing, pull_request_url)
        except ReconciliationError as e:
            logger.error(f"Reconciliation failed for {repo.full_name}: {e}")
            return RepositoryOutcome.failed(repo.key, e.reason, str(e))

        return RepositoryOutcome.succeeded(repo.key, action)

    def _find_pull_request(self, repo: Repository, branch_prefix: str) -> Optional[str]:
        tracker = self.reconciler.tracker
        try:
            if self.budget is None:
                return tracker.find_pull_request(repo.owner, repo.name, branch_prefix)
            return self.budget.call(
                lambda: tracker.find_pull_request(repo.owner, repo.name, branch_prefix),
                f"find pull request {repo.full_name}",
            )
        except Exception as e:
            logger.warning(f"Could not look up remediation pull request for {repo.full_name}: {e}")
            return None
