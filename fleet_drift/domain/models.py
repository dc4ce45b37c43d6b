"""Domain value objects for classification, findings, tracking issues and runs."""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from fleet_drift.domain.repository import RepositoryKey


CACHE_SCHEMA_VERSION = 1


class Classification(str, Enum):
    FORK = "fork"
    ABANDONED = "abandoned"
    NON_MATCHING = "non-matching"
    ELIGIBLE = "eligible"


class DetectorKind(str, Enum):
    """Closed set of drift checks. The value is used in labels and markers."""

    GO_VERSION = "go-version"
    PYTHON_VERSION = "python-version"
    NODE_VERSION = "node-version"
    DOCKER_BASE_IMAGE = "docker-base-image"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IssueState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class IssueScope(str, Enum):
    REPOSITORY = "repository"
    ROLLUP = "rollup"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    CLOSE = "close"
    NOOP = "noop"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ClassificationCacheEntry:
    """Persisted classification decision for exactly one (owner, name) pair."""

    owner: str
    name: str
    classification: Classification
    cached_at: datetime
    languages: Tuple[str, ...] = ()
    version: int = CACHE_SCHEMA_VERSION

    @property
    def key(self) -> RepositoryKey:
        return (self.owner, self.name)

    def to_record(self) -> Dict[str, object]:
        return {
            "owner": self.owner,
            "name": self.name,
            "classification": self.classification.value,
            "cached_at": self.cached_at.isoformat(),
            "languages": list(self.languages),
            "version": self.version,
        }

    @classmethod
    def from_record(cls, record: Dict[str, object]) -> "ClassificationCacheEntry":
        cached_at = datetime.fromisoformat(str(record["cached_at"]).replace("Z", "+00:00"))
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)
        return cls(
            owner=str(record["owner"]),
            name=str(record["name"]),
            classification=Classification(record["classification"]),
            cached_at=cached_at,
            languages=tuple(record.get("languages") or ()),
            version=int(record.get("version", CACHE_SCHEMA_VERSION)),
        )


@dataclass(frozen=True)
class Finding:
    """Drift state of one repository for one detector, recomputed every run."""

    current_value: str
    desired_value: str
    severity: Severity = Severity.LOW
    present: bool = True
    details: str = ""

    def same_value(self, other: Optional["Finding"]) -> bool:
        """Compare the fields that decide whether a tracking issue needs an update."""
        if other is None:
            return False
        return (
            self.current_value == other.current_value
            and self.desired_value == other.desired_value
            and self.severity == other.severity
        )

    def to_marker(self) -> Dict[str, str]:
        return {
            "current": self.current_value,
            "desired": self.desired_value,
            "severity": self.severity.value,
        }

    @classmethod
    def from_marker(cls, data: Dict[str, str]) -> "Finding":
        return cls(
            current_value=str(data["current"]),
            desired_value=str(data["desired"]),
            severity=Severity(data.get("severity", Severity.LOW.value)),
        )


@dataclass(frozen=True)
class IssueKey:
    """Exact identity of a tracking issue in the external tracker."""

    owner: str
    name: str
    kind: DetectorKind
    scope: IssueScope = IssueScope.REPOSITORY

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def label(self) -> str:
        prefix = "drift" if self.scope is IssueScope.REPOSITORY else "drift-rollup"
        return f"{prefix}/{self.kind.value}"

    @property
    def marker(self) -> str:
        return f"fleet-drift:{self.scope.value}:{self.owner}/{self.name}:{self.kind.value}"


@dataclass
class TrackingIssue:
    key: IssueKey
    number: int
    state: IssueState
    body: str = ""
    last_synced_finding: Optional[Finding] = None
    url: str = ""

    @property
    def is_open(self) -> bool:
        return self.state is IssueState.OPEN


@dataclass(frozen=True)
class RepositoryOutcome:
    """Terminal result for one repository in one run."""

    owner: str
    name: str
    status: OutcomeStatus
    action: Optional[Action] = None
    reason: str = ""
    detail: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def succeeded(cls, key: RepositoryKey, action: Action) -> "RepositoryOutcome":
        return cls(key[0], key[1], OutcomeStatus.SUCCEEDED, action=action)

    @classmethod
    def skipped(cls, key: RepositoryKey, reason: str, detail: str = "") -> "RepositoryOutcome":
        return cls(key[0], key[1], OutcomeStatus.SKIPPED, reason=reason, detail=detail)

    @classmethod
    def failed(cls, key: RepositoryKey, reason: str, detail: str = "") -> "RepositoryOutcome":
        return cls(key[0], key[1], OutcomeStatus.FAILED, reason=reason, detail=detail)


@dataclass
class RunReport:
    """Per-repository outcomes of one run of one detector."""

    kind: DetectorKind
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: Dict[RepositoryKey, RepositoryOutcome] = field(default_factory=dict)
    cancelled: bool = False

    def record(self, outcome: RepositoryOutcome):
        self.outcomes[(outcome.owner, outcome.name)] = outcome

    def outcome_for(self, owner: str, name: str) -> Optional[RepositoryOutcome]:
        return self.outcomes.get((owner, name))

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes.values() if outcome.status is status)

    @property
    def succeeded(self) -> int:
        return self.count(OutcomeStatus.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return self.count(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(OutcomeStatus.FAILED)

    def action_counts(self) -> Dict[Action, int]:
        return dict(Counter(o.action for o in self.outcomes.values() if o.action is not None))

    def failures(self) -> List[RepositoryOutcome]:
        return sorted(
            (o for o in self.outcomes.values() if o.status is OutcomeStatus.FAILED),
            key=lambda o: (o.owner, o.name),
        )

    def summary(self) -> str:
        actions = self.action_counts()
        return (
            f"{self.kind.value}: {len(self.outcomes)} repositories, "
            f"{self.succeeded} succeeded, {self.skipped} skipped, {self.failed} failed "
            f"(created {actions.get(Action.CREATE, 0)}, updated {actions.get(Action.UPDATE, 0)}, "
            f"closed {actions.get(Action.CLOSE, 0)})"
        )


@dataclass(frozen=True)
class AggregateEntry:
    owner: str
    name: str
    issue_number: int
    issue_url: str = ""
    finding: Optional[Finding] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class AggregateView:
    """Rollup of every repository with an open tracking issue for one detector."""

    kind: DetectorKind
    entries: List[AggregateEntry]
    generated_at: datetime
    url: str = ""

    @property
    def repositories(self) -> List[RepositoryKey]:
        return [(entry.owner, entry.name) for entry in self.entries]
