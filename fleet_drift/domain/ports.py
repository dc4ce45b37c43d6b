"""Interfaces of the external collaborators the scanning engine depends on."""

from typing import Iterable, Iterator, List, Optional, Protocol

from fleet_drift.domain.models import ClassificationCacheEntry, DetectorKind, IssueKey, TrackingIssue
from fleet_drift.domain.repository import Repository, RepositoryKey


class RepositoryLister(Protocol):
    def list_repositories(self, organizations: Iterable[str], cursor: Optional[str] = None) -> Iterator[Repository]:
        ...


class RepositoryInspector(Protocol):
    def get_repository(self, owner: str, name: str) -> Repository:
        ...


class ContentReader(Protocol):
    def read_file(self, owner: str, name: str, path: str) -> Optional[bytes]:
        """Return file bytes, or None when the file does not exist."""
        ...


class IssueTracker(Protocol):
    def find_issue(self, key: IssueKey) -> Optional[TrackingIssue]:
        ...

    def create_issue(self, key: IssueKey, title: str, body: str) -> TrackingIssue:
        ...

    def update_issue(self, issue: TrackingIssue, body: str) -> TrackingIssue:
        ...

    def close_issue(self, issue: TrackingIssue) -> TrackingIssue:
        ...

    def list_open_issues(self, kind: DetectorKind, organizations: Iterable[str]) -> List[TrackingIssue]:
        ...

    def find_pull_request(self, owner: str, name: str, branch_prefix: str) -> Optional[str]:
        ...


class CacheStore(Protocol):
    def get(self, key: RepositoryKey) -> Optional[ClassificationCacheEntry]:
        ...

    def put(self, key: RepositoryKey, entry: ClassificationCacheEntry):
        ...

    def delete(self, key: RepositoryKey):
        ...


class NotificationSink(Protocol):
    def send(self, message: str):
        ...
