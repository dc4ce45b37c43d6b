"""Domain entities for GitHub repositories."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Tuple


RepositoryKey = Tuple[str, str]


@dataclass(frozen=True)
class Repository:
    """Immutable repository entity, valid for the duration of one run."""

    owner: str
    name: str
    is_fork: bool = False
    is_archived: bool = False
    primary_language: Optional[str] = None
    languages: Tuple[str, ...] = field(default_factory=tuple)
    pushed_at: Optional[datetime] = None
    url: str = ""

    @property
    def key(self) -> RepositoryKey:
        """Exact (owner, name) identity pair."""
        return (self.owner, self.name)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def is_abandoned(self, now: datetime, after_days: int) -> bool:
        """
        Check whether the repository is archived or has been inactive too long.

        Args:
            now: Reference time (timezone-aware)
            after_days: Inactivity threshold in days

        Returns:
            True if archived or last pushed more than after_days ago
        """
        if self.is_archived:
            return True
        if self.pushed_at is None:
            return False
        return now - self.pushed_at > timedelta(days=after_days)

    def all_languages(self) -> Tuple[str, ...]:
        names = list(self.languages)
        if self.primary_language and self.primary_language not in names:
            names.insert(0, self.primary_language)
        return tuple(names)
