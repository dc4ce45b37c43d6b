"""Repository eligibility classification with a persistent, exact-key cache."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from fleet_drift.application.rate_limit import ApiBudget
from fleet_drift.domain.errors import ClassificationError
from fleet_drift.domain.models import CACHE_SCHEMA_VERSION, Classification, ClassificationCacheEntry
from fleet_drift.domain.ports import CacheStore, RepositoryInspector
from fleet_drift.domain.repository import Repository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CachePolicy:
    """Staleness policy per classification kind."""

    fork_cache_ttl: timedelta = timedelta(days=30)
    abandoned_cache_ttl: timedelta = timedelta(days=7)
    eligible_recheck_ttl: timedelta = timedelta(days=7)
    abandoned_after_days: int = 365

    def ttl_for(self, classification: Classification) -> timedelta:
        if classification is Classification.FORK:
            return self.fork_cache_ttl
        if classification is Classification.ABANDONED:
            return self.abandoned_cache_ttl
        return self.eligible_recheck_ttl

    def is_fresh(self, entry: ClassificationCacheEntry, now: datetime) -> bool:
        if entry.version != CACHE_SCHEMA_VERSION:
            return False
        return now - entry.cached_at < self.ttl_for(entry.classification)


def languages_match(languages: Iterable[str], wanted: Iterable[str]) -> bool:
    """Case-insensitive exact language name match. An empty wanted set matches anything."""
    wanted_set = {w.lower() for w in wanted}
    if not wanted_set:
        return True
    return any(language.lower() in wanted_set for language in languages)


class RepositoryClassifier:
    """Decides whether a repository is in scope for a detector."""

    def __init__(
        self,
        cache_store: CacheStore,
        inspector: RepositoryInspector,
        policy: Optional[CachePolicy] = None,
        budget: Optional[ApiBudget] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize classifier.

        Args:
            cache_store: Store holding one entry per exact (owner, name) pair
            inspector: Collaborator used to fetch fresh repository metadata
            policy: Cache staleness policy
            budget: Shared API budget gating metadata lookups
            clock: Returns the current timezone-aware time
        """
        self.cache_store = cache_store
        self.inspector = inspector
        self.policy = policy or CachePolicy()
        self.budget = budget
        self.clock = clock

    def classify(self, repo: Repository, languages: Iterable[str] = ()) -> Classification:
        """
        Classify a repository, serving a fresh cached decision when one exists.

        Args:
            repo: Repository to classify
            languages: Languages the calling detector cares about (empty = any)

        Returns:
            Classification for this repository and detector

        Raises:
            ClassificationError: If the metadata lookup failed; nothing is cached
        """
        now = self.clock()
        entry = self.cache_store.get(repo.key)
        if entry is not None and entry.key == repo.key and self.policy.is_fresh(entry, now):
            logger.debug(f"Cache hit for {repo.full_name}: {entry.classification.value}")
        else:
            entry = self._refresh(repo, now)
        return self._for_detector(entry, languages)

    def invalidate(self, repo: Repository):
        self.cache_store.delete(repo.key)

    def _refresh(self, repo: Repository, now: datetime) -> ClassificationCacheEntry:
        try:
            if self.budget is not None:
                fresh = self.budget.call(
                    lambda: self.inspector.get_repository(repo.owner, repo.name),
                    f"classify {repo.full_name}",
                )
            else:
                fresh = self.inspector.get_repository(repo.owner, repo.name)
        except ClassificationError:
            raise
        except Exception as e:
            raise ClassificationError(f"Metadata lookup for {repo.full_name} failed: {e}") from e

        if fresh.key != repo.key:
            raise ClassificationError(
                f"Metadata lookup for {repo.full_name} returned {fresh.full_name}"
            )

        if fresh.is_fork:
            classification = Classification.FORK
        elif fresh.is_abandoned(now, self.policy.abandoned_after_days):
            classification = Classification.ABANDONED
        else:
            classification = Classification.ELIGIBLE

        entry = ClassificationCacheEntry(
            owner=repo.owner,
            name=repo.name,
            classification=classification,
            cached_at=now,
            languages=fresh.all_languages(),
        )
        self.cache_store.put(repo.key, entry)
        logger.debug(f"Classified {repo.full_name} as {classification.value}")
        return entry

    @staticmethod
    def _for_detector(entry: ClassificationCacheEntry, languages: Iterable[str]) -> Classification:
        if entry.classification is not Classification.ELIGIBLE:
            return entry.classification
        if not languages_match(entry.languages, languages):
            return Classification.NON_MATCHING
        return Classification.ELIGIBLE
