"""Scan configuration read from environment variables."""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Tuple

from fleet_drift.application.classifier import CachePolicy
from fleet_drift.domain.errors import FatalConfigurationError
from fleet_drift.domain.models import DetectorKind


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise FatalConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise FatalConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise FatalConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise FatalConfigurationError(f"{name} must be positive, got {value}")
    return value


def _log_level(env: Mapping[str, str]) -> str:
    level = env.get("LOG_LEVEL", "INFO").strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise FatalConfigurationError(f"LOG_LEVEL must be a logging level name, got {level!r}")
    return level


@dataclass
class ScanSettings:
    organizations: List[str]
    detectors: List[DetectorKind]
    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    concurrency: int = 8
    rate_per_second: float = 10.0
    rate_burst: int = 20
    max_retries: int = 5
    cache_policy: CachePolicy = field(default_factory=CachePolicy)
    cache_backend: str = "json"
    cache_path: str = ".fleet-drift/classification-cache.json"
    rollup_repository: Optional[Tuple[str, str]] = None
    desired_values: Dict[DetectorKind, str] = field(default_factory=dict)
    slack_webhook_url: Optional[str] = None
    dry_run: bool = False
    run_timeout_seconds: Optional[float] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ScanSettings":
        """
        Build settings from environment variables.

        Raises:
            FatalConfigurationError: If a variable is missing or invalid
        """
        if env is None:
            env = os.environ

        organizations = _split(env.get("FLEET_ORGANIZATIONS", ""))
        if not organizations:
            raise FatalConfigurationError("FLEET_ORGANIZATIONS is not set")

        detector_names = _split(env.get("FLEET_DETECTORS", ""))
        try:
            detectors = [DetectorKind(name) for name in detector_names] or list(DetectorKind)
        except ValueError as e:
            raise FatalConfigurationError(f"Unknown detector in FLEET_DETECTORS: {e}")

        rollup_repository = None
        rollup = env.get("FLEET_ROLLUP_REPOSITORY", "").strip()
        if rollup:
            owner, sep, name = rollup.partition("/")
            if not sep or not owner or not name or "/" in name:
                raise FatalConfigurationError(f"FLEET_ROLLUP_REPOSITORY must be owner/name, got {rollup!r}")
            rollup_repository = (owner, name)

        cache_backend = env.get("FLEET_CACHE_BACKEND", "json").strip().lower()
        if cache_backend not in ("json", "postgres"):
            raise FatalConfigurationError(f"FLEET_CACHE_BACKEND must be json or postgres, got {cache_backend!r}")

        desired_values = {}
        for kind in DetectorKind:
            variable = "FLEET_DESIRED_" + kind.value.upper().replace("-", "_")
            if env.get(variable):
                desired_values[kind] = env[variable].strip()

        timeout = env.get("FLEET_RUN_TIMEOUT_SECONDS")
        policy = CachePolicy(
            fork_cache_ttl=timedelta(days=_int(env, "FLEET_FORK_CACHE_TTL_DAYS", 30)),
            abandoned_cache_ttl=timedelta(days=_int(env, "FLEET_ABANDONED_CACHE_TTL_DAYS", 7)),
            eligible_recheck_ttl=timedelta(days=_int(env, "FLEET_ELIGIBLE_RECHECK_TTL_DAYS", 7)),
            abandoned_after_days=_int(env, "FLEET_ABANDONED_AFTER_DAYS", 365, minimum=1),
        )

        return cls(
            organizations=organizations,
            detectors=detectors,
            github_token=env.get("GITHUB_TOKEN") or None,
            github_api_url=env.get("GITHUB_API_URL", "https://api.github.com"),
            concurrency=_int(env, "FLEET_CONCURRENCY", 8, minimum=1),
            rate_per_second=_float(env, "FLEET_RATE_PER_SECOND", 10.0),
            rate_burst=_int(env, "FLEET_RATE_BURST", 20, minimum=1),
            max_retries=_int(env, "FLEET_MAX_RETRIES", 5),
            cache_policy=policy,
            cache_backend=cache_backend,
            cache_path=env.get("FLEET_CACHE_PATH", ".fleet-drift/classification-cache.json"),
            rollup_repository=rollup_repository,
            desired_values=desired_values,
            slack_webhook_url=env.get("SLACK_WEBHOOK_URL") or None,
            dry_run=env.get("FLEET_DRY_RUN", "0").strip().lower() in ("1", "true", "yes"),
            run_timeout_seconds=_float(env, "FLEET_RUN_TIMEOUT_SECONDS", 0.0) if timeout else None,
            log_level=_log_level(env),
        )
