from datetime import timedelta

import pytest

from fleet_drift.config import ScanSettings
from fleet_drift.domain.errors import FatalConfigurationError
from fleet_drift.domain.models import DetectorKind


def test_defaults() -> None:
    settings = ScanSettings.from_env({"FLEET_ORGANIZATIONS": "acme, beta"})

    assert settings.organizations == ["acme", "beta"]
    assert settings.detectors == list(DetectorKind)
    assert settings.concurrency == 8
    assert settings.cache_policy.fork_cache_ttl == timedelta(days=30)
    assert settings.rollup_repository is None
    assert settings.dry_run is False
    assert settings.run_timeout_seconds is None


def test_overrides() -> None:
    settings = ScanSettings.from_env({
        "FLEET_ORGANIZATIONS": "acme",
        "FLEET_DETECTORS": "go-version,docker-base-image",
        "FLEET_CONCURRENCY": "16",
        "FLEET_ELIGIBLE_RECHECK_TTL_DAYS": "1",
        "FLEET_ROLLUP_REPOSITORY": "acme/fleet-status",
        "FLEET_DESIRED_GO_VERSION": "1.23",
        "FLEET_DRY_RUN": "true",
        "FLEET_RUN_TIMEOUT_SECONDS": "1800",
    })

    assert settings.detectors == [DetectorKind.GO_VERSION, DetectorKind.DOCKER_BASE_IMAGE]
    assert settings.concurrency == 16
    assert settings.cache_policy.eligible_recheck_ttl == timedelta(days=1)
    assert settings.rollup_repository == ("acme", "fleet-status")
    assert settings.desired_values == {DetectorKind.GO_VERSION: "1.23"}
    assert settings.dry_run is True
    assert settings.run_timeout_seconds == 1800.0


@pytest.mark.parametrize(
    "env",
    [
        {},
        {"FLEET_ORGANIZATIONS": "acme", "FLEET_DETECTORS": "rust-version"},
        {"FLEET_ORGANIZATIONS": "acme", "FLEET_CONCURRENCY": "0"},
        {"FLEET_ORGANIZATIONS": "acme", "FLEET_RATE_PER_SECOND": "fast"},
        {"FLEET_ORGANIZATIONS": "acme", "FLEET_ROLLUP_REPOSITORY": "fleet-status"},
        {"FLEET_ORGANIZATIONS": "acme", "FLEET_CACHE_BACKEND": "redis"},
    ],
)
def test_invalid_configuration_is_fatal(env) -> None:
    with pytest.raises(FatalConfigurationError):
        ScanSettings.from_env(env)


def test_log_level_is_validated() -> None:
    assert ScanSettings.from_env({"FLEET_ORGANIZATIONS": "acme", "LOG_LEVEL": "debug"}).log_level == "DEBUG"

    with pytest.raises(FatalConfigurationError):
        ScanSettings.from_env({"FLEET_ORGANIZATIONS": "acme", "LOG_LEVEL": "chatty"})


def test_zero_retries_is_allowed() -> None:
    assert ScanSettings.from_env({"FLEET_ORGANIZATIONS": "acme", "FLEET_MAX_RETRIES": "0"}).max_retries == 0
