#!/usr/bin/env python3
"""Script to scan the fleet for drift and converge tracking issues."""

import logging
import sys
import os

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fleet_drift.application.fleet_run import scan_fleet
from fleet_drift.config import ScanSettings
from fleet_drift.domain.errors import FatalConfigurationError
from fleet_drift.infrastructure.cache_files import JsonFileCacheStore
from fleet_drift.infrastructure.database import PostgresCacheStore
from fleet_drift.infrastructure.github_client import GitHubClient
from fleet_drift.infrastructure.slack_notifier import SlackWebhookSink

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Scan every configured organization with every configured detector."""
    cache_store = None
    try:
        settings = ScanSettings.from_env()
        logging.getLogger().setLevel(settings.log_level)
        if not settings.github_token:
            logger.warning("GITHUB_TOKEN not found. Using unauthenticated requests (limited rate).")

        github_client = GitHubClient(token=settings.github_token, api_url=settings.github_api_url)

        if settings.cache_backend == "postgres":
            cache_store = PostgresCacheStore(max_connections=settings.concurrency + 2)
            cache_store.connect()
            cache_store.initialize_schema()
        else:
            cache_store = JsonFileCacheStore(settings.cache_path)

        sink = SlackWebhookSink(settings.slack_webhook_url) if settings.slack_webhook_url else None

        runs = scan_fleet(
            settings,
            lister=github_client,
            inspector=github_client,
            reader=github_client,
            tracker=github_client,
            cache_store=cache_store,
            sink=sink,
        )

        for run in runs:
            drifted = len(run.view.entries) if run.view is not None else "unknown"
            logger.info(f"{run.report.summary()}; drifted repositories: {drifted}")
        return 0

    except FatalConfigurationError as e:
        logger.error(f"Scan aborted: {e}")
        return 2
    except Exception as e:
        logger.error(f"Scan failed: {e}", exc_info=True)
        return 1
    finally:
        if isinstance(cache_store, JsonFileCacheStore):
            cache_store.save()
        elif isinstance(cache_store, PostgresCacheStore):
            cache_store.close()


if __name__ == "__main__":
    sys.exit(main())
