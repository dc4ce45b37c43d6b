#!/usr/bin/env python3
"""Create the classification cache table used by FLEET_CACHE_BACKEND=postgres."""

import logging
import sys
import os

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fleet_drift.infrastructure.database import PostgresCacheStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    cache_store = PostgresCacheStore(max_connections=1)
    try:
        cache_store.initialize_schema()
        cached = len(cache_store.all_entries())
        logger.info(f"classification_cache ready with {cached} cached repositories")
        return 0
    except Exception as e:
        logger.error(f"Could not prepare classification_cache: {e}")
        return 1
    finally:
        cache_store.close()


if __name__ == "__main__":
    sys.exit(main())
