#!/usr/bin/env python3
"""Script to dump the classification cache to CSV and JSON."""

import logging
import sys
import os
import csv
import json
from datetime import datetime

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fleet_drift.infrastructure.cache_files import JsonFileCacheStore
from fleet_drift.infrastructure.database import PostgresCacheStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

FIELDS = ["owner", "name", "classification", "cached_at", "languages", "version"]


def load_records():
    """Read every cache entry from the configured backend."""
    if os.getenv("FLEET_CACHE_BACKEND", "json").lower() == "postgres":
        store = PostgresCacheStore()
        try:
            entries = store.all_entries()
        finally:
            store.close()
    else:
        store = JsonFileCacheStore(os.getenv("FLEET_CACHE_PATH", ".fleet-drift/classification-cache.json"))
        entries = store.all_entries()
    return [entry.to_record() for entry in entries]


def dump_to_csv(records, output_file: str):
    """Dump cache entries to CSV."""
    if not records:
        logger.warning("No data to dump")
        return

    with open(output_file, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=FIELDS)
        writer.writeheader()
        for record in records:
            row = dict(record)
            row["languages"] = ";".join(row["languages"])
            writer.writerow(row)

    logger.info(f"Dumped {len(records)} cache entries to {output_file}")


def dump_to_json(records, output_file: str):
    """Dump cache entries to JSON."""
    if not records:
        logger.warning("No data to dump")
        return

    with open(output_file, 'w', encoding='utf-8') as f:
        json.dump(records, f, indent=2, ensure_ascii=False)

    logger.info(f"Dumped {len(records)} cache entries to {output_file}")


def main():
    """Dump classification cache to CSV and JSON."""
    try:
        output_dir = os.getenv("OUTPUT_DIR", "artifacts")
        os.makedirs(output_dir, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        csv_file = os.path.join(output_dir, f"classification_cache_{timestamp}.csv")
        json_file = os.path.join(output_dir, f"classification_cache_{timestamp}.json")

        records = load_records()
        dump_to_csv(records, csv_file)
        dump_to_json(records, json_file)

        logger.info(f"Cache dump completed. Files: {csv_file}, {json_file}")
        return 0
    except Exception as e:
        logger.error(f"Cache dump failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
