"""
Maintenance commands for registration storage.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from site_backend.dependencies import get_registration_storage

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Registration storage maintenance")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("health", help="Print the per-tier health report")
    subparsers.add_parser(
        "migrate-donation-fields",
        help="Persist default donation fields for older registrations",
    )
    subparsers.add_parser("sync-blob", help="Force a sync of registrations to Blob")
    check = subparsers.add_parser("check-edge-config", help="Test Edge Config access")
    check.add_argument(
        "--attempts",
        type=int,
        default=5,
        help="How many times to re-initialize and test-read",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    storage = get_registration_storage()

    if args.command == "health":
        print(json.dumps(storage.health_report(), indent=2))
        return 0

    if args.command == "migrate-donation-fields":
        result = storage.migrate_donation_fields()
        logger.info(result.message)
        return 0 if result.success else 1

    if args.command == "sync-blob":
        if not storage.blob.enabled:
            logger.error("Blob mirroring is not enabled in configuration")
            return 1
        registrations = storage.get_registrations().data
        if not storage.blob.sync_registrations_to_blob(registrations, force=True):
            logger.error("Failed to sync registrations to blob storage")
            return 1
        logger.info("Synced %d registrations to blob storage", len(registrations))
        return 0

    ok = storage.test_edge_config(max_attempts=args.attempts)
    logger.info("Edge Config is %s", "reachable" if ok else "unavailable")
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
