#!/usr/bin/env python3
"""Print MMDB metadata and optionally look up addresses against it.

Usage:
    python tooling/scripts/inspect_mmdb.py data/GeoLite2-City.mmdb 8.8.8.8 1.1.1.1
"""

from __future__ import annotations

import argparse
import json
import sys

from loguru import logger

from telemetry_api.services.geo.errors import GeoDatabaseError
from telemetry_api.services.geo.mmdb import MMDBReader


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect a MaxMind DB file")
    parser.add_argument("path", help="Path to the .mmdb file.")
    parser.add_argument("addresses", nargs="*", help="IP addresses to look up.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    try:
        reader = MMDBReader.open(args.path)
    except GeoDatabaseError as exc:
        logger.error("Cannot open geolocation database", path=args.path, error=str(exc))
        return 1

    metadata = reader.metadata
    logger.info(
        "Geolocation database metadata",
        database_type=metadata.database_type,
        ip_version=metadata.ip_version,
        node_count=metadata.node_count,
        record_size=metadata.record_size,
        build_epoch=metadata.build_epoch,
        languages=metadata.languages,
    )

    exit_code = 0
    for address in args.addresses:
        try:
            record, prefix_len = reader.lookup_with_prefix_len(address)
        except (GeoDatabaseError, ValueError) as exc:
            logger.warning("Lookup failed", address=address, error=str(exc))
            exit_code = 1
            continue
        print(json.dumps({"address": address, "prefix_len": prefix_len, "record": record}, default=str))
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
