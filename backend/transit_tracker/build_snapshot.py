"""Command line: build the preprocessed network snapshot from raw GTFS tables."""

import argparse
import asyncio
import logging
import sys

from transit_tracker.config import settings
from transit_tracker.core.gtfs_loader import GtfsTableSource, download_gtfs, write_snapshot
from transit_tracker.core.network import NetworkLoadError

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--gtfs-dir", default=settings.gtfs_dir, help="directory with the GTFS .txt tables")
    parser.add_argument("--out", default=settings.gtfs_snapshot_dir, help="snapshot output directory")
    parser.add_argument("--download", metavar="URL", default=None,
                        help="download and extract a GTFS zip into --gtfs-dir first")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    args = parse_args(argv)

    if args.download and not asyncio.run(download_gtfs(args.download, args.gtfs_dir)):
        return 1

    try:
        model = GtfsTableSource(args.gtfs_dir).load()
    except NetworkLoadError as e:
        logger.error("%s", e)
        return 1

    write_snapshot(model, args.out)
    logger.info("Snapshot written to %s", args.out)
    return 0


if __name__ == "__main__":
    sys.exit(main())
