"""Backfill request_hierarchy on existing log indices.

Usage: python reindex.py [--config CONFIG] [--prefix PREFIX] [--dry-run]
"""

import argparse
import logging
import sys

from log_processor.config import load_config
from log_processor.errors import ConfigError
from log_processor.reindex import reindex_url_hierarchy
from log_processor.search_index import SearchIndex


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill request_hierarchy")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--prefix", type=str, default=None,
                        help="index name prefix (defaults to the configured one)")
    parser.add_argument("--page-size", type=int, default=5000)
    parser.add_argument("--dry-run", action="store_true", default=False)
    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(1)

    index = SearchIndex.from_config(config)
    try:
        results = reindex_url_hierarchy(
            index.client,
            args.prefix or config.index_prefix,
            page_size=args.page_size,
            dry_run=args.dry_run,
        )
    finally:
        index.close()

    logger.info(
        "Reindex complete: %d documents across %d indices",
        sum(results.values()), len(results),
    )


if __name__ == "__main__":
    main()
