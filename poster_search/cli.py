"""
Recommend movies whose posters look like a given poster.

Usage:
    poster-search --catalog movies.json --poster https://.../cover.jpg
    poster-search --catalog movies.csv          # prompts for title and URL
"""

import sys
import json
import logging
import argparse
import threading
from typing import List, Optional

from .catalog import load_catalog
from .engine import DEFAULT_TOP_N, RecommendationEngine
from .errors import CatalogError, ExtractError, FetchError, InvalidArgument
from .features import EXTRACTORS, MeanColorExtractor, get_extractor
from .fetcher import DEFAULT_FETCH_RETRIES, DEFAULT_FETCH_TIMEOUT, ImageFetcher
from .models import RecommendationQuery, RecommendationReport
from .pipeline import DEFAULT_CONCURRENCY, CatalogPipeline

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_QUERY_FAILED = 1
EXIT_CATALOG_FAILED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="poster-search",
        description="Recommend movies with visually similar posters",
    )
    parser.add_argument(
        "--catalog", required=True,
        help="Catalog file (.json or .csv) with id, title, genre, poster_link",
    )
    parser.add_argument("--poster", help="URL or path of the query poster")
    parser.add_argument("--title", help="Title of the query movie")
    parser.add_argument(
        "--top-n", type=int, default=DEFAULT_TOP_N,
        help=f"Number of recommendations (default: {DEFAULT_TOP_N})",
    )
    parser.add_argument(
        "--concurrency", type=int, default=DEFAULT_CONCURRENCY,
        help=f"Maximum concurrent poster downloads (default: {DEFAULT_CONCURRENCY})",
    )
    parser.add_argument(
        "--timeout", type=float, default=DEFAULT_FETCH_TIMEOUT,
        help=f"Per-poster fetch timeout in seconds (default: {DEFAULT_FETCH_TIMEOUT})",
    )
    parser.add_argument(
        "--retries", type=int, default=DEFAULT_FETCH_RETRIES,
        help=f"Retries per poster download (default: {DEFAULT_FETCH_RETRIES})",
    )
    parser.add_argument(
        "--policy", choices=sorted(EXTRACTORS), default=MeanColorExtractor.name,
        help="Feature extraction policy (default: %(default)s)",
    )
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def format_report(report: RecommendationReport) -> str:
    lines = ["Recommended movies:"]
    for entry in report.ranked:
        item = entry.item
        lines.append(
            f"Title: {item.title}, Genre: {item.genre}, "
            f"Poster: {item.image_reference}, Distance: {entry.distance:.6f}"
        )
    if report.failures:
        lines.append(f"{len(report.failures)} items skipped due to fetch errors")
    if report.ranked.skipped:
        lines.append(f"{len(report.ranked.skipped)} items skipped with incomparable features")
    if report.cancelled:
        lines.append(f"{len(report.cancelled)} items not processed (cancelled)")
    return "\n".join(lines)


def _prompt(label: str) -> str:
    return input(label).strip()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        items = load_catalog(args.catalog)
    except CatalogError as e:
        logger.error(str(e))
        return EXIT_CATALOG_FAILED

    title = args.title if args.title is not None else _prompt("Movie title: ")
    poster = args.poster if args.poster is not None else _prompt("Poster URL: ")
    query = RecommendationQuery(image_reference=poster, title=title)

    cancel_event = threading.Event()
    try:
        fetcher = ImageFetcher(timeout=args.timeout, retries=args.retries,
                               pool_size=max(1, args.concurrency))
        pipeline = CatalogPipeline(fetcher=fetcher,
                                   extractor=get_extractor(args.policy),
                                   concurrency_limit=args.concurrency)
        engine = RecommendationEngine(pipeline=pipeline)
        report = engine.recommend(query, items, top_n=args.top_n,
                                  cancel_event=cancel_event)
    except InvalidArgument as e:
        logger.error(str(e))
        return EXIT_QUERY_FAILED
    except (FetchError, ExtractError) as e:
        logger.error(f"Could not load the query poster: {e}")
        return EXIT_QUERY_FAILED
    except KeyboardInterrupt:
        cancel_event.set()
        logger.error("Interrupted")
        return EXIT_QUERY_FAILED

    if report.cancelled:
        logger.warning("Run interrupted; results cover the posters fetched so far")

    if args.json:
        print(json.dumps(report.ranked.to_records(), indent=2, default=str))
    else:
        print(format_report(report))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
