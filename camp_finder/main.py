"""CLI entry point: find group accommodation around a location."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from .config import Settings
from .enrichment import verify_websites
from .errors import LocationNotFound
from .export import write_csv
from .models import SearchResult
from .pipeline import AccommodationSearch, group_by_type

DEFAULT_RADIUS_KM = 10.0
EXIT_LOCATION_NOT_FOUND = 2


def main(argv: Sequence[str] | None = None) -> None:
    """Execute the CLI."""

    args = _parse_args(argv)
    _configure_logging(args.log_level)

    settings = Settings.from_env()
    if args.no_gemini:
        settings = replace(settings, gemini_api_key=None)
    if not settings.gemini_enabled:
        logging.info("Gemini search disabled")

    try:
        result = asyncio.run(_run(settings, args.location, args.radius, args.verify_websites))
    except LocationNotFound as exc:
        logging.error("%s", exc)
        raise SystemExit(EXIT_LOCATION_NOT_FOUND) from exc

    if args.output:
        output_path = Path(args.output)
        _write_results(output_path, result)
        logging.info("Wrote %d accommodations to %s", len(result.results), output_path)
    if args.json:
        json.dump(result.to_dict(), sys.stdout, ensure_ascii=False, indent=2)
        sys.stdout.write("\n")


async def _run(settings: Settings, location: str, radius_km: float, check_websites: bool) -> SearchResult:
    printed = 0

    def show_progress(_results, logs: list[str]) -> None:
        nonlocal printed
        for line in logs[printed:]:
            print(line, file=sys.stderr, flush=True)
        printed = len(logs)

    def show_query(term: str, response: str) -> None:
        print(f"  [gemini] {term}: {response}", file=sys.stderr, flush=True)

    async with AccommodationSearch(settings) as search:
        result = await search.search(
            location,
            radius_km,
            on_gemini_query=show_query,
            on_progress=show_progress,
        )

    if check_websites:
        checked = await verify_websites(
            result.results,
            user_agent=settings.user_agent,
            concurrency=settings.website_check_concurrency,
        )
        verified = sum(1 for item in checked if item.website_verified)
        logging.info("Verified %d of %d websites", verified, sum(1 for item in checked if item.website))
        result = replace(result, results=checked, grouped=group_by_type(checked))
    return result


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--location", required=True, help="Place name, e.g. 'Torhout, België'")
    parser.add_argument(
        "--radius",
        type=float,
        default=DEFAULT_RADIUS_KM,
        help="Search radius in kilometres",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Write the results to this CSV file",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the final result as JSON on stdout",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (e.g. INFO, DEBUG)",
    )
    parser.add_argument(
        "--verify-websites",
        action="store_true",
        help="Fetch each listed website and check that it belongs to the venue",
    )
    parser.add_argument(
        "--no-gemini",
        action="store_true",
        help="Skip the Gemini search even when GEMINI_API_KEY is set",
    )

    args = parser.parse_args(argv)
    if args.radius <= 0:
        parser.error("--radius must be positive")
    return args


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(message)s",
    )


def _write_results(path: Path, result: SearchResult) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as handle:
        write_csv(handle, result.results)


if __name__ == "__main__":
    main()
