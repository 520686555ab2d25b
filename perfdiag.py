from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from aggregates import DEFAULT_PERCENTILES
from dicomweb import DEFAULT_BASE_URL
from errors import BenchmarkError
from runner import RunConfig, run_benchmark

logger = logging.getLogger("perfdiag")


def _parse_percentiles(value: str) -> list[float]:
    parts = [part.strip() for part in value.split(",") if part.strip()]
    if not parts:
        raise argparse.ArgumentTypeError("--percentiles cannot be empty")
    percentiles: list[float] = []
    for part in parts:
        try:
            parsed = float(part)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(
                f"Invalid percentile '{part}'. Expected comma-separated numbers."
            ) from exc
        if not 0 <= parsed <= 100:
            raise argparse.ArgumentTypeError(
                f"Percentiles must be between 0 and 100, got {parsed}."
            )
        percentiles.append(parsed)
    return percentiles


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Benchmark retrieval of a whole DICOM study: query its instances, "
            "then retrieve every frame in parallel."
        )
    )

    parser.add_argument("--project", required=True, help="Cloud project ID.")
    parser.add_argument("--location", required=True, help="Dataset location.")
    parser.add_argument("--dataset", required=True, help="Dataset ID.")
    parser.add_argument("--dicom-store", required=True, help="DICOM store ID.")
    parser.add_argument("--study", required=True, help="Study Instance UID.")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL)
    parser.add_argument("--access-token", default=None, help="Bearer token sent as-is.")

    parser.add_argument("-i", "--iterations", type=int, default=1)
    parser.add_argument(
        "-t",
        "--max-threads",
        type=int,
        default=10,
        help="Maximum number of frames retrieved concurrently.",
    )
    parser.add_argument("--timeout-s", type=float, default=300.0)
    parser.add_argument(
        "--percentiles",
        type=_parse_percentiles,
        default=list(DEFAULT_PERCENTILES),
        help="Comma-separated percentiles for the aggregates, e.g. 50,90,99",
    )
    parser.add_argument(
        "--continue-on-error",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Keep going when an iteration cannot query the instance list.",
    )

    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="CSV file for per-iteration metrics.",
    )
    parser.add_argument("--summary-json", type=Path, default=None)
    parser.add_argument("--summary-markdown", type=Path, default=None)
    parser.add_argument("--run-name", default=None)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
    )

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.iterations <= 0:
        parser.error("--iterations must be > 0")
    if args.max_threads <= 0:
        parser.error("--max-threads must be > 0")
    if args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0")


def config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        project=args.project,
        location=args.location,
        dataset=args.dataset,
        dicom_store=args.dicom_store,
        study=args.study,
        base_url=args.base_url,
        iterations=args.iterations,
        max_threads=args.max_threads,
        timeout_s=args.timeout_s,
        access_token=args.access_token,
        output=args.output,
        summary_json=args.summary_json,
        summary_markdown=args.summary_markdown,
        run_name=args.run_name,
        continue_on_error=bool(args.continue_on_error),
        percentiles=args.percentiles,
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = config_from_args(args)
    try:
        asyncio.run(run_benchmark(config))
    except BenchmarkError as exc:
        logger.error("Benchmark failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
