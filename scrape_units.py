#!/usr/bin/env python3
import argparse
import csv
import json
import os
import sys
from dataclasses import fields
from functools import partial
from typing import Dict, List, Optional

from run_log import RunLog
from unit_checkpoint import DEFAULT_OUTPUT, DEFAULT_SNAPSHOT, load_completed_units
from unit_fetch import DEFAULT_TIMEOUT, build_session, parse_header_args
from unit_models import CardFacts, ConfigError, OverviewFacts, ScrapeConfig, ScrapeError, Unit
from unit_pipeline import UnitPipeline, default_worker_count, run_job

DEFAULT_CONFIG = "config.json"

# config field -> accepted keys in the JSON file, camel case keys first
CONFIG_KEYS = {
    "base_url": ("ScrapeBaseUrl", "base_url"),
    "listing_path": ("UnitFilterPath", "listing_path"),
    "detail_path": ("UnitDetailPath", "detail_path"),
    "custom_card_path": ("UnitCustomCardPath", "custom_card_path"),
    "filter_query": ("BattleMechFilter", "filter_query"),
}
REQUIRED_CONFIG = ("base_url", "listing_path", "detail_path", "custom_card_path")


def load_config_file(path: str, required: bool = True) -> Dict[str, str]:
    if not os.path.exists(path):
        if required:
            raise ConfigError(f"configuration file {path} does not exist")
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"could not read configuration file {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"configuration file {path} must hold a JSON object")

    values: Dict[str, str] = {}
    for name, keys in CONFIG_KEYS.items():
        for key in keys:
            if key in payload:
                if not isinstance(payload[key], str):
                    raise ConfigError(f"configuration key {key} must be a string")
                values[name] = payload[key]
                break
    return values


def build_config(file_values: Dict[str, str], overrides: Dict[str, Optional[str]]) -> ScrapeConfig:
    values = dict(file_values)
    for name, value in overrides.items():
        if value is not None:
            values[name] = value
    missing = [name for name in REQUIRED_CONFIG if not values.get(name)]
    if missing:
        raise ConfigError(f"missing configuration values: {', '.join(missing)}")
    return ScrapeConfig(
        base_url=values["base_url"].rstrip("/"),
        listing_path=values["listing_path"],
        detail_path=values["detail_path"],
        custom_card_path=values["custom_card_path"],
        filter_query=values.get("filter_query", ""),
    )


def summary_fields() -> List[str]:
    columns = ["id", "designation"]
    columns.extend(f"card_{f.name}" for f in fields(CardFacts))
    columns.extend(f"overview_{f.name}" for f in fields(OverviewFacts))
    return columns


def summary_row(unit: Unit) -> Dict[str, object]:
    row: Dict[str, object] = {"id": unit.id, "designation": unit.designation}
    for f in fields(CardFacts):
        row[f"card_{f.name}"] = getattr(unit.card, f.name)
    for f in fields(OverviewFacts):
        row[f"overview_{f.name}"] = getattr(unit.overview, f.name)
    return row


def write_summary_csv(path: str, units: List[Unit]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=summary_fields())
        writer.writeheader()
        for unit in units:
            writer.writerow(summary_row(unit))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Scrape unit card and overview data into a resumable JSON Lines file."
    )
    parser.add_argument("--config", help=f"JSON configuration file (default: {DEFAULT_CONFIG} if present)")
    parser.add_argument("--base-url", help="Override ScrapeBaseUrl")
    parser.add_argument("--listing-path", help="Override UnitFilterPath")
    parser.add_argument("--detail-path", help="Override UnitDetailPath")
    parser.add_argument("--custom-card-path", help="Override UnitCustomCardPath")
    parser.add_argument("--filter", dest="filter_query", help="Override BattleMechFilter query string")
    parser.add_argument(
        "--output",
        default=DEFAULT_OUTPUT,
        help=f"Results log, one JSON record per line (default: {DEFAULT_OUTPUT})",
    )
    parser.add_argument(
        "--snapshot",
        default=DEFAULT_SNAPSHOT,
        help=f"Pending units progress file (default: {DEFAULT_SNAPSHOT})",
    )
    parser.add_argument(
        "--no-snapshot",
        action="store_true",
        help="Do not keep a progress file; resume only from the results log",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=default_worker_count(),
        help="Parallel unit workers (default: number of CPUs)",
    )
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Per-request timeout (seconds)")
    parser.add_argument(
        "--retries",
        type=int,
        default=2,
        help="Extra attempts for connection errors, timeouts and 5xx responses (default: 2)",
    )
    parser.add_argument("--limit", type=int, help="Only process the first N pending units")
    parser.add_argument("--log-file", help="Run log path (default: scrape.log next to the results log)")
    parser.add_argument("--verbose", action="store_true", help="Also log fields that did not match")
    parser.add_argument("--cookie-file", help="Path to Netscape-format cookie jar file")
    parser.add_argument(
        "--header",
        action="append",
        help="Additional request header in the form 'Key: Value' (repeatable)",
    )
    parser.add_argument("--export-csv", help="Write a CSV summary of the results log after the run")
    args = parser.parse_args(argv)
    if args.workers < 1:
        parser.error("--workers must be at least 1")
    if args.retries < 0:
        parser.error("--retries cannot be negative")
    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be at least 1")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    output_path = os.path.abspath(args.output)
    snapshot_path = None if args.no_snapshot else os.path.abspath(args.snapshot)
    log_path = args.log_file or os.path.join(os.path.dirname(output_path), "scrape.log")
    log = RunLog(log_path, verbose=args.verbose)

    try:
        file_values = load_config_file(args.config or DEFAULT_CONFIG, required=bool(args.config))
        config = build_config(
            file_values,
            {
                "base_url": args.base_url,
                "listing_path": args.listing_path,
                "detail_path": args.detail_path,
                "custom_card_path": args.custom_card_path,
                "filter_query": args.filter_query,
            },
        )
        log.write(f"configuration loaded: {config}")

        session_factory = partial(
            build_session,
            headers=parse_header_args(args.header),
            cookie_file=args.cookie_file,
        )
        session_factory().close()
        pipeline = UnitPipeline(
            config,
            session_factory=session_factory,
            workers=args.workers,
            log=log,
            timeout=args.timeout,
            retries=args.retries,
        )
        result = run_job(pipeline, output_path, snapshot_path=snapshot_path, limit=args.limit)

        if args.export_csv:
            write_summary_csv(args.export_csv, load_completed_units(output_path))
            log.write(f"wrote summary {args.export_csv}")
    except (ScrapeError, OSError) as exc:
        log.write(f"fatal: {exc}", echo=False)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        log.write("interrupted, progress saved for the next run")
        return 130

    if not result.finished:
        log.write(f"{result.remaining} units still pending in {snapshot_path or output_path}")
    print(output_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
