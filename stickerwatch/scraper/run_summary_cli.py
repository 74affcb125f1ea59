from __future__ import annotations

"""CLI helper for printing progress ledger summaries."""

import argparse
import json
from pathlib import Path
from typing import Sequence

from . import config
from .catalog import load_catalog
from .config_validation import ConfigError
from .ledger import ProgressLedger
from .telemetry import latest_run_file
from .utils import load_json_file


def _build_parser() -> argparse.ArgumentParser:
    """Return an argument parser for the ledger summary CLI."""

    parser = argparse.ArgumentParser(
        description="Show scrape progress from the progress ledger.",
    )
    parser.add_argument(
        "--ledger",
        type=Path,
        default=None,
        help="Ledger file to summarise.",
    )
    parser.add_argument(
        "--last-run",
        action="store_true",
        help="Also print the counters of the most recent run telemetry file.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the summary as JSON.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ledger summary CLI."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    ledger_path = Path(args.ledger or config.LEDGER_FILE)
    if not ledger_path.exists():
        parser.error(f"No progress ledger at {ledger_path}")

    ledger = ProgressLedger.load(ledger_path)
    summary = ledger.summary()
    try:
        summary["catalog_total"] = len(load_catalog())
    except ConfigError:
        summary["catalog_total"] = None

    last_run = None
    if args.last_run:
        path = latest_run_file()
        if path is not None:
            last_run = load_json_file(path)

    if args.json:
        print(json.dumps({"ledger": summary, "last_run": last_run}, indent=2))
        return 0

    total = summary["catalog_total"]
    total_text = str(total) if total is not None else "?"
    print(f"Ledger {ledger_path}")
    print(f"  completed: {summary['completed']}/{total_text}")
    print(f"  results: {summary['results']}")
    print(f"  partial: {summary['partial']}")
    print(f"  unknown units: {summary['unknown_units']}")
    print(f"  uploaded: {summary['uploaded']}")

    unknowns = ledger.results_with_unknowns()
    if unknowns:
        print("\nUnknown counts:")
        for result in unknowns:
            counts = ", ".join(f"{c}x" for c in result.unknown_counts())
            print(f"  {result.sticker_id} ({result.name}): {counts}")

    if last_run:
        print(f"\nLast run {last_run.get('run_id')} ({last_run.get('mode')})")
        for key, value in sorted((last_run.get("summary") or {}).items()):
            print(f"  {key}: {value}")

    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
