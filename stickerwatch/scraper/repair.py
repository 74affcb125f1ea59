"""Inspect and fix Unknown counts left in the progress ledger.

Unknown counts are normally re-tried by the repair pass of the next run.
This tool is for the cases that keep failing: strike the affected stickers
so they are scraped from scratch, or accept them as 0.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from . import config
from .ledger import ProgressLedger, Result, application_key
from .utils import log_line, save_json_file


def find_unknowns(ledger: ProgressLedger) -> List[Result]:
    return ledger.results_with_unknowns()


def format_unknowns(results: Sequence[Result]) -> List[str]:
    lines: List[str] = []
    for index, result in enumerate(results, start=1):
        lines.append(f"{index}. {result.name} ({result.sticker_id})")
        lines.append(f"   Collection: {result.collection} - {result.rarity}")
        lines.append(
            "   Unknown: " + ", ".join(application_key(c) for c in result.unknown_counts())
        )
        for count in sorted(result.applications):
            value = result.applications[count]
            shown = "NULL" if value is None else f"{value:,}"
            lines.append(f"     {application_key(count)}: {shown}")
    return lines


def strike(ledger: ProgressLedger, sticker_ids: Optional[Sequence[str]] = None) -> int:
    """Remove stickers from the ledger so the next run scrapes them again.

    ``None`` strikes every sticker that currently has an Unknown count.
    """

    if sticker_ids is None:
        sticker_ids = [result.sticker_id for result in find_unknowns(ledger)]
    if not sticker_ids:
        return 0
    return ledger.strike(sticker_ids)


def zero_unknowns(ledger: ProgressLedger, latest_file: Optional[Path] = None) -> int:
    """Convert every Unknown to 0 and rewrite ``latest.json`` if it exists."""

    changed = ledger.zero_unknowns()
    latest = Path(latest_file or config.LATEST_FILE)
    if changed and latest.exists():
        save_json_file(latest, [result.to_dict() for result in ledger.results])
    return changed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="List or fix Unknown (null) application counts in the progress ledger.",
    )
    parser.add_argument("--ledger", type=Path, default=None, help="Ledger file to operate on.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--list", action="store_true", help="List results with Unknown counts (default).")
    group.add_argument(
        "--strike-all",
        action="store_true",
        help="Remove every sticker with an Unknown count so it is re-scraped.",
    )
    group.add_argument(
        "--strike",
        nargs="+",
        metavar="STICKER_ID",
        help="Remove the given stickers so they are re-scraped.",
    )
    group.add_argument(
        "--zero",
        action="store_true",
        help="Convert every Unknown count to 0 and rewrite latest.json.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    ledger_path = Path(args.ledger or config.LEDGER_FILE)
    if not ledger_path.exists():
        print(f"No progress ledger at {ledger_path}")
        return 1
    ledger = ProgressLedger.load(ledger_path)
    unknowns = find_unknowns(ledger)

    if args.strike_all:
        removed = strike(ledger)
        print(f"Marked {removed} stickers for re-scraping")
        log_line(f"[REPAIR] Struck {removed} stickers with Unknown counts")
        return 0

    if args.strike:
        known: Dict[str, Result] = {r.sticker_id: r for r in ledger.results}
        missing = [sid for sid in args.strike if sid not in known]
        if missing:
            print("Not in ledger: " + ", ".join(missing))
        removed = strike(ledger, [sid for sid in args.strike if sid in known])
        print(f"Marked {removed} stickers for re-scraping")
        log_line(f"[REPAIR] Struck {removed} stickers: {', '.join(args.strike)}")
        return 0

    if args.zero:
        changed = zero_unknowns(ledger)
        print(f"Converted {changed} Unknown counts to 0")
        log_line(f"[REPAIR] Converted {changed} Unknown counts to 0")
        return 0

    if not unknowns:
        print("No Unknown counts found.")
        return 0
    print(f"Found {len(unknowns)} stickers with Unknown counts:\n")
    for line in format_unknowns(unknowns):
        print(line)
    return 0


__all__ = ["find_unknowns", "format_unknowns", "strike", "zero_unknowns", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
