#!/usr/bin/env python3
"""
Command line runner: classify a CSV of websites and write the augmented file.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from tqdm import tqdm

import batch_scheduler
import config
from classifier_client import GeminiSiteClassifier
from csv_io import DEFAULT_EXPORT_FILENAME, generate_csv, guess_url_column, parse_csv
from progress import ProgressSnapshot


async def run_classification_async(args) -> batch_scheduler.RunSummary:
    input_path = Path(args.input).expanduser().resolve()
    output_path = Path(args.output).expanduser().resolve()
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    api_key = config.resolve_api_key(args.api_key)
    if not api_key:
        raise SystemExit("No Gemini API key: pass --api-key or set GEMINI_API_KEY.")

    print(f"Loading rows from {input_path}")
    store = parse_csv(input_path.read_bytes())
    if len(store) == 0:
        raise SystemExit("Input has no data rows.")

    url_column = args.url_column or guess_url_column(store.headers)
    if url_column not in store.headers:
        raise SystemExit(f"Unknown URL column: {url_column}")
    print(f"Rows loaded: {len(store):,} (URL column: {url_column})")

    classifier = GeminiSiteClassifier(api_key, model=args.model, max_retries=args.max_retries)
    progress = tqdm(total=len(store.pending_indices()), desc="Classifying", unit="site")
    last_processed = 0

    def _on_update(snapshot: ProgressSnapshot) -> None:
        nonlocal last_processed
        if snapshot.processed > last_processed:
            progress.update(snapshot.processed - last_processed)
            last_processed = snapshot.processed
        progress.set_postfix({"batch": f"{snapshot.batch_index}/{snapshot.batch_count}"})

    try:
        summary = await batch_scheduler.run(
            store,
            url_column,
            classifier,
            batch_size=args.batch_size,
            pause_seconds=args.batch_pause,
            on_update=_on_update,
        )
    finally:
        progress.close()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(generate_csv(store), encoding="utf-8")
    print(f"Done. {summary.processed:,} rows classified in {summary.elapsed_seconds:.1f}s")
    print(f"CSV output: {output_path}")
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="classify_cli.py",
        description="Classify the business type of each website in a CSV with Gemini + Google Search.",
    )
    parser.add_argument("input", help="Input CSV (`;` or `,` delimited) with a website column.")
    parser.add_argument("-o", "--output", default=DEFAULT_EXPORT_FILENAME, help="Output CSV path.")
    parser.add_argument("--url-column", default="", help="Column holding the URLs (auto-detected if omitted).")
    parser.add_argument("--api-key", default="", help="Gemini API key (defaults to GEMINI_API_KEY / API_KEY).")
    parser.add_argument("--model", default=config.GEMINI_MODEL)
    parser.add_argument("--batch-size", type=int, default=config.BATCH_SIZE)
    parser.add_argument("--batch-pause", type=float, default=config.BATCH_PAUSE_SECONDS)
    parser.add_argument("--max-retries", type=int, default=config.MAX_RETRIES)
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    return parser


def main():
    args = build_parser().parse_args()
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_classification_async(args))


if __name__ == "__main__":
    main()
