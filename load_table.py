"""Load Snowflake staging exports into Postgres.

Usage:
    python load_table.py              # every registered table, in order
    python load_table.py metrics      # a single table

Exits 0 when the run completes (even with failed batches, which are listed
in the summary) and 1 on a fatal error such as a missing staging file.
"""

import argparse
import asyncio
import sys
import time

from be.config import settings
from be.db import AsyncSessionMaker, engine
from be.logging_config import setup_logging
from be.pipelines.staging import LoadProgress, StagingFileError
from be.pipelines.tables import TABLES, load_table

SUMMARY_ERRORS = 5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Load staging exports into the database.")
    parser.add_argument(
        "table",
        nargs="?",
        help=f"Table to load ({', '.join(TABLES)}). Loads all tables when omitted.",
    )
    return parser


def print_progress(processed: int, total: int | None) -> None:
    if total:
        print(f"  {processed}/{total} rows ({processed / total * 100:.1f}%)")
    else:
        print(f"  {processed} rows...")


def print_summary(label: str, progress: LoadProgress, seconds: float) -> None:
    marker = "✅" if progress.success else "⚠️"
    print(f"{marker} {label} loaded in {seconds:.1f}s")
    print(f"   Processed: {progress.total_processed}")
    print(f"   Inserted: {progress.total_inserted}")
    print(f"   Skipped: {progress.total_skipped}")
    print(f"   Failed: {progress.total_failed}")

    if progress.errors:
        print("   Errors encountered:")
        for error in progress.errors[:SUMMARY_ERRORS]:
            print(f"      - {error}")
        if len(progress.errors) > SUMMARY_ERRORS:
            print(f"      ... and {len(progress.errors) - SUMMARY_ERRORS} more")


async def run(keys: list[str], session_maker=AsyncSessionMaker) -> int:
    """Load ``keys`` in order; returns the process exit code."""
    exit_code = 0
    for key in keys:
        spec = TABLES[key]
        print(f"\n{'=' * 50}")
        print(f"Loading {spec.label}...")
        print("=" * 50)

        started = time.monotonic()
        try:
            progress = await load_table(key, session_maker, progress_callback=print_progress)
        except StagingFileError as e:
            print(f"❌ Failed to load {spec.label}: {e}")
            exit_code = 1
            continue
        print_summary(spec.label, progress, time.monotonic() - started)
    return exit_code


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.table and args.table not in TABLES:
        print(f"Unknown table: {args.table}")
        print("\nAvailable tables:")
        for key, spec in TABLES.items():
            print(f"  {key:<10} - {spec.label}")
        return 1

    setup_logging()
    keys = [args.table] if args.table else list(TABLES)
    print(f"Staging directory: {settings.etl.data_dir}")

    try:
        return await run(keys)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
