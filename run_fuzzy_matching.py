"""Reconcile unmapped UEIs with contractor profiles.

Usage:
    python run_fuzzy_matching.py            # find and apply matches
    python run_fuzzy_matching.py sample     # preview matches, apply nothing
"""

import argparse
import asyncio
import sys

from be.config import settings
from be.db import AsyncSessionMaker, engine
from be.logging_config import setup_logging
from be.pipelines.fuzzy_matching import (
    FuzzyMatchingError,
    FuzzyMatchRun,
    get_sample_matches,
    run_fuzzy_matching_process,
)

REVIEW_LINES = 10


def print_run(run: FuzzyMatchRun) -> None:
    print(f"🔍 Found matches: {run.found_matches}")
    print(f"✅ Applied matches: {run.applied_matches}")
    print(f"📊 Average confidence: {run.average_confidence}%")
    if run.after is not None:
        print(
            f"📈 Mapped UEIs: {run.after.mapped_ueis}/{run.after.total_ueis} "
            f"({run.after.mapping_percentage}%), {run.after.unmapped_ueis} unmapped"
        )
    if run.review_matches:
        print(f"\n⚠️ {len(run.review_matches)} matches below the confidence threshold need review:")
        for match in run.review_matches[:REVIEW_LINES]:
            print(f"   {match.uei} {match.contractor_name!r} -> {match.profile_name!r} ({match.confidence}%)")


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Fuzzy-match unmapped UEIs to contractor profiles.")
    parser.add_argument("mode", nargs="?", choices=["run", "sample"], default="run")
    args = parser.parse_args(argv)

    setup_logging()
    try:
        async with AsyncSessionMaker() as session:
            if args.mode == "sample":
                for match in await get_sample_matches(session):
                    print(f"   {match.uei} {match.contractor_name!r} -> {match.profile_name!r} ({match.confidence}%)")
                return 0

            run = await run_fuzzy_matching_process(
                session,
                min_similarity=settings.fuzzy.min_similarity,
                min_confidence=settings.fuzzy.min_confidence,
                limit=settings.fuzzy.limit,
            )
            print_run(run)
            return 0
    except FuzzyMatchingError as e:
        print(f"❌ Fuzzy matching failed: {e}")
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
