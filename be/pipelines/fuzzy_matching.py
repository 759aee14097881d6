"""Fuzzy reconciliation of unmapped UEIs against canonical contractor profiles.

Workflow:
1. Select contractors_cache rows whose UEI has no mapping yet
2. Normalize raw and profile names
3. Score every profile with rapidfuzz and keep the best one above the threshold
4. Derive a 0-100 confidence and auto-apply only matches above min_confidence
5. Everything else stays unmapped and is surfaced for manual review

Already-mapped UEIs are never re-examined, so reruns are idempotent.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from rapidfuzz import fuzz, process
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from be import models
from be.config import settings
from be.pipelines.normalization import normalize_company_name

logger = logging.getLogger(__name__)

MATCH_METHOD = "fuzzy_token_sort"
MIN_NAME_LENGTH = 3

# A runner-up within this many points makes the best match ambiguous
AMBIGUITY_MARGIN = 5.0
AMBIGUITY_PENALTY = 10


@dataclass
class FuzzyMatchResult:
    """Best profile candidate for one unmapped UEI."""
    uei: str
    contractor_cache_id: str
    contractor_name: str
    profile_id: str
    profile_name: str
    similarity: float
    confidence: int
    match_method: str = MATCH_METHOD


@dataclass
class MappingStats:
    """UEI mapping coverage."""
    total_ueis: int
    mapped_ueis: int
    unmapped_ueis: int
    mapping_percentage: int


@dataclass
class FuzzyMatchRun:
    """Outcome of one matching pass."""
    found_matches: int
    applied_matches: int
    average_confidence: int
    review_matches: list[FuzzyMatchResult] = field(default_factory=list)
    before: MappingStats | None = None
    after: MappingStats | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _round_half_up(value: float) -> int:
    """Round non-negative values with halves going up (12.5 -> 13)."""
    return int(value + 0.5)


class FuzzyMatchingError(Exception):
    """Raised when the fuzzy matching pipeline fails."""
    pass


def compute_confidence(best_score: float, runner_up_score: float | None = None) -> int:
    """Turn rapidfuzz scores (0-100) into a 0-100 confidence.

    The best score is the baseline. If another profile scores within
    ``AMBIGUITY_MARGIN`` points, the match is ambiguous and loses
    ``AMBIGUITY_PENALTY`` points.
    """
    confidence = best_score
    if runner_up_score is not None and best_score - runner_up_score <= AMBIGUITY_MARGIN:
        confidence -= AMBIGUITY_PENALTY
    return min(100, _round_half_up(max(0.0, confidence)))


async def load_unmapped_contractors(
    session: AsyncSession,
    limit: int,
) -> list[tuple[str, str, str]]:
    """Return (uei, cache_id, contractor_name) for UEIs without a mapping, by UEI."""
    query = (
        select(
            models.ContractorCache.contractor_uei,
            models.ContractorCache.id,
            models.ContractorCache.contractor_name,
        )
        .outerjoin(
            models.ContractorUeiMapping,
            models.ContractorUeiMapping.uei == models.ContractorCache.contractor_uei,
        )
        .where(
            models.ContractorUeiMapping.id.is_(None),
            models.ContractorCache.contractor_name.is_not(None),
            func.length(func.trim(models.ContractorCache.contractor_name)) > MIN_NAME_LENGTH,
        )
        .order_by(models.ContractorCache.contractor_uei)
        .limit(limit)
    )
    result = await session.execute(query)
    return [(row[0], row[1], row[2]) for row in result.all()]


async def load_profile_names(session: AsyncSession) -> dict[str, tuple[str, str]]:
    """Return {profile_id: (display_name, normalized_name)} ordered by id."""
    result = await session.execute(
        select(models.ContractorProfile.id, models.ContractorProfile.display_name)
        .order_by(models.ContractorProfile.id)
    )
    profiles = {}
    for profile_id, display_name in result.all():
        normalized = normalize_company_name(display_name)
        if normalized:
            profiles[profile_id] = (display_name, normalized)
    return profiles


async def find_fuzzy_matches(
    session: AsyncSession,
    min_similarity: float = 0.6,
    limit: int = 1000,
) -> list[FuzzyMatchResult]:
    """Find the best profile for each unmapped UEI.

    Args:
        session: Database session
        min_similarity: Minimum normalized similarity (0-1)
        limit: Maximum number of unmapped UEIs examined

    Returns:
        One result per UEI with a profile above the threshold, best first

    Raises:
        FuzzyMatchingError: If the candidate queries fail
    """
    logger.info(f"Finding fuzzy matches with similarity >= {min_similarity}, limit: {limit}")

    try:
        unmapped = await load_unmapped_contractors(session, limit)
        profiles = await load_profile_names(session)
    except SQLAlchemyError as e:
        logger.error(f"Loading match candidates failed: {e}")
        raise FuzzyMatchingError(f"Failed to load match candidates: {e}") from e

    if not unmapped or not profiles:
        logger.info(f"Nothing to match ({len(unmapped)} unmapped UEIs, {len(profiles)} profiles)")
        return []

    choices = {profile_id: normalized for profile_id, (_, normalized) in profiles.items()}
    cutoff = min_similarity * 100
    matches: list[FuzzyMatchResult] = []

    for uei, cache_id, contractor_name in unmapped:
        query = normalize_company_name(contractor_name)
        if not query:
            continue

        ranked = process.extract(
            query,
            choices,
            scorer=fuzz.token_sort_ratio,
            limit=2,
            score_cutoff=cutoff,
        )
        if not ranked:
            continue

        _, best_score, profile_id = ranked[0]
        runner_up = ranked[1][1] if len(ranked) > 1 else None

        matches.append(FuzzyMatchResult(
            uei=uei,
            contractor_cache_id=cache_id,
            contractor_name=contractor_name,
            profile_id=profile_id,
            profile_name=profiles[profile_id][0],
            similarity=round(best_score / 100.0, 4),
            confidence=compute_confidence(best_score, runner_up),
        ))

    matches.sort(key=lambda m: (-m.similarity, m.uei))
    logger.info(f"Found {len(matches)} fuzzy matches among {len(unmapped)} unmapped UEIs")
    return matches


async def apply_fuzzy_matches(
    session: AsyncSession,
    matches: list[FuzzyMatchResult],
    min_confidence: int = 70,
    batch_size: int | None = None,
) -> int:
    """Create UEI mappings for matches at or above ``min_confidence``.

    UEIs that are already mapped are skipped. A failing batch is rolled
    back and logged; later batches still run.

    Returns:
        Number of mappings inserted
    """
    batch_size = batch_size or settings.fuzzy.apply_batch_size
    confident = [m for m in matches if m.confidence >= min_confidence]

    if not confident:
        logger.info(f"No matches above confidence threshold {min_confidence}%")
        return 0

    logger.info(f"Applying {len(confident)} high-confidence fuzzy matches")
    inserted = 0

    for start in range(0, len(confident), batch_size):
        batch = confident[start:start + batch_size]
        try:
            existing = await session.execute(
                select(models.ContractorUeiMapping.uei)
                .where(models.ContractorUeiMapping.uei.in_([m.uei for m in batch]))
            )
            already_mapped = set(existing.scalars().all())

            new_mappings = [
                models.ContractorUeiMapping(
                    profile_id=m.profile_id,
                    contractor_cache_id=m.contractor_cache_id,
                    uei=m.uei,
                    contractor_name=m.contractor_name,
                    mapping_confidence=m.confidence,
                    mapping_method=m.match_method,
                    is_active=True,
                )
                for m in batch
                if m.uei not in already_mapped
            ]
            session.add_all(new_mappings)
            await session.commit()
            inserted += len(new_mappings)
            logger.debug(f"Inserted mapping batch {start // batch_size + 1} ({inserted} total)")
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Error inserting mapping batch starting at index {start}: {e}")

    return inserted


async def get_mapping_stats(session: AsyncSession) -> MappingStats:
    """Current UEI mapping coverage."""
    try:
        total = await session.scalar(
            select(func.count(models.ContractorCache.contractor_uei.distinct()))
        )
        mapped = await session.scalar(
            select(func.count(models.ContractorUeiMapping.uei.distinct()))
        )
    except SQLAlchemyError as e:
        raise FuzzyMatchingError(f"Failed to compute mapping stats: {e}") from e

    total = total or 0
    mapped = mapped or 0
    return MappingStats(
        total_ueis=total,
        mapped_ueis=mapped,
        unmapped_ueis=max(total - mapped, 0),
        mapping_percentage=_round_half_up(mapped / total * 100) if total else 0,
    )


async def run_fuzzy_matching_process(
    session: AsyncSession,
    min_similarity: float = 0.7,
    min_confidence: int = 75,
    limit: int = 5000,
) -> FuzzyMatchRun:
    """Find and apply fuzzy matches, reporting coverage before and after."""
    logger.info(
        f"Starting fuzzy matching: similarity >= {min_similarity}, "
        f"confidence >= {min_confidence}%, limit: {limit}"
    )

    before = await get_mapping_stats(session)
    logger.info(f"Before: {before.mapped_ueis} UEIs mapped ({before.mapping_percentage}%)")

    matches = await find_fuzzy_matches(session, min_similarity, limit)
    if not matches:
        return FuzzyMatchRun(found_matches=0, applied_matches=0, average_confidence=0, before=before, after=before)

    applied = await apply_fuzzy_matches(session, matches, min_confidence)

    after = await get_mapping_stats(session)
    logger.info(f"After: {after.mapped_ueis} UEIs mapped ({after.mapping_percentage}%)")
    logger.info(f"Improvement: +{after.mapped_ueis - before.mapped_ueis} mappings")

    return FuzzyMatchRun(
        found_matches=len(matches),
        applied_matches=applied,
        average_confidence=_round_half_up(sum(m.confidence for m in matches) / len(matches)),
        review_matches=[m for m in matches if m.confidence < min_confidence],
        before=before,
        after=after,
    )


async def get_sample_matches(session: AsyncSession, count: int = 20) -> list[FuzzyMatchResult]:
    """Preview matches at a loose threshold for manual review."""
    matches = await find_fuzzy_matches(session, min_similarity=0.5, limit=count * 3)
    return matches[:count]
