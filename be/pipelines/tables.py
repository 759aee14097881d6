"""Registry of staging tables and the database side of a load.

Each ``TableSpec`` ties a staging export (a glob under the staging directory)
to a target model through a list of ``ColumnSpec`` mappings. ``TableWriter``
upserts one batch per session/transaction, so a failed batch never rolls
back the ones before it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import models
from ..config import settings
from ..db import upsert_insert
from .staging import (
    ColumnKind,
    ColumnSpec,
    LoadProgress,
    ProgressCallback,
    StagingFileError,
    load_staging_files,
    transform_row,
)

logger = logging.getLogger(__name__)

C = ColumnSpec.of
K = ColumnKind


@dataclass(frozen=True)
class TableSpec:
    """How one staging export maps onto one table."""
    key: str
    label: str
    model: type[models.Base]
    staging_glob: str
    columns: tuple[ColumnSpec, ...]
    conflict_columns: tuple[str, ...]
    update_columns: tuple[str, ...] = ()
    touch_column: str | None = None
    derive: Callable[[dict[str, Any], Mapping[str, Any]], None] | None = field(default=None, compare=False)

    @property
    def table_name(self) -> str:
        return self.model.__tablename__

    def transform(self, row: Mapping[str, Any]) -> dict[str, Any]:
        record = transform_row(self.columns, row)
        if self.derive is not None:
            self.derive(record, row)
        return record

    def files(self, data_dir: str | Path) -> list[Path]:
        return sorted(Path(data_dir).glob(self.staging_glob))


def _derive_universe(record: dict[str, Any], row: Mapping[str, Any]) -> None:
    flag = (row.get("DATA_QUALITY_FLAG") or "").strip()
    record["registration_status"] = "needs_review" if flag == "REVENUE_ANOMALY" else "active"


def _derive_search(record: dict[str, Any], row: Mapping[str, Any]) -> None:
    record["entity_type"] = record["entity_type"] or "contractor"
    record["is_active"] = bool(record["is_active"])


TABLES: dict[str, TableSpec] = {
    spec.key: spec
    for spec in (
        TableSpec(
            key="universe",
            label="Contractor Universe",
            model=models.ContractorUniverse,
            staging_glob="full_contractor_universe*.csv.gz",
            columns=(
                C("uei", "RECIPIENT_UEI", nullable=False),
                C("legal_business_name", "RECIPIENT_NAME", nullable=False),
                C("entity_type", "ENTITY_TYPE"),
                C("last_updated_date", "LAST_UPDATED", kind=K.TIMESTAMP),
                C("lifetime_revenue", "TOTAL_REVENUE_LIFETIME_MILLIONS", kind=K.DECIMAL, nullable=False),
                C("is_prime", "HAS_PRIME_ACTIVITY", kind=K.BOOLEAN),
                C("is_subcontractor", "HAS_SUB_ACTIVITY", kind=K.BOOLEAN),
            ),
            conflict_columns=("uei",),
            update_columns=(
                "legal_business_name",
                "entity_type",
                "registration_status",
                "last_updated_date",
                "lifetime_revenue",
                "is_prime",
                "is_subcontractor",
            ),
            touch_column="updated_at",
            derive=_derive_universe,
        ),
        TableSpec(
            key="metrics",
            label="Contractor Metrics Monthly",
            model=models.ContractorMetricsMonthly,
            staging_glob="full_contractor_metrics_monthly/*.csv.gz",
            columns=(
                C("contractor_uei", "RECIPIENT_UEI", nullable=False),
                C("contractor_name", "RECIPIENT_NAME", nullable=False),
                C("month_year", "SNAPSHOT_MONTH", kind=K.DATE, nullable=False),
                C("monthly_revenue", "REVENUE_MONTHLY_MILLIONS", kind=K.DECIMAL, nullable=False),
                C("monthly_awards", "AWARDS_MONTHLY_MILLIONS", kind=K.DECIMAL, nullable=False),
                C("active_contracts", "ACTIVE_CONTRACT_COUNT", kind=K.INTEGER, nullable=False),
                C("revenue_growth_yoy", "GROWTH_YOY_REVENUE_TTM_PCT", kind=K.DECIMAL),
                C("activity_status", "ACTIVITY_CLASSIFICATION"),
                C("days_inactive", "DAYS_SINCE_LAST_CONTRACT_START", kind=K.INTEGER),
                C("pipeline_value", "ACTIVE_PIPELINE_MILLIONS", kind=K.DECIMAL, nullable=False),
                C("primary_agency", "AWARDING_AGENCY_NAME"),
            ),
            conflict_columns=("contractor_uei", "month_year"),
            update_columns=(
                "monthly_revenue",
                "monthly_awards",
                "active_contracts",
                "revenue_growth_yoy",
                "activity_status",
                "days_inactive",
                "pipeline_value",
                "primary_agency",
            ),
            touch_column="updated_at",
        ),
        TableSpec(
            key="peer",
            label="Peer Comparisons Monthly",
            model=models.PeerComparisonMonthly,
            staging_glob="peer_comparisons_monthly/*.csv.gz",
            columns=(
                C("contractor_uei", "contractor_uei", "uei", nullable=False),
                C("contractor_name", "contractor_name", "legal_business_name", nullable=False),
                C("month_year", "month_year", "month", kind=K.DATE, nullable=False),
                C("peer_group", "peer_group", "peer_group_name", nullable=False),
                C("peer_group_size", kind=K.INTEGER),
                C("revenue_percentile", kind=K.INTEGER),
                C("revenue_rank", kind=K.INTEGER),
                C("growth_percentile", kind=K.INTEGER),
                C("overall_performance_score", "overall_performance_score", "performance_score", kind=K.INTEGER),
                C("competitive_positioning", "competitive_positioning", "positioning"),
                C("peer_median_revenue", kind=K.DECIMAL, nullable=False),
                C("trend_direction", "trend_direction", "trend"),
            ),
            conflict_columns=("contractor_uei", "peer_group", "month_year"),
            update_columns=(
                "revenue_percentile",
                "revenue_rank",
                "growth_percentile",
                "overall_performance_score",
                "competitive_positioning",
                "trend_direction",
            ),
            touch_column="imported_at",
        ),
        TableSpec(
            key="portfolio",
            label="Portfolio Breakdowns Monthly",
            model=models.PortfolioBreakdownMonthly,
            staging_glob="portfolio_breakdowns_monthly/*.csv.gz",
            columns=(
                C("contractor_uei", "contractor_uei", "uei", nullable=False),
                C("contractor_name", "contractor_name", "legal_business_name", nullable=False),
                C("month_year", "month_year", "month", kind=K.DATE, nullable=False),
                C("top_agencies", kind=K.JSON),
                C("agency_hhi", "agency_hhi", "agency_concentration", kind=K.DECIMAL),
                C("agency_count", kind=K.INTEGER),
                C("top_naics", kind=K.JSON),
                C("naics_hhi", "naics_hhi", "naics_concentration", kind=K.DECIMAL),
                C("concentration_risk_score", "concentration_risk_score", "risk_score", kind=K.INTEGER),
                C("diversification_score", kind=K.INTEGER),
            ),
            conflict_columns=("contractor_uei", "month_year"),
            update_columns=(
                "top_agencies",
                "agency_hhi",
                "top_naics",
                "naics_hhi",
                "concentration_risk_score",
                "diversification_score",
            ),
            touch_column="imported_at",
        ),
        TableSpec(
            key="sub",
            label="Subcontractor Metrics Monthly",
            model=models.SubcontractorMetricsMonthly,
            staging_glob="full_subcontractor_metrics_monthly/*.csv.gz",
            columns=(
                C("subcontractor_uei", "subcontractor_uei", "sub_uei", "uei", nullable=False),
                C("subcontractor_name", "subcontractor_name", "sub_name", "legal_business_name", nullable=False),
                C("month_year", "month_year", "month", kind=K.DATE, nullable=False),
                C(
                    "monthly_subcontract_revenue",
                    "monthly_subcontract_revenue",
                    "subcontract_revenue",
                    "revenue",
                    kind=K.DECIMAL,
                    nullable=False,
                ),
                C("monthly_subcontracts", "monthly_subcontracts", "subcontract_count", kind=K.INTEGER, nullable=False),
                C("unique_primes", "unique_primes", "prime_count", kind=K.INTEGER, nullable=False),
                C("subcontract_win_rate", "subcontract_win_rate", "win_rate", kind=K.DECIMAL),
            ),
            conflict_columns=("subcontractor_uei", "month_year"),
            update_columns=(
                "monthly_subcontract_revenue",
                "monthly_subcontracts",
                "unique_primes",
                "subcontract_win_rate",
            ),
            touch_column="imported_at",
        ),
        TableSpec(
            key="network",
            label="Contractor Network Metrics",
            model=models.ContractorNetworkMetric,
            staging_glob="subcontractor_network_metrics_monthly/*.csv.gz",
            columns=(
                C("prime_uei", "prime_uei", "prime_contractor_uei", nullable=False),
                C("prime_name", "prime_name", "prime_contractor_name"),
                C("sub_uei", "sub_uei", "subcontractor_uei", nullable=False),
                C("sub_name", "sub_name", "subcontractor_name"),
                C("month_year", "month_year", "month", kind=K.DATE, nullable=False),
                C("monthly_shared_revenue", "monthly_shared_revenue", "shared_revenue", kind=K.DECIMAL, nullable=False),
                C(
                    "monthly_shared_contracts",
                    "monthly_shared_contracts",
                    "shared_contracts",
                    kind=K.INTEGER,
                    nullable=False,
                ),
                C(
                    "relationship_strength_score",
                    "relationship_strength_score",
                    "strength_score",
                    kind=K.INTEGER,
                ),
                C("joint_win_rate", "joint_win_rate", "win_rate", kind=K.FLOAT),
                C("is_active", "is_active", "active", kind=K.BOOLEAN),
            ),
            conflict_columns=("prime_uei", "sub_uei", "month_year"),
            update_columns=(
                "monthly_shared_revenue",
                "monthly_shared_contracts",
                "relationship_strength_score",
                "joint_win_rate",
                "is_active",
            ),
            touch_column="imported_at",
        ),
        TableSpec(
            key="search",
            label="Search Index",
            model=models.ContractorSearchIndex,
            staging_glob="iceberg_search_union/*.csv.gz",
            columns=(
                C("entity_uei", "entity_uei", "uei", nullable=False),
                C("entity_type"),
                C("searchable_name", "searchable_name", "name", "contractor_name", nullable=False),
                C("display_name", "display_name", "name", "contractor_name", nullable=False),
                C("alternate_names", kind=K.JSON),
                C("search_vector"),
                C("search_tags", kind=K.JSON),
                C("search_keywords", kind=K.JSON),
                C("primary_industry", "primary_industry", "industry"),
                C("primary_agency", "primary_agency", "agency"),
                C("location", kind=K.JSON),
                C("relevance_score", kind=K.INTEGER),
                C("activity_score", kind=K.INTEGER),
                C("revenue_rank", kind=K.INTEGER),
                C("summary", kind=K.JSON),
                C("is_active", "is_active", "active", kind=K.BOOLEAN),
            ),
            conflict_columns=("entity_uei", "entity_type"),
            update_columns=(
                "searchable_name",
                "display_name",
                "alternate_names",
                "search_tags",
                "search_keywords",
                "relevance_score",
                "activity_score",
                "revenue_rank",
                "summary",
                "is_active",
            ),
            touch_column="last_indexed_at",
            derive=_derive_search,
        ),
    )
}


def get_table_spec(key: str) -> TableSpec:
    try:
        return TABLES[key]
    except KeyError:
        raise KeyError(f"Unknown table {key!r}. Available: {', '.join(TABLES)}") from None


class TableWriter:
    """Async batch upsert into one table, one transaction per batch."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], spec: TableSpec) -> None:
        self.session_maker = session_maker
        self.spec = spec
        self.batches_written = 0

    def _statement(self, session: AsyncSession):
        table = self.spec.model.__table__
        stmt = upsert_insert(session, table)
        if not self.spec.update_columns:
            return stmt.on_conflict_do_nothing(index_elements=list(self.spec.conflict_columns))

        updates: dict[str, Any] = {column: stmt.excluded[column] for column in self.spec.update_columns}
        if self.spec.touch_column:
            updates[self.spec.touch_column] = func.now()
        return stmt.on_conflict_do_update(
            index_elements=list(self.spec.conflict_columns),
            set_=updates,
        )

    async def __call__(self, records: list[dict[str, Any]]) -> int:
        async with self.session_maker() as session:
            async with session.begin():
                await session.execute(self._statement(session), records)
        self.batches_written += 1
        return len(records)


async def record_etl_run(
    session_maker: async_sessionmaker[AsyncSession],
    label: str,
    progress: LoadProgress,
    started_at: datetime,
    *,
    fatal_error: str | None = None,
) -> models.EtlRun:
    """Persist an audit row for one table load."""
    finished_at = datetime.utcnow()
    if fatal_error is not None:
        status = "failed"
    elif progress.total_failed > 0:
        status = "completed_with_errors"
    else:
        status = "completed"

    messages = ([f"Fatal error: {fatal_error}"] if fatal_error else []) + progress.errors
    run = models.EtlRun(
        table_name=label,
        records_processed=progress.total_processed,
        records_inserted=progress.total_inserted,
        records_skipped=progress.total_skipped,
        records_failed=progress.total_failed,
        load_start_time=started_at,
        load_end_time=finished_at,
        load_duration_ms=int((finished_at - started_at).total_seconds() * 1000),
        load_status=status,
        error_message="\n".join(messages) if messages else None,
    )
    async with session_maker() as session:
        session.add(run)
        await session.commit()
    return run


async def load_table(
    key: str,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    data_dir: str | Path | None = None,
    batch_size: int | None = None,
    progress_callback: ProgressCallback | None = None,
    count_rows: bool | None = None,
) -> LoadProgress:
    """Load every staging file of one registered table and audit the run.

    Raises:
        KeyError: If ``key`` is not a registered table
        StagingFileError: If no staging file exists or one cannot be read
    """
    spec = get_table_spec(key)
    data_dir = data_dir or settings.etl.data_dir
    files = spec.files(data_dir)
    started_at = datetime.utcnow()

    logger.info(f"Loading {spec.label} from {len(files)} file(s) under {data_dir}")

    try:
        if not files:
            raise StagingFileError(f"No staging files match {spec.staging_glob} under {data_dir}")

        progress = await load_staging_files(
            files,
            spec.transform,
            TableWriter(session_maker, spec),
            table_name=spec.table_name,
            batch_size=batch_size or settings.etl.batch_size,
            progress_callback=progress_callback,
            count_rows=settings.etl.count_rows if count_rows is None else count_rows,
            max_errors=settings.etl.max_errors,
        )
    except StagingFileError as e:
        logger.error(f"Fatal error loading {spec.label}: {e}")
        await record_etl_run(
            session_maker,
            spec.label,
            LoadProgress(table_name=spec.table_name),
            started_at,
            fatal_error=str(e),
        )
        raise

    await record_etl_run(session_maker, spec.label, progress, started_at)
    return progress
