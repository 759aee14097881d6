"""Core SQLAlchemy models (2.x style) for the contractor schema.

Profiles, the contractor cache and the UEI mapping table back the fuzzy
matcher; the monthly metric tables are the targets of the staging loader.
Types stay portable (no JSONB/UUID columns) so the same models run on SQLite.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ContractorProfile(Base):
    """Canonical contractor profile aggregating one or more UEIs."""
    __tablename__ = "contractor_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    canonical_name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    total_ueis: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_contracts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_obligated: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    primary_agency: Mapped[str | None] = mapped_column(Text)
    headquarters_state: Mapped[str | None] = mapped_column(String(10))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    mappings: Mapped[list[ContractorUeiMapping]] = relationship(
        "ContractorUeiMapping",
        back_populates="profile",
    )


class ContractorCache(Base):
    """Raw contractor records as exported, one row per UEI."""
    __tablename__ = "contractors_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    contractor_uei: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    contractor_name: Mapped[str] = mapped_column(Text, nullable=False)
    primary_agency: Mapped[str | None] = mapped_column(Text)
    state: Mapped[str | None] = mapped_column(String(10))
    total_contracts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_obligated: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class ContractorUeiMapping(Base):
    """Permanent UEI → profile link. One mapping per UEI."""
    __tablename__ = "contractor_uei_mappings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    profile_id: Mapped[str] = mapped_column(
        ForeignKey("contractor_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contractor_cache_id: Mapped[str] = mapped_column(
        ForeignKey("contractors_cache.id", ondelete="CASCADE"),
        nullable=False,
    )
    uei: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    contractor_name: Mapped[str] = mapped_column(Text, nullable=False)
    mapping_confidence: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    mapping_method: Mapped[str] = mapped_column(String(50), default="exact_match", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    profile: Mapped[ContractorProfile] = relationship("ContractorProfile", back_populates="mappings")


class ContractorUniverse(Base):
    """Every known contractor entity (full_contractor_universe export)."""
    __tablename__ = "contractor_universe"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uei: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    legal_business_name: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(20))
    registration_status: Mapped[str | None] = mapped_column(String(20))
    last_updated_date: Mapped[datetime | None] = mapped_column(DateTime)
    lifetime_revenue: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    is_prime: Mapped[bool | None] = mapped_column(Boolean)
    is_subcontractor: Mapped[bool | None] = mapped_column(Boolean)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )


class ContractorMetricsMonthly(Base):
    """Monthly performance metrics for prime contractors."""
    __tablename__ = "contractor_metrics_monthly"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contractor_uei: Mapped[str] = mapped_column(String(20), nullable=False)
    contractor_name: Mapped[str] = mapped_column(Text, nullable=False)
    month_year: Mapped[date] = mapped_column(Date, nullable=False)
    monthly_revenue: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    monthly_awards: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    active_contracts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    revenue_growth_yoy: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    activity_status: Mapped[str | None] = mapped_column(String(20))
    days_inactive: Mapped[int | None] = mapped_column(Integer)
    pipeline_value: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    primary_agency: Mapped[str | None] = mapped_column(Text)
    imported_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("contractor_uei", "month_year", name="uq_metrics_contractor_month"),
        Index("ix_metrics_month_year", "month_year"),
    )


class PeerComparisonMonthly(Base):
    """Peer group rankings per contractor and month."""
    __tablename__ = "peer_comparisons_monthly"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contractor_uei: Mapped[str] = mapped_column(String(20), nullable=False)
    contractor_name: Mapped[str] = mapped_column(Text, nullable=False)
    month_year: Mapped[date] = mapped_column(Date, nullable=False)
    peer_group: Mapped[str] = mapped_column(Text, nullable=False)
    peer_group_size: Mapped[int | None] = mapped_column(Integer)
    revenue_percentile: Mapped[int | None] = mapped_column(Integer)
    revenue_rank: Mapped[int | None] = mapped_column(Integer)
    growth_percentile: Mapped[int | None] = mapped_column(Integer)
    overall_performance_score: Mapped[int | None] = mapped_column(Integer)
    competitive_positioning: Mapped[str | None] = mapped_column(String(20))
    peer_median_revenue: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    trend_direction: Mapped[str | None] = mapped_column(String(20))
    imported_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("contractor_uei", "peer_group", "month_year", name="uq_peer_contractor_group_month"),
    )


class PortfolioBreakdownMonthly(Base):
    """Agency and NAICS concentration per contractor and month."""
    __tablename__ = "portfolio_breakdowns_monthly"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contractor_uei: Mapped[str] = mapped_column(String(20), nullable=False)
    contractor_name: Mapped[str] = mapped_column(Text, nullable=False)
    month_year: Mapped[date] = mapped_column(Date, nullable=False)
    top_agencies: Mapped[list | None] = mapped_column(JSON)
    agency_hhi: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    agency_count: Mapped[int | None] = mapped_column(Integer)
    top_naics: Mapped[list | None] = mapped_column(JSON)
    naics_hhi: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    concentration_risk_score: Mapped[int | None] = mapped_column(Integer)
    diversification_score: Mapped[int | None] = mapped_column(Integer)
    imported_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("contractor_uei", "month_year", name="uq_portfolio_contractor_month"),
    )


class SubcontractorMetricsMonthly(Base):
    """Monthly subcontracting activity."""
    __tablename__ = "subcontractor_metrics_monthly"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subcontractor_uei: Mapped[str] = mapped_column(String(20), nullable=False)
    subcontractor_name: Mapped[str] = mapped_column(Text, nullable=False)
    month_year: Mapped[date] = mapped_column(Date, nullable=False)
    monthly_subcontract_revenue: Mapped[Decimal] = mapped_column(
        Numeric(20, 2),
        default=Decimal("0"),
        nullable=False,
    )
    monthly_subcontracts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_primes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    subcontract_win_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 4))
    imported_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("subcontractor_uei", "month_year", name="uq_sub_contractor_month"),
    )


class ContractorNetworkMetric(Base):
    """Prime/sub relationship strength per month."""
    __tablename__ = "contractor_network_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prime_uei: Mapped[str] = mapped_column(String(20), nullable=False)
    prime_name: Mapped[str | None] = mapped_column(Text)
    sub_uei: Mapped[str] = mapped_column(String(20), nullable=False)
    sub_name: Mapped[str | None] = mapped_column(Text)
    month_year: Mapped[date] = mapped_column(Date, nullable=False)
    monthly_shared_revenue: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    monthly_shared_contracts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    relationship_strength_score: Mapped[int | None] = mapped_column(Integer)
    joint_win_rate: Mapped[float | None] = mapped_column(Float)
    is_active: Mapped[bool | None] = mapped_column(Boolean)
    imported_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("prime_uei", "sub_uei", "month_year", name="uq_network_prime_sub_month"),
    )


class ContractorSearchIndex(Base):
    """Denormalized search documents for contractors and other entities."""
    __tablename__ = "contractor_search_index"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_uei: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), default="contractor", nullable=False)
    searchable_name: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    alternate_names: Mapped[list | None] = mapped_column(JSON)
    search_vector: Mapped[str | None] = mapped_column(Text)
    search_tags: Mapped[list | None] = mapped_column(JSON)
    search_keywords: Mapped[list | None] = mapped_column(JSON)
    primary_industry: Mapped[str | None] = mapped_column(Text)
    primary_agency: Mapped[str | None] = mapped_column(Text)
    location: Mapped[dict | None] = mapped_column(JSON)
    relevance_score: Mapped[int | None] = mapped_column(Integer)
    activity_score: Mapped[int | None] = mapped_column(Integer)
    revenue_rank: Mapped[int | None] = mapped_column(Integer)
    summary: Mapped[dict | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_indexed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_uei", "entity_type", name="uq_search_entity"),
    )


class EtlRun(Base):
    """Audit row written after every table load."""
    __tablename__ = "contractor_etl_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_inserted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    load_start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    load_end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    load_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    load_status: Mapped[str] = mapped_column(String(30), nullable=False)  # completed, completed_with_errors, failed
    error_message: Mapped[str | None] = mapped_column(Text)
    loaded_by: Mapped[str] = mapped_column(String(100), default="snowflake-loader", nullable=False)
    load_type: Mapped[str] = mapped_column(String(20), default="full", nullable=False)
