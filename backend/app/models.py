from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class ResolutionStatus(str, Enum):
    RESOLVING = "resolving"
    SUBMITTED = "submitted"
    RESOLVED = "resolved"
    FAILED = "failed"


class ScheduledResolutionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExternalMarket(Base):
    __tablename__ = "external_markets"

    market_id: Mapped[str] = mapped_column(String, primary_key=True)
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    yes_price: Mapped[int] = mapped_column(Integer, nullable=False)
    no_price: Mapped[int] = mapped_column(Integer, nullable=False)
    volume: Mapped[float] = mapped_column(Numeric(18, 4), nullable=False, default=0)
    liquidity: Mapped[float | None] = mapped_column(Numeric(18, 4), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    outcome: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("ix_external_markets_source_status", "source", "status"),)


class ArbitrageOpportunityRecord(Base):
    __tablename__ = "arbitrage_opportunities"

    opportunity_id: Mapped[str] = mapped_column(String, primary_key=True)
    market1_source: Mapped[str] = mapped_column(String(20), nullable=False)
    market1_id: Mapped[str] = mapped_column(String, nullable=False)
    market1_question: Mapped[str] = mapped_column(Text, nullable=False)
    market1_yes_price: Mapped[int] = mapped_column(Integer, nullable=False)
    market1_no_price: Mapped[int] = mapped_column(Integer, nullable=False)
    market2_source: Mapped[str] = mapped_column(String(20), nullable=False)
    market2_id: Mapped[str] = mapped_column(String, nullable=False)
    market2_question: Mapped[str] = mapped_column(Text, nullable=False)
    market2_yes_price: Mapped[int] = mapped_column(Integer, nullable=False)
    market2_no_price: Mapped[int] = mapped_column(Integer, nullable=False)
    spread: Mapped[float] = mapped_column(Numeric(10, 4), nullable=False)
    potential_profit: Mapped[float] = mapped_column(Numeric(10, 4), nullable=False)
    confidence: Mapped[float] = mapped_column(Numeric(10, 4), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    strategy: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_arbitrage_opportunities_status_expiry", "status", "expires_at"),)


class MirrorResolution(Base):
    """Local settlement ledger, one row per mirror key."""

    __tablename__ = "mirror_resolutions"

    mirror_key: Mapped[str] = mapped_column(String(66), primary_key=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ResolutionStatus.RESOLVING.value)
    yes_won: Mapped[bool] = mapped_column(Boolean, nullable=False)
    source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    oracle_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ScheduledResolution(Base):
    __tablename__ = "scheduled_resolutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_market_id: Mapped[str] = mapped_column(String, nullable=False)
    mirror_key: Mapped[str | None] = mapped_column(String(66), nullable=True)
    oracle_source: Mapped[str] = mapped_column(String(20), nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ScheduledResolutionStatus.PENDING.value
    )
    outcome: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    execute_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_scheduled_resolutions_status_time", "status", "scheduled_time"),)
