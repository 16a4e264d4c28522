"""Arbitrage opportunity persistence."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.domain import ArbitrageOpportunity, OpportunityStatus
from app.models import ArbitrageOpportunityRecord


class OpportunityRepository:
    """Upsert-by-id storage for detected opportunities."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def upsert_opportunity(self, opportunity: ArbitrageOpportunity) -> ArbitrageOpportunityRecord | None:
        """Insert or refresh a row by its deterministic id.

        Runs inside a SAVEPOINT so a duplicate-key race with another writer
        only discards this row, not the caller's transaction. Returns ``None``
        when the row lost that race.
        """

        try:
            with self._session.begin_nested():
                record = self._session.get(ArbitrageOpportunityRecord, opportunity.id)
                if record is None:
                    record = ArbitrageOpportunityRecord(opportunity_id=opportunity.id)
                    self._apply(record, opportunity)
                    self._session.add(record)
                else:
                    self._refresh(record, opportunity)
        except IntegrityError:
            logger.debug("Opportunity {} already written by a concurrent scan", opportunity.id)
            return None
        return record

    def upsert_opportunities(self, opportunities: Iterable[ArbitrageOpportunity]) -> int:
        written = 0
        for opportunity in opportunities:
            if self.upsert_opportunity(opportunity) is not None:
                written += 1
        return written

    def expire_active(self, now: datetime, *, superseded: bool = False) -> int:
        """Expire active rows; all of them when a fresh scan supersedes them."""

        statement = update(ArbitrageOpportunityRecord).where(
            ArbitrageOpportunityRecord.status == OpportunityStatus.ACTIVE.value
        )
        if not superseded:
            statement = statement.where(ArbitrageOpportunityRecord.expires_at <= now)
        result = self._session.execute(
            statement.values(status=OpportunityStatus.EXPIRED.value).execution_options(
                synchronize_session="fetch"
            )
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Queries

    def list_active(self, now: datetime, *, min_spread: float = 0.0, limit: int = 50) -> list[ArbitrageOpportunityRecord]:
        query = (
            select(ArbitrageOpportunityRecord)
            .where(
                ArbitrageOpportunityRecord.status == OpportunityStatus.ACTIVE.value,
                ArbitrageOpportunityRecord.expires_at > now,
                ArbitrageOpportunityRecord.spread >= min_spread,
            )
            .order_by(
                ArbitrageOpportunityRecord.potential_profit.desc(),
                ArbitrageOpportunityRecord.opportunity_id.asc(),
            )
            .limit(limit)
        )
        return list(self._session.execute(query).scalars().all())

    def get(self, opportunity_id: str) -> ArbitrageOpportunityRecord | None:
        return self._session.get(ArbitrageOpportunityRecord, opportunity_id)

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    def _apply(record: ArbitrageOpportunityRecord, opportunity: ArbitrageOpportunity) -> None:
        for prefix, leg in (("market1", opportunity.market1), ("market2", opportunity.market2)):
            setattr(record, f"{prefix}_source", leg.source.value)
            setattr(record, f"{prefix}_id", leg.id)
            setattr(record, f"{prefix}_question", leg.question)
            setattr(record, f"{prefix}_yes_price", leg.yes_price)
            setattr(record, f"{prefix}_no_price", leg.no_price)
        record.detected_at = opportunity.detected_at
        OpportunityRepository._refresh(record, opportunity)

    @staticmethod
    def _refresh(record: ArbitrageOpportunityRecord, opportunity: ArbitrageOpportunity) -> None:
        # Leg identity is fixed by the id; only prices and status fields move.
        record.market1_yes_price = opportunity.market1.yes_price
        record.market1_no_price = opportunity.market1.no_price
        record.market2_yes_price = opportunity.market2.yes_price
        record.market2_no_price = opportunity.market2.no_price
        record.spread = opportunity.spread
        record.potential_profit = opportunity.potential_profit
        record.confidence = opportunity.confidence
        record.status = opportunity.status.value
        record.strategy = opportunity.strategy
        record.expires_at = opportunity.expires_at


__all__ = ["OpportunityRepository"]
