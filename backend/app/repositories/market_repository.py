"""External market persistence helpers."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import asc, desc, func, select
from sqlalchemy.orm import Session

from app.domain import MarketSource, MarketStatus, UnifiedMarket
from app.models import ExternalMarket, utcnow


class MarketRepository:
    """Encapsulate persistence of venue listings."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def upsert_market(self, market: UnifiedMarket) -> ExternalMarket:
        existing = self._session.get(ExternalMarket, market.id)
        is_new = False
        if existing is None:
            existing = ExternalMarket(market_id=market.id)
            is_new = True

        existing.external_id = market.external_id
        existing.source = market.source.value
        existing.question = market.question
        existing.yes_price = market.yes_price
        existing.no_price = market.no_price
        existing.volume = market.volume
        existing.liquidity = market.liquidity
        existing.end_time = market.end_time
        existing.category = market.category
        # A locally recorded resolution is never downgraded by a stale listing.
        if existing.status != MarketStatus.RESOLVED.value:
            existing.status = market.status.value
        existing.raw_data = market.raw_data
        existing.last_synced_at = utcnow()

        if is_new:
            self._session.add(existing)

        return existing

    def upsert_markets(self, markets: Iterable[UnifiedMarket]) -> int:
        count = 0
        for market in markets:
            self.upsert_market(market)
            count += 1
        return count

    def mark_resolved(self, market_id: str, *, outcome: bool, resolved_at: datetime) -> ExternalMarket | None:
        market = self._session.get(ExternalMarket, market_id)
        if market is None:
            return None
        market.status = MarketStatus.RESOLVED.value
        market.outcome = outcome
        market.resolved_at = resolved_at
        return market

    # ------------------------------------------------------------------
    # Queries

    def list_active_questions(self) -> list[str]:
        query = (
            select(ExternalMarket.question)
            .where(ExternalMarket.status == MarketStatus.ACTIVE.value)
            .order_by(ExternalMarket.market_id.asc())
        )
        return list(self._session.execute(query).scalars().all())

    def list_markets(
        self,
        *,
        source: MarketSource | str | None = None,
        status: str | None = None,
        sort: str = "volume",
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ExternalMarket], int]:
        filters: list[Any] = []
        if source:
            filters.append(ExternalMarket.source == MarketSource(source).value)
        if status:
            filters.append(ExternalMarket.status == status)

        sort_column = {
            "volume": ExternalMarket.volume,
            "end_time": ExternalMarket.end_time,
            "last_synced_at": ExternalMarket.last_synced_at,
        }.get(sort, ExternalMarket.volume)

        sort_direction = asc if order.lower() != "desc" else desc
        query = (
            select(ExternalMarket)
            .where(*filters)
            .order_by(sort_direction(sort_column), ExternalMarket.market_id.asc())
            .limit(limit)
            .offset(offset)
        )
        total_query = select(func.count(ExternalMarket.market_id)).where(*filters)

        markets = list(self._session.execute(query).scalars().all())
        total = self._session.execute(total_query).scalar_one()
        return markets, total

    def get_market(self, market_id: str) -> ExternalMarket | None:
        return self._session.get(ExternalMarket, market_id)


__all__ = ["MarketRepository"]
