"""Detection runs: venue fan-out, matching, selection and persistence."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

import httpx
from loguru import logger
from sqlalchemy.orm import Session

from app.core.cache import TTLCache, market_data_cache
from app.core.config import Settings, get_settings
from app.domain import (
    ArbitrageOpportunity,
    MarketSource,
    MatchedMarketPair,
    OpportunityLeg,
    OpportunityStatus,
    UnifiedMarket,
)
from app.models import ArbitrageOpportunityRecord
from app.repositories import MarketRepository, OpportunityRepository
from ingestion.client import VenueAdapter
from ingestion.normalize import MarketValidationError

from .arbitrage import select_opportunities
from .matching import load_match_config, match_markets

MAX_PAIR_LIMIT = 100
MAX_OPPORTUNITY_LIMIT = 50


class UpstreamUnavailableError(RuntimeError):
    """Raised when neither venue returned listings for a scan."""


@dataclass(slots=True)
class MatchStats:
    total_matched: int
    arbitrage_opportunities: int
    avg_similarity: float
    avg_price_difference: float

    @classmethod
    def from_pairs(cls, pairs: Sequence[MatchedMarketPair]) -> "MatchStats":
        if not pairs:
            return cls(0, 0, 0.0, 0.0)
        return cls(
            total_matched=len(pairs),
            arbitrage_opportunities=sum(1 for pair in pairs if pair.has_arbitrage),
            avg_similarity=sum(pair.similarity for pair in pairs) / len(pairs),
            avg_price_difference=sum(pair.price_difference for pair in pairs) / len(pairs),
        )


@dataclass(slots=True)
class MatchedPairsResult:
    pairs: list[MatchedMarketPair]
    stats: MatchStats


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def build_opportunity(
    pair: MatchedMarketPair, *, detected_at: datetime, ttl_minutes: int
) -> ArbitrageOpportunity:
    if pair.strategy is None:
        raise ValueError(f"Pair {pair.id} carries no arbitrage strategy")
    profit = pair.strategy.potential_profit
    return ArbitrageOpportunity(
        id=f"arb_{pair.market_a.id}_{pair.market_b.id}_{pair.strategy.index}",
        market1=OpportunityLeg.from_market(pair.market_a),
        market2=OpportunityLeg.from_market(pair.market_b),
        spread=profit,
        potential_profit=profit,
        confidence=pair.similarity * 100,
        detected_at=detected_at,
        expires_at=detected_at + timedelta(minutes=ttl_minutes),
        status=OpportunityStatus.ACTIVE,
        strategy=pair.strategy.to_dict(),
    )


def opportunity_from_record(record: ArbitrageOpportunityRecord) -> ArbitrageOpportunity:
    legs = []
    for prefix in ("market1", "market2"):
        legs.append(
            OpportunityLeg(
                source=MarketSource(getattr(record, f"{prefix}_source")),
                id=getattr(record, f"{prefix}_id"),
                question=getattr(record, f"{prefix}_question"),
                yes_price=getattr(record, f"{prefix}_yes_price"),
                no_price=getattr(record, f"{prefix}_no_price"),
            )
        )
    return ArbitrageOpportunity(
        id=record.opportunity_id,
        market1=legs[0],
        market2=legs[1],
        spread=float(record.spread),
        potential_profit=float(record.potential_profit),
        confidence=float(record.confidence),
        detected_at=_as_utc(record.detected_at),
        expires_at=_as_utc(record.expires_at),
        status=OpportunityStatus(record.status),
        strategy=record.strategy,
    )


class ArbitrageService:
    """Cross-venue scan over two adapters, backed by the shared TTL cache."""

    def __init__(
        self,
        session: Session,
        *,
        venue_a: VenueAdapter,
        venue_b: VenueAdapter,
        cache: TTLCache | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._venue_a = venue_a
        self._venue_b = venue_b
        self._cache = cache if cache is not None else market_data_cache
        self.settings = settings or get_settings()
        self._clock = clock
        self._markets = MarketRepository(session)
        self._opportunities = OpportunityRepository(session)

    # ------------------------------------------------------------------
    # Listing fetch

    def _fetch_side(self, adapter: VenueAdapter) -> list[UnifiedMarket]:
        raw = adapter.get_active_markets(self.settings.venue_fetch_limit, 0)
        return adapter.normalize_markets(raw)

    def fetch_listings(self) -> tuple[list[UnifiedMarket], list[UnifiedMarket]]:
        """Fetch both venues concurrently; a failing side comes back empty."""

        adapters = (self._venue_a, self._venue_b)
        results: list[list[UnifiedMarket]] = []
        failures = 0
        with ThreadPoolExecutor(max_workers=len(adapters), thread_name_prefix="venue-fetch") as pool:
            futures = [pool.submit(self._fetch_side, adapter) for adapter in adapters]
            for adapter, future in zip(adapters, futures):
                try:
                    results.append(future.result())
                except (httpx.HTTPError, MarketValidationError) as exc:
                    failures += 1
                    logger.warning("Listing fetch from {} failed: {}", adapter.source.value, exc)
                    results.append([])

        if failures == len(adapters):
            raise UpstreamUnavailableError("No venue returned listings")
        return results[0], results[1]

    # ------------------------------------------------------------------
    # Matched pairs

    def _scan_pairs(self, min_similarity: float) -> list[MatchedMarketPair]:
        config = load_match_config(
            self._markets,
            cache=self._cache,
            ttl_seconds=self.settings.match_config_ttl_seconds,
        )
        markets_a, markets_b = self.fetch_listings()
        logger.info(
            "Comparing {} {} vs {} {} listings ({} key terms)",
            len(markets_a),
            self._venue_a.source.value,
            len(markets_b),
            self._venue_b.source.value,
            len(config.key_terms),
        )
        return match_markets(markets_a, markets_b, config, min_similarity=min_similarity)

    def _pairs_cache_key(self, min_similarity: float) -> str:
        return f"matched-markets:pairs:{min_similarity:.4f}"

    def matched_pairs(self, min_similarity: float, *, refresh: bool = False) -> list[MatchedMarketPair]:
        key = self._pairs_cache_key(min_similarity)
        if refresh:
            self._cache.invalidate(key)
        return self._cache.get_or_set(
            key,
            lambda: self._scan_pairs(min_similarity),
            self.settings.scan_cache_ttl_seconds,
        )

    def find_matched_pairs(
        self,
        *,
        min_similarity: float | None = None,
        only_arbitrage: bool = False,
        limit: int = 50,
    ) -> MatchedPairsResult:
        threshold = self.settings.match_min_similarity if min_similarity is None else min_similarity
        threshold = min(max(threshold, 0.0), 1.0)
        limit = min(max(limit, 1), MAX_PAIR_LIMIT)

        pairs = self.matched_pairs(threshold)
        visible = [pair for pair in pairs if pair.has_arbitrage] if only_arbitrage else pairs
        return MatchedPairsResult(pairs=list(visible[:limit]), stats=MatchStats.from_pairs(pairs))

    # ------------------------------------------------------------------
    # Opportunities

    def find_opportunities(
        self,
        *,
        min_spread: float | None = None,
        limit: int = 20,
        fresh: bool = False,
    ) -> list[ArbitrageOpportunity]:
        spread_floor = self.settings.arbitrage_min_spread if min_spread is None else min_spread
        limit = min(max(limit, 1), MAX_OPPORTUNITY_LIMIT)
        now = self._clock()

        if not fresh:
            self._opportunities.expire_active(now)
            stored = self._opportunities.list_active(now, min_spread=spread_floor, limit=limit)
            if stored:
                self._session.commit()
                return [opportunity_from_record(record) for record in stored]

        return self.scan(min_spread=spread_floor, now=now, fresh=fresh)[:limit]

    def scan(
        self,
        *,
        min_spread: float | None = None,
        now: datetime | None = None,
        fresh: bool = True,
    ) -> list[ArbitrageOpportunity]:
        """Detect, select and persist opportunities; returns them profit-sorted."""

        spread_floor = self.settings.arbitrage_min_spread if min_spread is None else min_spread
        now = now or self._clock()

        pairs = self.matched_pairs(self.settings.match_min_similarity, refresh=fresh)
        profitable = [
            pair for pair in pairs if pair.has_arbitrage and pair.potential_profit >= spread_floor
        ]
        selected = select_opportunities(profitable)
        opportunities = [
            build_opportunity(
                pair, detected_at=now, ttl_minutes=self.settings.opportunity_ttl_minutes
            )
            for pair in selected
        ]

        if fresh:
            expired = self._opportunities.expire_active(now, superseded=True)
            logger.info("Expired {} superseded opportunities", expired)
        written = self._opportunities.upsert_opportunities(
            opportunities[: self.settings.opportunity_persist_limit]
        )
        self._session.commit()
        logger.info(
            "Scan found {} profitable pairs, selected {}, persisted {}",
            len(profitable),
            len(opportunities),
            written,
        )
        return opportunities
