"""Typed domain representations used across ingestion, matching, persistence and settlement."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MarketSource(str, Enum):
    POLYMARKET = "polymarket"
    KALSHI = "kalshi"

    @property
    def chain_index(self) -> int:
        """Source enum value used by the mirror contract."""

        return 0 if self is MarketSource.POLYMARKET else 1

    @classmethod
    def from_chain_index(cls, value: int) -> "MarketSource":
        if value == 0:
            return cls.POLYMARKET
        if value == 1:
            return cls.KALSHI
        raise ValueError(f"Unknown on-chain market source {value}")


class MarketStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    RESOLVED = "resolved"
    UNOPENED = "unopened"


class OpportunityStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    EXECUTED = "executed"


@dataclass(frozen=True, slots=True)
class UnifiedMarket:
    """Venue listing folded into the canonical shape; prices are integer percents."""

    id: str
    external_id: str
    source: MarketSource
    question: str
    yes_price: int
    no_price: int
    volume: float = 0.0
    liquidity: float | None = None
    end_time: datetime | None = None
    category: str | None = None
    status: MarketStatus = MarketStatus.ACTIVE
    raw_data: dict[str, Any] | None = field(default=None, compare=False, hash=False, repr=False)


@dataclass(frozen=True, slots=True)
class NormalizationRule:
    term: str
    replacement: str


@dataclass(frozen=True, slots=True)
class MatchConfig:
    """Keyword model derived from the active corpus; rules apply in order."""

    normalizations: tuple[NormalizationRule, ...]
    key_terms: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ArbitrageStrategy:
    """Two-leg buy/buy position; ``index`` is 1 for YES on market A, 2 for YES on market B."""

    index: int
    buy_yes_on: MarketSource
    buy_no_on: MarketSource
    cost: float
    potential_profit: float
    action: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "buy_yes_on": self.buy_yes_on.value,
            "buy_no_on": self.buy_no_on.value,
            "cost": self.cost,
            "potential_profit": self.potential_profit,
            "action": self.action,
        }


@dataclass(frozen=True, slots=True)
class MatchedMarketPair:
    id: str
    market_a: UnifiedMarket
    market_b: UnifiedMarket
    similarity: float
    price_difference: int
    has_arbitrage: bool
    strategy: ArbitrageStrategy | None = None

    @property
    def potential_profit(self) -> float:
        return self.strategy.potential_profit if self.strategy else 0.0


@dataclass(frozen=True, slots=True)
class OpportunityLeg:
    source: MarketSource
    id: str
    question: str
    yes_price: int
    no_price: int

    @classmethod
    def from_market(cls, market: UnifiedMarket) -> "OpportunityLeg":
        return cls(
            source=market.source,
            id=market.id,
            question=market.question,
            yes_price=market.yes_price,
            no_price=market.no_price,
        )


@dataclass(slots=True)
class ArbitrageOpportunity:
    id: str
    market1: OpportunityLeg
    market2: OpportunityLeg
    spread: float
    potential_profit: float
    confidence: float
    detected_at: datetime
    expires_at: datetime
    status: OpportunityStatus = OpportunityStatus.ACTIVE
    strategy: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class MirrorMarket:
    """On-chain mirror state as returned by ``getMirrorMarket``."""

    mirror_key: str
    flow_market_id: int
    external_id: str
    source: MarketSource
    last_sync_price: int
    last_sync_time: int
    is_active: bool
    total_mirror_volume: int
    created_at: int
    creator: str

    @property
    def exists(self) -> bool:
        return self.created_at > 0


@dataclass(frozen=True, slots=True)
class ResolutionRecord:
    mirror_key: str
    yes_won: bool
    oracle_signature: str
    tx_hash: str
    block_number: int
    source: MarketSource | None = None
