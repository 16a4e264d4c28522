from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.domain import MarketSource, OpportunityStatus


class MarketBase(BaseModel):
    market_id: str
    external_id: str
    source: MarketSource
    question: str
    yes_price: int
    no_price: int
    volume: float = 0.0
    liquidity: float | None = None
    end_time: datetime | None = None
    category: str | None = None
    status: str

    @field_validator("volume", "liquidity", mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)


class Market(MarketBase):
    outcome: bool | None = None
    resolved_at: datetime | None = None
    last_synced_at: datetime

    model_config = {"from_attributes": True}


class MarketList(BaseModel):
    total: int
    items: list[Market]


class MatchedMarket(BaseModel):
    """One side of a matched pair."""

    id: str
    external_id: str
    source: MarketSource
    question: str
    yes_price: int
    no_price: int
    volume: float

    model_config = {"from_attributes": True}


class ArbitrageStrategy(BaseModel):
    index: int
    action: str
    buy_yes_on: MarketSource
    buy_no_on: MarketSource
    cost: float
    potential_profit: float

    model_config = {"from_attributes": True}


class MatchedPair(BaseModel):
    id: str
    market_a: MatchedMarket
    market_b: MatchedMarket
    similarity: float = Field(ge=0.0, le=1.0)
    price_difference: int
    has_arbitrage: bool
    strategy: ArbitrageStrategy | None = None

    model_config = {"from_attributes": True}


class MatchStats(BaseModel):
    total_matched: int
    arbitrage_opportunities: int
    avg_similarity: float
    avg_price_difference: float

    model_config = {"from_attributes": True}


class MatchedPairList(BaseModel):
    pairs: list[MatchedPair]
    stats: MatchStats
    timestamp: datetime


class OpportunityLeg(BaseModel):
    source: MarketSource
    id: str
    question: str
    yes_price: int
    no_price: int

    model_config = {"from_attributes": True}


class ArbitrageOpportunity(BaseModel):
    id: str
    market1: OpportunityLeg
    market2: OpportunityLeg
    spread: float
    potential_profit: float
    confidence: float
    status: OpportunityStatus
    detected_at: datetime
    expires_at: datetime
    strategy: dict[str, Any] | None = None

    model_config = {"from_attributes": True}


class ArbitrageOpportunityList(BaseModel):
    total: int
    items: list[ArbitrageOpportunity]


class ScanRequest(BaseModel):
    min_spread: float | None = Field(default=None, ge=0.0, le=100.0)


class SettlementRequest(BaseModel):
    mirror_key: str = Field(pattern=r"^(0x)?[0-9a-fA-F]{64}$", description="bytes32 mirror key")
    yes_won: bool


class SettlementResult(BaseModel):
    mirror_key: str
    yes_won: bool
    tx_hash: str
    block_number: int
    oracle_signature: str
    source: MarketSource | None = None

    model_config = {"from_attributes": True}


class SettlementFailure(BaseModel):
    error: str
    code: str
    mirror_key: str | None = None
    attempts: int = 0
    tx_hash: str | None = None


class SettlementLedgerEntry(BaseModel):
    mirror_key: str
    status: str
    yes_won: bool
    source: str | None = None
    tx_hash: str | None = None
    block_number: int | None = None
    attempts: int
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None

    model_config = {"from_attributes": True}


class ScheduledResolutionCreate(BaseModel):
    external_market_id: str = Field(min_length=1, description="Stored market id, e.g. poly_0xabc")
    oracle_source: MarketSource
    scheduled_time: datetime
    mirror_key: str | None = Field(
        default=None, pattern=r"^(0x)?[0-9a-fA-F]{64}$", description="bytes32 mirror key to settle"
    )

    @field_validator("scheduled_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class ScheduledResolution(BaseModel):
    id: int
    external_market_id: str
    mirror_key: str | None = None
    oracle_source: MarketSource
    scheduled_time: datetime
    status: str
    outcome: bool | None = None
    attempts: int
    last_error: str | None = None
    execute_tx_hash: str | None = None
    executed_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ScheduledResolutionList(BaseModel):
    total: int
    items: list[ScheduledResolution]
