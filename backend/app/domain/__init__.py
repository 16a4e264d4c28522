"""Domain models representing normalized market data and arbitrage results."""

from .models import (
    ArbitrageOpportunity,
    ArbitrageStrategy,
    MarketSource,
    MarketStatus,
    MatchConfig,
    MatchedMarketPair,
    MirrorMarket,
    NormalizationRule,
    OpportunityLeg,
    OpportunityStatus,
    ResolutionRecord,
    UnifiedMarket,
)

__all__ = [
    "ArbitrageOpportunity",
    "ArbitrageStrategy",
    "MarketSource",
    "MarketStatus",
    "MatchConfig",
    "MatchedMarketPair",
    "MirrorMarket",
    "NormalizationRule",
    "OpportunityLeg",
    "OpportunityStatus",
    "ResolutionRecord",
    "UnifiedMarket",
]
