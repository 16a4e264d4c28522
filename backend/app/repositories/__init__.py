"""Repository abstractions for database interactions."""

from .market_repository import MarketRepository
from .opportunity_repository import OpportunityRepository
from .resolution_repository import ResolutionClaimConflict, ResolutionRepository

__all__ = [
    "MarketRepository",
    "OpportunityRepository",
    "ResolutionClaimConflict",
    "ResolutionRepository",
]
