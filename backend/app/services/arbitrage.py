"""Two-sided arbitrage detection and conflict-free opportunity selection."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from app.domain import ArbitrageStrategy, MatchedMarketPair, UnifiedMarket

# Combined cost must stay strictly below this, in percent, to cover fees.
VIABLE_COST_CEILING = 98


@dataclass(frozen=True, slots=True)
class ArbitrageResult:
    has_arbitrage: bool
    strategy: ArbitrageStrategy | None = None


_NO_ARBITRAGE = ArbitrageResult(has_arbitrage=False)


def _label(market: UnifiedMarket) -> str:
    return market.source.value.capitalize()


def _strategy(index: int, yes_leg: UnifiedMarket, no_leg: UnifiedMarket) -> ArbitrageStrategy | None:
    cost_pct = yes_leg.yes_price + no_leg.no_price
    if cost_pct >= VIABLE_COST_CEILING:
        return None
    return ArbitrageStrategy(
        index=index,
        buy_yes_on=yes_leg.source,
        buy_no_on=no_leg.source,
        cost=cost_pct / 100,
        potential_profit=float(100 - cost_pct),
        action=(
            f"Buy YES on {_label(yes_leg)} at {yes_leg.yes_price:.1f}%, "
            f"Buy NO on {_label(no_leg)} at {no_leg.no_price:.1f}%"
        ),
    )


def detect_arbitrage(market_a: UnifiedMarket, market_b: UnifiedMarket) -> ArbitrageResult:
    """Evaluate both buy/buy strategies; the first viable one wins.

    Strategy 1 buys YES on ``market_a`` and NO on ``market_b``; strategy 2 the
    reverse. Strategy 1 is returned whenever it is viable, even if strategy 2
    would be more profitable.
    """

    strategy = _strategy(1, market_a, market_b) or _strategy(2, market_b, market_a)
    if strategy is None:
        return _NO_ARBITRAGE
    return ArbitrageResult(has_arbitrage=True, strategy=strategy)


def select_opportunities(pairs: Iterable[MatchedMarketPair]) -> list[MatchedMarketPair]:
    """Greedy profit-first selection where each listing is used at most once.

    This approximates the optimal assignment; a weighted bipartite matching
    could find a higher total in some inputs.
    """

    candidates = sorted(
        (pair for pair in pairs if pair.has_arbitrage and pair.strategy is not None),
        key=lambda pair: (-pair.potential_profit, pair.id),
    )
    used_a: set[str] = set()
    used_b: set[str] = set()
    selected: list[MatchedMarketPair] = []
    for pair in candidates:
        if pair.market_a.id in used_a or pair.market_b.id in used_b:
            continue
        used_a.add(pair.market_a.id)
        used_b.add(pair.market_b.id)
        selected.append(pair)
    return selected
