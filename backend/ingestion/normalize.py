from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from dateutil import parser as date_parser

from app.domain import MarketSource, MarketStatus, UnifiedMarket


class MarketValidationError(ValueError):
    """Raised when a venue payload cannot be folded into a UnifiedMarket."""


_HUNDRED = Decimal("100")
_EVEN_ODDS = Decimal("0.5")


def _as_list(value: Any) -> list[Any]:
    """Return value as a list when possible, decoding JSON strings."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return date_parser.isoparse(str(value))
    except (ValueError, TypeError):
        return None


def _parse_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _decimal(value: Any, *, field: str, market_id: str) -> Decimal:
    try:
        # Route through str so float inputs keep their printed precision.
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise MarketValidationError(f"{market_id}: {field} is not numeric ({value!r})") from exc
    if not parsed.is_finite():
        raise MarketValidationError(f"{market_id}: {field} is not finite ({value!r})")
    return parsed


def _to_percent(value: Decimal, *, field: str, market_id: str) -> int:
    if value < 0 or value > _HUNDRED:
        raise MarketValidationError(f"{market_id}: {field} {value} outside 0-100")
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def _require_mapping(raw: Any) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise MarketValidationError(f"Expected a market object, got {type(raw).__name__}")
    return raw


def _require_question(raw: Mapping[str, Any], *keys: str, market_id: str) -> str:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise MarketValidationError(f"{market_id}: missing question text")


# ----------------------------------------------------------------------
# Polymarket


def _polymarket_status(raw: Mapping[str, Any]) -> MarketStatus:
    if raw.get("resolved"):
        return MarketStatus.RESOLVED
    if raw.get("closed"):
        return MarketStatus.CLOSED
    if raw.get("active"):
        return MarketStatus.ACTIVE
    return MarketStatus.UNOPENED


def normalize_polymarket_market(raw_market: Any) -> UnifiedMarket:
    raw = _require_mapping(raw_market)
    condition_id = raw.get("conditionId") or raw.get("condition_id")
    if not condition_id:
        raise MarketValidationError("Polymarket market is missing conditionId")
    market_id = f"poly_{condition_id}"

    prices = _as_list(raw.get("outcomePrices"))
    if raw.get("outcomePrices") is not None and not prices:
        raise MarketValidationError(f"{market_id}: outcomePrices is not a list")
    yes_raw = prices[0] if len(prices) > 0 else _EVEN_ODDS
    no_raw = prices[1] if len(prices) > 1 else _EVEN_ODDS
    yes_price = _to_percent(
        _decimal(yes_raw, field="yes price", market_id=market_id) * _HUNDRED,
        field="yes price",
        market_id=market_id,
    )
    no_price = _to_percent(
        _decimal(no_raw, field="no price", market_id=market_id) * _HUNDRED,
        field="no price",
        market_id=market_id,
    )

    return UnifiedMarket(
        id=market_id,
        external_id=str(condition_id),
        source=MarketSource.POLYMARKET,
        question=_require_question(raw, "question", "title", market_id=market_id),
        yes_price=yes_price,
        no_price=no_price,
        volume=_parse_float(raw.get("volume") or raw.get("volumeNum")) or 0.0,
        liquidity=_parse_float(raw.get("liquidity") or raw.get("liquidityNum")),
        end_time=_parse_datetime(raw.get("endDate") or raw.get("end_date_iso")),
        category=raw.get("category"),
        status=_polymarket_status(raw),
        raw_data=dict(raw),
    )


# ----------------------------------------------------------------------
# Kalshi

_KALSHI_STATUS = {
    "open": MarketStatus.ACTIVE,
    "active": MarketStatus.ACTIVE,
    "closed": MarketStatus.CLOSED,
    "settled": MarketStatus.RESOLVED,
    "finalized": MarketStatus.RESOLVED,
}


def _kalshi_yes_price(raw: Mapping[str, Any], market_id: str) -> Decimal:
    yes_bid = raw.get("yes_bid")
    yes_ask = raw.get("yes_ask")
    if yes_bid is not None and yes_ask is not None:
        bid = _decimal(yes_bid, field="yes_bid", market_id=market_id)
        ask = _decimal(yes_ask, field="yes_ask", market_id=market_id)
        # A 0/100 book means no resting quotes on either side.
        if bid > 0 or ask < _HUNDRED:
            return (bid + ask) / 2
    last_price = raw.get("last_price")
    if last_price is not None:
        return _decimal(last_price, field="last_price", market_id=market_id)
    return _HUNDRED * _EVEN_ODDS


def normalize_kalshi_market(raw_market: Any) -> UnifiedMarket:
    raw = _require_mapping(raw_market)
    ticker = raw.get("ticker")
    if not ticker:
        raise MarketValidationError("Kalshi market is missing ticker")
    market_id = f"kalshi_{ticker}"

    yes_price = _to_percent(
        _kalshi_yes_price(raw, market_id), field="yes price", market_id=market_id
    )

    return UnifiedMarket(
        id=market_id,
        external_id=str(ticker),
        source=MarketSource.KALSHI,
        question=_require_question(raw, "title", "question", market_id=market_id),
        yes_price=yes_price,
        no_price=100 - yes_price,
        volume=_parse_float(raw.get("volume")) or 0.0,
        liquidity=_parse_float(raw.get("open_interest") or raw.get("liquidity")),
        end_time=_parse_datetime(raw.get("close_time") or raw.get("expiration_time")),
        category=raw.get("category"),
        status=_KALSHI_STATUS.get(str(raw.get("status") or "").lower(), MarketStatus.UNOPENED),
        raw_data=dict(raw),
    )


_NORMALIZERS = {
    MarketSource.POLYMARKET: normalize_polymarket_market,
    MarketSource.KALSHI: normalize_kalshi_market,
}


def normalize_markets(source: MarketSource, raw_listings: Iterable[Any]) -> list[UnifiedMarket]:
    """Fold a batch of venue payloads into UnifiedMarkets, failing on the first bad one."""

    normalizer = _NORMALIZERS[MarketSource(source)]
    return [normalizer(raw) for raw in raw_listings]
