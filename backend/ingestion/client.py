from __future__ import annotations

from typing import Any, Iterable, Protocol

import httpx
from loguru import logger

from app.core.config import settings
from app.domain import MarketSource, UnifiedMarket

from .normalize import normalize_markets


class VenueAdapter(Protocol):
    """Contract every venue client satisfies for detection and settlement runs."""

    source: MarketSource

    def get_active_markets(self, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        ...

    def normalize_markets(self, raw_listings: Iterable[Any]) -> list[UnifiedMarket]:
        ...

    def fetch_market_outcome(self, external_id: str) -> bool | None:
        ...

    def close(self) -> None:
        ...


def _extract_markets(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        candidates: tuple[Any, ...] = (
            payload.get("markets"),
            payload.get("data"),
            payload.get("result"),
        )
        raw_markets = next((value for value in candidates if isinstance(value, list)), [])
        if not raw_markets:
            single_market = payload.get("market")
            raw_markets = [single_market] if isinstance(single_market, dict) else []
        return raw_markets
    return []


class _VenueClient:
    source: MarketSource

    def __init__(self, *, base_url: str, timeout: float | None = None) -> None:
        self.base_url = base_url
        self.timeout = timeout or settings.venue_request_timeout_seconds
        self.client = httpx.Client(base_url=self.base_url, timeout=self.timeout)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        logger.info("{} GET {} params={}", self.source.value, path, params)
        response = self.client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    def normalize_markets(self, raw_listings: Iterable[Any]) -> list[UnifiedMarket]:
        return normalize_markets(self.source, raw_listings)

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class PolymarketClient(_VenueClient):
    """Thin wrapper around the Polymarket Gamma endpoints."""

    source = MarketSource.POLYMARKET

    def __init__(
        self,
        *,
        base_url: str | None = None,
        markets_path: str | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(base_url=base_url or str(settings.polymarket_base_url), timeout=timeout)
        self.markets_path = markets_path or settings.polymarket_markets_path

    def get_active_markets(self, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        params = {"limit": limit, "offset": offset, "active": "true", "closed": "false"}
        return _extract_markets(self._get(self.markets_path, params=params))

    def fetch_market_outcome(self, external_id: str) -> bool | None:
        """Return True when YES won, False when NO won, None while unresolved."""

        markets = _extract_markets(
            self._get(self.markets_path, params={"condition_ids": external_id})
        )
        if not markets:
            logger.warning("Polymarket market {} not found", external_id)
            return None
        market = normalize_markets(self.source, markets[:1])[0]
        if not market.raw_data or not market.raw_data.get("closed"):
            return None
        # Settled markets pin one outcome to 1.0.
        if market.yes_price >= 99:
            return True
        if market.no_price >= 99:
            return False
        return None


class KalshiClient(_VenueClient):
    """Thin wrapper around the Kalshi trade API market listing."""

    source = MarketSource.KALSHI
    max_page_size = 1000

    def __init__(self, *, base_url: str | None = None, timeout: float | None = None) -> None:
        super().__init__(base_url=base_url or str(settings.kalshi_base_url), timeout=timeout)

    def _iter_open_markets(self, page_size: int) -> Iterable[dict[str, Any]]:
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"status": "open", "limit": page_size}
            if cursor:
                params["cursor"] = cursor
            payload = self._get("/markets", params=params)
            raw_markets = _extract_markets(payload)
            yield from raw_markets
            cursor = payload.get("cursor") if isinstance(payload, dict) else None
            if not cursor or not raw_markets:
                break

    def get_active_markets(self, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        # Kalshi paginates by cursor; offsets are skipped client side.
        page_size = min(limit + offset, self.max_page_size)
        collected: list[dict[str, Any]] = []
        for index, market in enumerate(self._iter_open_markets(page_size)):
            if index < offset:
                continue
            collected.append(market)
            if len(collected) >= limit:
                break
        return collected

    def fetch_market_outcome(self, external_id: str) -> bool | None:
        payload = self._get(f"/markets/{external_id}")
        markets = _extract_markets(payload)
        if not markets:
            logger.warning("Kalshi market {} not found", external_id)
            return None
        result = str(markets[0].get("result") or "").lower()
        if result == "yes":
            return True
        if result == "no":
            return False
        return None
