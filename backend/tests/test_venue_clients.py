from __future__ import annotations

import httpx
import pytest

from app.domain import MarketSource
from app.repositories import MarketRepository
from ingestion.client import KalshiClient, PolymarketClient
from ingestion.normalize import MarketValidationError
from ingestion.service import ingest_venue


def _mount(client, handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client.client = httpx.Client(base_url=client.base_url, transport=httpx.MockTransport(_record))
    return seen


def test_polymarket_requests_active_open_markets(polymarket_payload):
    client = PolymarketClient(base_url="https://gamma.test")
    seen = _mount(client, lambda request: httpx.Response(200, json=[polymarket_payload]))

    raw = client.get_active_markets(25, offset=50)

    assert raw == [polymarket_payload]
    params = seen[0].url.params
    assert (params["limit"], params["offset"], params["active"], params["closed"]) == ("25", "50", "true", "false")


@pytest.mark.parametrize(
    ("prices", "expected"),
    [('["1", "0"]', True), ('["0", "1"]', False), ('["0.55", "0.45"]', None)],
)
def test_polymarket_outcome_reads_settled_prices(polymarket_payload, prices, expected):
    payload = dict(polymarket_payload, closed=True, outcomePrices=prices)
    client = PolymarketClient(base_url="https://gamma.test")
    seen = _mount(client, lambda request: httpx.Response(200, json=[payload]))

    assert client.fetch_market_outcome(payload["conditionId"]) is expected
    assert seen[0].url.params["condition_ids"] == payload["conditionId"]


def test_polymarket_outcome_is_unknown_while_open(polymarket_payload):
    client = PolymarketClient(base_url="https://gamma.test")
    _mount(client, lambda request: httpx.Response(200, json=[polymarket_payload]))

    assert client.fetch_market_outcome(polymarket_payload["conditionId"]) is None


def test_kalshi_follows_cursor_and_skips_offset(kalshi_payload):
    pages = {
        None: {"markets": [dict(kalshi_payload, ticker="K1"), dict(kalshi_payload, ticker="K2")], "cursor": "next"},
        "next": {"markets": [dict(kalshi_payload, ticker="K3")], "cursor": ""},
    }
    client = KalshiClient(base_url="https://kalshi.test")
    seen = _mount(client, lambda request: httpx.Response(200, json=pages[request.url.params.get("cursor")]))

    raw = client.get_active_markets(2, offset=1)

    assert [market["ticker"] for market in raw] == ["K2", "K3"]
    assert len(seen) == 2
    assert seen[0].url.params["status"] == "open"


@pytest.mark.parametrize(("result", "expected"), [("yes", True), ("no", False), ("", None)])
def test_kalshi_outcome_reads_result(kalshi_payload, result, expected):
    client = KalshiClient(base_url="https://kalshi.test")
    seen = _mount(client, lambda request: httpx.Response(200, json={"market": dict(kalshi_payload, result=result)}))

    assert client.fetch_market_outcome(kalshi_payload["ticker"]) is expected
    assert seen[0].url.path.endswith(f"/markets/{kalshi_payload['ticker']}")


def test_http_errors_propagate():
    client = KalshiClient(base_url="https://kalshi.test")
    _mount(client, lambda request: httpx.Response(503, json={"error": "maintenance"}))

    with pytest.raises(httpx.HTTPStatusError):
        client.get_active_markets(10)


def test_ingest_venue_pages_until_short_page(db_session, kalshi_payload):
    client = KalshiClient(base_url="https://kalshi.test")
    listings = [dict(kalshi_payload, ticker=f"K{index}") for index in range(3)]
    _mount(client, lambda request: httpx.Response(200, json={"markets": listings, "cursor": ""}))

    count = ingest_venue(client, db_session, limit=2, pages=5)
    db_session.flush()

    assert count == 3
    markets, total = MarketRepository(db_session).list_markets(source=MarketSource.KALSHI, status=None)
    assert total == 3
    assert {market.market_id for market in markets} == {"kalshi_K0", "kalshi_K1", "kalshi_K2"}


def test_ingest_venue_rejects_malformed_listing(db_session, kalshi_payload):
    client = KalshiClient(base_url="https://kalshi.test")
    _mount(client, lambda request: httpx.Response(200, json={"markets": [dict(kalshi_payload, ticker="")]}))

    with pytest.raises(MarketValidationError):
        ingest_venue(client, db_session, limit=10)
