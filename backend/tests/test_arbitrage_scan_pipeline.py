from __future__ import annotations

import json
from contextlib import contextmanager

from app.domain import MarketSource
from pipelines import arbitrage_scan
from pipelines.arbitrage_scan import run_scan


class StubVenue:
    def __init__(self, source: MarketSource, markets) -> None:
        self.source = source
        self.markets = markets
        self.closed = False

    def get_active_markets(self, limit, offset=0):
        return self.markets[offset : offset + limit]

    def normalize_markets(self, raw_listings):
        return list(raw_listings)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def test_run_scan_persists_and_summarises(monkeypatch, tmp_path, db_session, cache, test_settings, market_factory):
    poly = StubVenue(
        MarketSource.POLYMARKET,
        [market_factory(MarketSource.POLYMARKET, "p1", "Bitcoin above 100k by March", yes=60, no=40)],
    )
    kalshi = StubVenue(
        MarketSource.KALSHI,
        [market_factory(MarketSource.KALSHI, "k1", "Bitcoin above 100k by March", yes=30, no=70)],
    )

    @contextmanager
    def _session_scope():
        yield db_session
        db_session.commit()

    monkeypatch.setattr(arbitrage_scan, "init_db", lambda: None)
    monkeypatch.setattr(arbitrage_scan, "session_scope", _session_scope)
    monkeypatch.setattr(arbitrage_scan, "PolymarketClient", lambda: poly)
    monkeypatch.setattr(arbitrage_scan, "KalshiClient", lambda: kalshi)
    monkeypatch.setattr("app.services.arbitrage_service.market_data_cache", cache)

    summary = run_scan(min_spread=10, settings=test_settings)

    assert summary.min_spread == 10
    assert [item["id"] for item in summary.opportunities] == ["arb_poly_p1_kalshi_k1_2"]
    assert summary.opportunities[0]["potential_profit"] == 30.0
    assert poly.closed and kalshi.closed

    path = tmp_path / "reports" / "scan.json"
    arbitrage_scan._write_summary(summary, path)
    written = json.loads(path.read_text())
    assert written["count"] == 1
    assert written["opportunities"][0]["market2"] == "kalshi_k1"
