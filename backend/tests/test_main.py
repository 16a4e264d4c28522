from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.db import get_db
from app.domain import (
    ArbitrageOpportunity,
    MarketSource,
    MatchedMarketPair,
    OpportunityLeg,
    OpportunityStatus,
    ResolutionRecord,
)
from app.main import _arbitrage_service, _settlement_executor, app
from app.repositories import MarketRepository, ResolutionRepository
from app.services.arbitrage import detect_arbitrage
from app.services.arbitrage_service import MatchedPairsResult, MatchStats, UpstreamUnavailableError
from app.services.settlement import (
    AlreadyResolvedError,
    OracleAuthorizationError,
    SettlementConfigurationError,
    SettlementError,
    TransactionPendingError,
)

MIRROR_KEY = "0x" + "c4" * 32
DETECTED_AT = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client():
    """Test client that cleans up dependency overrides after each test."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def arbitrage_service():
    service = MagicMock()
    app.dependency_overrides[_arbitrage_service] = lambda: service
    return service


@pytest.fixture
def settlement_executor():
    executor = MagicMock()
    app.dependency_overrides[_settlement_executor] = lambda: executor
    return executor


@pytest.fixture
def override_db(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    return db_session


def _opportunity() -> ArbitrageOpportunity:
    return ArbitrageOpportunity(
        id="arb_poly_p1_kalshi_k1_2",
        market1=OpportunityLeg(MarketSource.POLYMARKET, "poly_p1", "Bitcoin above 100k?", 60, 40),
        market2=OpportunityLeg(MarketSource.KALSHI, "kalshi_k1", "Bitcoin above 100k?", 30, 70),
        spread=30.0,
        potential_profit=30.0,
        confidence=92.5,
        detected_at=DETECTED_AT,
        expires_at=DETECTED_AT + timedelta(minutes=15),
        status=OpportunityStatus.ACTIVE,
        strategy={"index": 2, "buy_yes_on": "kalshi", "buy_no_on": "polymarket"},
    )


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_markets_reads_stored_listings(client, override_db, market_factory):
    repository = MarketRepository(override_db)
    repository.upsert_markets(
        [
            market_factory(MarketSource.POLYMARKET, "p1", "Bitcoin above 100k?", yes=60, no=40, volume=10.0),
            market_factory(MarketSource.KALSHI, "k1", "Bitcoin above 100k?", yes=30, no=70, volume=50.0),
        ]
    )
    override_db.commit()

    response = client.get("/markets")
    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert [item["market_id"] for item in payload["items"]] == ["kalshi_k1", "poly_p1"]

    response = client.get("/markets", params={"source": "polymarket"})
    assert [item["market_id"] for item in response.json()["items"]] == ["poly_p1"]


def test_list_markets_rejects_unknown_sort(client, override_db):
    response = client.get("/markets", params={"sort": "question"})
    assert response.status_code == 422


def test_matched_markets(client, arbitrage_service, market_factory):
    poly = market_factory(MarketSource.POLYMARKET, "p1", "Bitcoin above 100k?", yes=60, no=40)
    kalshi = market_factory(MarketSource.KALSHI, "k1", "Bitcoin above 100k?", yes=30, no=70)
    verdict = detect_arbitrage(poly, kalshi)
    pair = MatchedMarketPair(
        id="match_poly_p1_kalshi_k1",
        market_a=poly,
        market_b=kalshi,
        similarity=1.0,
        price_difference=30,
        has_arbitrage=verdict.has_arbitrage,
        strategy=verdict.strategy,
    )
    arbitrage_service.find_matched_pairs.return_value = MatchedPairsResult(
        pairs=[pair], stats=MatchStats.from_pairs([pair])
    )

    response = client.get(
        "/matched-markets", params={"minSimilarity": 0.6, "onlyArbitrage": "true", "limit": 10}
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["pairs"][0]["id"] == "match_poly_p1_kalshi_k1"
    assert payload["pairs"][0]["strategy"]["index"] == 2
    assert payload["pairs"][0]["strategy"]["potential_profit"] == 30.0
    assert payload["stats"]["arbitrage_opportunities"] == 1
    arbitrage_service.find_matched_pairs.assert_called_once_with(
        min_similarity=0.6, only_arbitrage=True, limit=10
    )


def test_matched_markets_validates_threshold(client, arbitrage_service):
    response = client.get("/matched-markets", params={"minSimilarity": 1.5})
    assert response.status_code == 422
    arbitrage_service.find_matched_pairs.assert_not_called()


def test_arbitrage_opportunities(client, arbitrage_service):
    arbitrage_service.find_opportunities.return_value = [_opportunity()]

    response = client.get("/arbitrage/opportunities", params={"minSpread": 10, "limit": 5})

    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 1
    item = payload["items"][0]
    assert item["id"] == "arb_poly_p1_kalshi_k1_2"
    assert item["status"] == "active"
    assert item["market2"]["source"] == "kalshi"
    arbitrage_service.find_opportunities.assert_called_once_with(min_spread=10.0, limit=5, fresh=False)


def test_arbitrage_opportunities_caps_limit(client, arbitrage_service):
    response = client.get("/arbitrage/opportunities", params={"limit": 51})
    assert response.status_code == 422


def test_arbitrage_endpoints_report_upstream_outage(client, arbitrage_service):
    arbitrage_service.find_opportunities.side_effect = UpstreamUnavailableError("No venue returned listings")
    arbitrage_service.scan.side_effect = UpstreamUnavailableError("No venue returned listings")

    assert client.get("/arbitrage/opportunities").status_code == 503
    assert client.post("/arbitrage/scan", json={}).status_code == 503


def test_arbitrage_scan_forces_fresh_run(client, arbitrage_service):
    arbitrage_service.scan.return_value = [_opportunity()]

    response = client.post("/arbitrage/scan", json={"min_spread": 7.5})

    assert response.status_code == 200
    assert response.json()["total"] == 1
    arbitrage_service.scan.assert_called_once_with(min_spread=7.5, fresh=True)


def test_settle_mirror(client, settlement_executor):
    settlement_executor.resolve.return_value = ResolutionRecord(
        mirror_key=MIRROR_KEY,
        yes_won=True,
        oracle_signature="0x" + "aa" * 65,
        tx_hash="0x" + "ef" * 32,
        block_number=4242,
        source=MarketSource.POLYMARKET,
    )

    response = client.post("/settlements", json={"mirror_key": MIRROR_KEY, "yes_won": True})

    assert response.status_code == 200
    payload = response.json()
    assert payload["tx_hash"] == "0x" + "ef" * 32
    assert payload["block_number"] == 4242
    assert payload["source"] == "polymarket"
    settlement_executor.resolve.assert_called_once_with(MIRROR_KEY, True)


@pytest.mark.parametrize(
    ("error", "status_code", "code"),
    [
        (OracleAuthorizationError("Signer is not the contract oracle"), 403, "oracle_unauthorized"),
        (AlreadyResolvedError("Mirror is already resolved", attempts=1), 409, "already_resolved"),
        (SettlementConfigurationError("Oracle private key not configured"), 503, "not_configured"),
        (SettlementError("Settlement failed: connection reset", attempts=2), 502, "settlement_failed"),
        (
            TransactionPendingError("Earlier tx is still unconfirmed", attempts=2, tx_hash="0x" + "ef" * 32),
            409,
            "transaction_pending",
        ),
    ],
)
def test_settle_mirror_maps_failures(client, settlement_executor, error, status_code, code):
    settlement_executor.resolve.side_effect = error

    response = client.post("/settlements", json={"mirror_key": MIRROR_KEY, "yes_won": False})

    assert response.status_code == status_code
    detail = response.json()["detail"]
    assert detail["code"] == code
    assert detail["mirror_key"] == MIRROR_KEY
    assert detail["attempts"] == error.attempts
    assert detail["error"] == str(error)
    assert detail["tx_hash"] == error.tx_hash


def test_settle_mirror_rejects_malformed_key(client, settlement_executor):
    response = client.post("/settlements", json={"mirror_key": "0x1234", "yes_won": True})

    assert response.status_code == 422
    settlement_executor.resolve.assert_not_called()


def test_get_settlement(client, override_db):
    ledger = ResolutionRepository(override_db)
    ledger.claim(MIRROR_KEY, yes_won=True)
    override_db.commit()

    response = client.get(f"/settlements/{MIRROR_KEY.upper().replace('0X', '')}")

    assert response.status_code == 200
    payload = response.json()
    assert payload["mirror_key"] == MIRROR_KEY
    assert payload["status"] == "resolving"
    assert payload["attempts"] == 1


def test_get_settlement_errors(client, override_db):
    assert client.get("/settlements/not-a-key").status_code == 422
    assert client.get(f"/settlements/{MIRROR_KEY}").status_code == 404


def _store_market(db_session, market_factory, key: str = "0xabc"):
    MarketRepository(db_session).upsert_market(
        market_factory(MarketSource.POLYMARKET, key, "Will it happen?", yes=55, no=45)
    )
    db_session.commit()


def test_create_scheduled_resolution(client, override_db, market_factory):
    _store_market(override_db, market_factory)

    response = client.post(
        "/scheduled-resolutions",
        json={
            "external_market_id": "poly_0xabc",
            "oracle_source": "polymarket",
            "scheduled_time": "2025-12-31T12:00:00Z",
            "mirror_key": MIRROR_KEY.upper().replace("0X", ""),
        },
    )

    assert response.status_code == 201
    payload = response.json()
    assert payload["status"] == "pending"
    assert payload["mirror_key"] == MIRROR_KEY
    assert payload["attempts"] == 0

    due = ResolutionRepository(override_db).list_due(datetime(2026, 1, 1, tzinfo=timezone.utc), limit=10)
    assert [item.id for item in due] == [payload["id"]]
    assert due[0].oracle_source == "polymarket"


def test_create_scheduled_resolution_rejects_duplicates_and_unknown_markets(client, override_db, market_factory):
    _store_market(override_db, market_factory)
    body = {
        "external_market_id": "poly_0xabc",
        "oracle_source": "polymarket",
        "scheduled_time": "2025-12-31T12:00:00Z",
    }

    assert client.post("/scheduled-resolutions", json=body).status_code == 201
    assert client.post("/scheduled-resolutions", json=body).status_code == 409
    missing = client.post("/scheduled-resolutions", json={**body, "external_market_id": "poly_0xdef"})
    assert missing.status_code == 404
    invalid = client.post("/scheduled-resolutions", json={**body, "mirror_key": "0x1234"})
    assert invalid.status_code == 422


def test_list_scheduled_resolutions(client, override_db):
    ledger = ResolutionRepository(override_db)
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    future = datetime.now(timezone.utc) + timedelta(days=1)
    due = ledger.schedule(external_market_id="poly_0xabc", oracle_source="polymarket", scheduled_time=past)
    later = ledger.schedule(external_market_id="kalshi_K1", oracle_source="kalshi", scheduled_time=future)
    override_db.commit()

    payload = client.get("/scheduled-resolutions").json()
    assert payload["total"] == 2
    assert [item["id"] for item in payload["items"]] == [later.id, due.id]

    ready = client.get("/scheduled-resolutions", params={"status": "ready"}).json()
    assert [item["id"] for item in ready["items"]] == [due.id]

    by_market = client.get("/scheduled-resolutions", params={"externalMarketId": "kalshi_K1"}).json()
    assert [item["oracle_source"] for item in by_market["items"]] == ["kalshi"]

    assert client.get(f"/scheduled-resolutions/{due.id}").json()["external_market_id"] == "poly_0xabc"
    assert client.get("/scheduled-resolutions/999").status_code == 404
    assert client.get("/scheduled-resolutions", params={"status": "cancelled"}).status_code == 422
