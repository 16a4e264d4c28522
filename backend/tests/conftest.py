from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.core.cache import TTLCache
from app.core.config import Settings
from app.db import Base, enable_sqlite_savepoints
from app.domain import MarketSource, MarketStatus, UnifiedMarket

TEST_ORACLE_KEY = "0x" + "11" * 32
TEST_CONTRACT = "0x" + "ab" * 20


@pytest.fixture
def polymarket_payload() -> dict[str, object]:
    path = Path(__file__).parent / "data" / "polymarket_market.json"
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def kalshi_payload() -> dict[str, object]:
    path = Path(__file__).parent / "data" / "kalshi_market.json"
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=True, future=True)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def cache() -> TTLCache:
    return TTLCache()


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'crossvenue.db'}",
        oracle_private_key=TEST_ORACLE_KEY,
        mirror_contract_address=TEST_CONTRACT,
        rpc_timeout_seconds=5,
        chain_id=545,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


def make_market(
    source: MarketSource,
    key: str,
    question: str,
    *,
    yes: int,
    no: int,
    volume: float = 1000.0,
    status: MarketStatus = MarketStatus.ACTIVE,
) -> UnifiedMarket:
    prefix = "poly" if source is MarketSource.POLYMARKET else "kalshi"
    return UnifiedMarket(
        id=f"{prefix}_{key}",
        external_id=key,
        source=source,
        question=question,
        yes_price=yes,
        no_price=no,
        volume=volume,
        status=status,
    )


@pytest.fixture
def market_factory():
    return make_market
