from __future__ import annotations

from collections.abc import Iterable
from contextlib import contextmanager

from loguru import logger
from sqlalchemy.orm import Session

from app import crud
from app.core.config import settings
from app.db import SessionLocal
from app.domain import MarketSource

from .client import KalshiClient, PolymarketClient, VenueAdapter


@contextmanager
def session_scope() -> Session:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ingest_venue(adapter: VenueAdapter, session: Session, *, limit: int, pages: int = 1) -> int:
    """Store up to ``pages`` pages of active listings from one venue."""

    count = 0
    for page in range(pages):
        raw = adapter.get_active_markets(limit, page * limit)
        if not raw:
            break
        count += crud.upsert_markets(session, adapter.normalize_markets(raw))
        if len(raw) < limit:
            break
    logger.info("Ingested {} {} markets", count, adapter.source.value)
    return count


_ADAPTERS = {
    MarketSource.POLYMARKET: PolymarketClient,
    MarketSource.KALSHI: KalshiClient,
}


def ingest_active_markets(
    *,
    limit: int | None = None,
    pages: int = 1,
    sources: Iterable[MarketSource] | None = None,
) -> dict[str, int]:
    limit = limit or settings.venue_fetch_limit
    selected = set(sources) if sources else set(MarketSource)
    counts: dict[str, int] = {}
    for source in MarketSource:
        if source not in selected:
            continue
        with _ADAPTERS[source]() as adapter, session_scope() as session:
            counts[source.value] = ingest_venue(adapter, session, limit=limit, pages=pages)
    return counts
