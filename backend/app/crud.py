from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy.orm import Session

from app.domain import UnifiedMarket
from app.repositories import MarketRepository, ResolutionRepository

from .models import ExternalMarket, MirrorResolution, ScheduledResolution


def upsert_markets(session: Session, markets: Iterable[UnifiedMarket]) -> int:
    return MarketRepository(session).upsert_markets(markets)


def get_market(session: Session, market_id: str) -> ExternalMarket | None:
    return MarketRepository(session).get_market(market_id)


def list_markets(
    session: Session,
    *,
    source: str | None = None,
    status: str | None = None,
    sort: str = "volume",
    order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ExternalMarket], int]:
    return MarketRepository(session).list_markets(
        source=source, status=status, sort=sort, order=order, limit=limit, offset=offset
    )


def get_resolution(session: Session, mirror_key: str) -> MirrorResolution | None:
    return ResolutionRepository(session).get(mirror_key)


def schedule_resolution(
    session: Session,
    *,
    external_market_id: str,
    oracle_source: str,
    scheduled_time: datetime,
    mirror_key: str | None = None,
) -> ScheduledResolution:
    return ResolutionRepository(session).schedule(
        external_market_id=external_market_id,
        oracle_source=oracle_source,
        scheduled_time=scheduled_time,
        mirror_key=mirror_key,
    )


def get_scheduled_resolution(session: Session, schedule_id: int) -> ScheduledResolution | None:
    return ResolutionRepository(session).get_schedule(schedule_id)


def find_open_scheduled_resolution(session: Session, external_market_id: str) -> ScheduledResolution | None:
    return ResolutionRepository(session).find_open_schedule(external_market_id)


def list_scheduled_resolutions(
    session: Session,
    *,
    status: str | None = None,
    external_market_id: str | None = None,
    due_before: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ScheduledResolution], int]:
    return ResolutionRepository(session).list_scheduled(
        status=status,
        external_market_id=external_market_id,
        due_before=due_before,
        limit=limit,
        offset=offset,
    )
