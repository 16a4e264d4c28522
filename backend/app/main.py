from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from loguru import logger

from . import crud, schemas
from .core.config import settings
from .db import get_db, init_db
from .domain import MarketSource
from .models import ScheduledResolutionStatus
from .services.arbitrage_service import ArbitrageService, UpstreamUnavailableError
from .services.settlement import (
    AlreadyResolvedError,
    ChainContext,
    InvalidMirrorKeyError,
    MirrorMarketNotFoundError,
    MirrorSettlementExecutor,
    OracleAuthorizationError,
    ResolutionInProgressError,
    SettlementConfigurationError,
    SettlementError,
    TransactionPendingError,
    normalize_mirror_key,
)
from ingestion.client import KalshiClient, PolymarketClient

app = FastAPI(title="Cross-Venue Arbitrage API", version="0.1.0", debug=settings.debug)

_SETTLEMENT_STATUS: tuple[tuple[type[SettlementError], int], ...] = (
    (OracleAuthorizationError, 403),
    (AlreadyResolvedError, 409),
    (ResolutionInProgressError, 409),
    (TransactionPendingError, 409),
    (MirrorMarketNotFoundError, 404),
    (InvalidMirrorKeyError, 422),
    (SettlementConfigurationError, 503),
)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize the database and the settlement chain context when the API boots."""

    init_db()
    app.state.chain_context = ChainContext.from_settings(settings)


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _venue_adapters() -> Generator[tuple[PolymarketClient, KalshiClient], None, None]:
    with PolymarketClient() as polymarket, KalshiClient() as kalshi:
        yield polymarket, kalshi


def _arbitrage_service(db=Depends(get_db), venues=Depends(_venue_adapters)) -> ArbitrageService:
    """Provide the scan service wired with a session and both venue adapters."""

    venue_a, venue_b = venues
    return ArbitrageService(db, venue_a=venue_a, venue_b=venue_b)


def _chain_context(request: Request) -> ChainContext:
    context = getattr(request.app.state, "chain_context", None)
    if context is None:
        context = ChainContext.from_settings(settings)
        request.app.state.chain_context = context
    return context


def _settlement_executor(
    db=Depends(get_db), chain: ChainContext = Depends(_chain_context)
) -> MirrorSettlementExecutor:
    return MirrorSettlementExecutor(db, chain)


@app.get("/markets", response_model=schemas.MarketList, tags=["markets"])
def list_markets(
    *,
    source: Annotated[MarketSource | None, Query(description="Venue filter")] = None,
    status: Annotated[str | None, Query(description="Market status filter", example="active")] = "active",
    sort: Annotated[
        str,
        Query(description="Field to sort by", pattern="^(volume|end_time|last_synced_at)$"),
    ] = "volume",
    order: Annotated[
        str,
        Query(description="Sort order (asc|desc)", pattern="^(asc|desc)$", min_length=3, max_length=4),
    ] = "desc",
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db=Depends(get_db),
):
    """List stored venue listings."""

    markets, total = crud.list_markets(
        db, source=source, status=status, sort=sort, order=order, limit=limit, offset=offset
    )
    return schemas.MarketList(total=total, items=[schemas.Market.model_validate(m) for m in markets])


@app.get("/matched-markets", response_model=schemas.MatchedPairList, tags=["arbitrage"])
def matched_markets(
    *,
    min_similarity: Annotated[
        float, Query(alias="minSimilarity", ge=0.0, le=1.0, description="Similarity threshold")
    ] = 0.4,
    only_arbitrage: Annotated[bool, Query(alias="onlyArbitrage")] = False,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    service: ArbitrageService = Depends(_arbitrage_service),
):
    """Cross-venue pairs whose questions match, with aggregate stats over every match."""

    try:
        result = service.find_matched_pairs(
            min_similarity=min_similarity, only_arbitrage=only_arbitrage, limit=limit
        )
    except UpstreamUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return schemas.MatchedPairList(
        pairs=[schemas.MatchedPair.model_validate(pair) for pair in result.pairs],
        stats=schemas.MatchStats.model_validate(result.stats),
        timestamp=datetime.now(timezone.utc),
    )


def _opportunity_list(opportunities) -> schemas.ArbitrageOpportunityList:
    items = [schemas.ArbitrageOpportunity.model_validate(item) for item in opportunities]
    return schemas.ArbitrageOpportunityList(total=len(items), items=items)


@app.get(
    "/arbitrage/opportunities",
    response_model=schemas.ArbitrageOpportunityList,
    tags=["arbitrage"],
)
def arbitrage_opportunities(
    *,
    min_spread: Annotated[
        float | None, Query(alias="minSpread", ge=0.0, le=100.0, description="Minimum profit %")
    ] = None,
    limit: Annotated[int, Query(ge=1, le=50)] = 20,
    fresh: Annotated[bool, Query(description="Force a rescan instead of reading stored rows")] = False,
    service: ArbitrageService = Depends(_arbitrage_service),
):
    """Profit-sorted opportunities, from storage unless ``fresh`` forces a rescan."""

    try:
        opportunities = service.find_opportunities(min_spread=min_spread, limit=limit, fresh=fresh)
    except UpstreamUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _opportunity_list(opportunities)


@app.post("/arbitrage/scan", response_model=schemas.ArbitrageOpportunityList, tags=["arbitrage"])
def arbitrage_scan(
    request: schemas.ScanRequest,
    service: ArbitrageService = Depends(_arbitrage_service),
):
    try:
        opportunities = service.scan(min_spread=request.min_spread, fresh=True)
    except UpstreamUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _opportunity_list(opportunities)


def _settlement_failure(exc: SettlementError, mirror_key: str) -> HTTPException:
    status_code = next(
        (code for error_type, code in _SETTLEMENT_STATUS if isinstance(exc, error_type)), 502
    )
    payload = schemas.SettlementFailure(
        error=str(exc),
        code=exc.code,
        mirror_key=exc.mirror_key or mirror_key,
        attempts=exc.attempts,
        tx_hash=exc.tx_hash,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


@app.post("/settlements", response_model=schemas.SettlementResult, tags=["settlement"])
def settle_mirror(
    request: schemas.SettlementRequest,
    executor: MirrorSettlementExecutor = Depends(_settlement_executor),
):
    """Resolve a mirror market on-chain with an oracle signature."""

    try:
        record = executor.resolve(request.mirror_key, request.yes_won)
    except SettlementError as exc:
        raise _settlement_failure(exc, request.mirror_key) from exc
    return schemas.SettlementResult.model_validate(record)


@app.get(
    "/settlements/{mirror_key}",
    response_model=schemas.SettlementLedgerEntry,
    tags=["settlement"],
)
def get_settlement(mirror_key: str, db=Depends(get_db)):
    try:
        key = normalize_mirror_key(mirror_key)
    except InvalidMirrorKeyError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    entry = crud.get_resolution(db, key)
    if entry is None:
        raise HTTPException(status_code=404, detail="Settlement not found")
    return entry


@app.post(
    "/scheduled-resolutions",
    response_model=schemas.ScheduledResolution,
    status_code=201,
    tags=["settlement"],
)
def create_scheduled_resolution(request: schemas.ScheduledResolutionCreate, db=Depends(get_db)):
    """Queue a market for settlement once ``scheduled_time`` has passed."""

    market = crud.get_market(db, request.external_market_id)
    if market is None:
        raise HTTPException(
            status_code=404, detail=f"External market not found: {request.external_market_id}"
        )
    if market.source != request.oracle_source.value:
        logger.warning(
            "Oracle source {} differs from market {} source {}",
            request.oracle_source.value,
            market.market_id,
            market.source,
        )

    existing = crud.find_open_scheduled_resolution(db, request.external_market_id)
    if existing is not None:
        raise HTTPException(
            status_code=409,
            detail=f"Resolution {existing.id} is already scheduled for {request.external_market_id}",
        )

    mirror_key = normalize_mirror_key(request.mirror_key) if request.mirror_key else None
    record = crud.schedule_resolution(
        db,
        external_market_id=request.external_market_id,
        oracle_source=request.oracle_source.value,
        scheduled_time=request.scheduled_time,
        mirror_key=mirror_key,
    )
    db.commit()
    logger.info(
        "Scheduled resolution {} for {} at {}", record.id, record.external_market_id, record.scheduled_time
    )
    return record


@app.get(
    "/scheduled-resolutions",
    response_model=schemas.ScheduledResolutionList,
    tags=["settlement"],
)
def list_scheduled_resolutions(
    *,
    status: Annotated[
        str | None,
        Query(
            description="Queue status; ready means pending and already due",
            pattern="^(ready|pending|executing|completed|failed)$",
        ),
    ] = None,
    external_market_id: Annotated[str | None, Query(alias="externalMarketId")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
    db=Depends(get_db),
):
    due_before = None
    if status == "ready":
        status, due_before = ScheduledResolutionStatus.PENDING.value, datetime.now(timezone.utc)
    items, total = crud.list_scheduled_resolutions(
        db,
        status=status,
        external_market_id=external_market_id,
        due_before=due_before,
        limit=limit,
        offset=offset,
    )
    return schemas.ScheduledResolutionList(
        total=total, items=[schemas.ScheduledResolution.model_validate(item) for item in items]
    )


@app.get(
    "/scheduled-resolutions/{schedule_id}",
    response_model=schemas.ScheduledResolution,
    tags=["settlement"],
)
def get_scheduled_resolution(schedule_id: int, db=Depends(get_db)):
    record = crud.get_scheduled_resolution(db, schedule_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Scheduled resolution not found")
    return record
