"""Cron job that executes due scheduled resolutions."""

from __future__ import annotations

import argparse
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import MarketSource
from app.models import ScheduledResolution
from app.repositories import MarketRepository, ResolutionRepository
from app.services.settlement import (
    AlreadyResolvedError,
    ChainContext,
    MirrorSettlementExecutor,
    ResolutionInProgressError,
    SettlementError,
    TransactionPendingError,
    normalize_mirror_key,
)
from ingestion.client import KalshiClient, PolymarketClient, VenueAdapter
from ingestion.normalize import MarketValidationError
from ingestion.service import session_scope


@dataclass(slots=True)
class SettlementRunSummary:
    checked: int = 0
    completed: int = 0
    deferred: int = 0
    failed: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "deferred": self.deferred,
            "failed": self.failed,
            "failures": self.failures,
        }


class SettlementPipeline:
    """Resolve due markets and settle their mirrors on-chain."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        chain: ChainContext | None = None,
        adapters: Mapping[MarketSource, VenueAdapter] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._chain = chain or ChainContext.from_settings(self.settings)
        self._owns_adapters = adapters is None
        self._adapters = dict(adapters) if adapters is not None else {
            MarketSource.POLYMARKET: PolymarketClient(),
            MarketSource.KALSHI: KalshiClient(),
        }

    def run(self, *, limit: int | None = None) -> SettlementRunSummary:
        init_db()
        with session_scope() as session:
            return self.process(session, now=datetime.now(timezone.utc), limit=limit)

    def process(
        self, session: Session, *, now: datetime, limit: int | None = None
    ) -> SettlementRunSummary:
        summary = SettlementRunSummary()
        ledger = ResolutionRepository(session)
        markets = MarketRepository(session)
        executor = MirrorSettlementExecutor(session, self._chain)

        due = ledger.list_due(now, limit=limit or self.settings.settlement_batch_size)
        if not due:
            logger.info("No scheduled resolutions due")
            return summary

        logger.info("Processing {} scheduled resolutions", len(due))
        for item in due:
            summary.checked += 1
            ledger.mark_executing(item)
            session.commit()
            try:
                self._settle(item, session, ledger, markets, executor, now, summary)
            except (SettlementError, httpx.HTTPError, MarketValidationError, ValueError) as exc:
                ledger.mark_schedule_failed(item, error=str(exc))
                session.commit()
                summary.failed += 1
                summary.failures.append(
                    {"id": item.id, "market_id": item.external_market_id, "reason": str(exc)}
                )
                logger.error("Scheduled resolution {} failed: {}", item.id, exc)

        logger.info(
            "Settlement run finished: checked={}, completed={}, deferred={}, failed={}",
            summary.checked,
            summary.completed,
            summary.deferred,
            summary.failed,
        )
        return summary

    def _settle(
        self,
        item: ScheduledResolution,
        session: Session,
        ledger: ResolutionRepository,
        markets: MarketRepository,
        executor: MirrorSettlementExecutor,
        now: datetime,
        summary: SettlementRunSummary,
    ) -> None:
        outcome = self._resolve_outcome(item, markets)
        if outcome is None:
            ledger.defer(item, reason="outcome not available yet")
            session.commit()
            summary.deferred += 1
            return

        tx_hash: str | None = None
        if item.mirror_key:
            try:
                tx_hash = executor.resolve(item.mirror_key, outcome).tx_hash
            except AlreadyResolvedError:
                entry = ledger.get(normalize_mirror_key(item.mirror_key))
                tx_hash = entry.tx_hash if entry else None
                logger.info("Mirror {} was already settled; recording completion", item.mirror_key)
            except (ResolutionInProgressError, TransactionPendingError) as exc:
                ledger.defer(item, reason=str(exc))
                session.commit()
                summary.deferred += 1
                logger.warning("Deferring scheduled resolution {}: {}", item.id, exc)
                return

        ledger.mark_completed(item, outcome=outcome, tx_hash=tx_hash, executed_at=now)
        markets.mark_resolved(item.external_market_id, outcome=outcome, resolved_at=now)
        session.commit()
        summary.completed += 1

    def _resolve_outcome(self, item: ScheduledResolution, markets: MarketRepository) -> bool | None:
        stored = markets.get_market(item.external_market_id)
        if stored is not None and stored.outcome is not None:
            return stored.outcome

        adapter = self._adapters.get(MarketSource(item.oracle_source))
        if adapter is None:
            raise ValueError(f"No venue adapter for oracle source {item.oracle_source}")
        if stored is not None:
            external_id = stored.external_id
        else:
            external_id = item.external_market_id.split("_", 1)[-1]
        return adapter.fetch_market_outcome(external_id)

    def close(self) -> None:
        if self._owns_adapters:
            for adapter in self._adapters.values():
                adapter.close()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute due scheduled resolutions")
    parser.add_argument("--limit", type=int, default=None, help="Maximum resolutions to process")
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: SettlementRunSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Settlement summary written to {}", path)


def main() -> SettlementRunSummary:
    args = _parse_args()
    pipeline = SettlementPipeline(get_settings())
    try:
        summary = pipeline.run(limit=args.limit)
    finally:
        pipeline.close()

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
