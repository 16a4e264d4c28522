"""Cron entry point that runs a fresh cross-venue arbitrage scan."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import ArbitrageOpportunity
from app.services.arbitrage_service import ArbitrageService
from ingestion.client import KalshiClient, PolymarketClient
from ingestion.service import session_scope


@dataclass(slots=True)
class ScanSummary:
    started_at: datetime
    min_spread: float
    opportunities: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_opportunities(
        cls, opportunities: list[ArbitrageOpportunity], *, started_at: datetime, min_spread: float
    ) -> "ScanSummary":
        return cls(
            started_at=started_at,
            min_spread=min_spread,
            opportunities=[
                {
                    "id": item.id,
                    "potential_profit": item.potential_profit,
                    "confidence": item.confidence,
                    "market1": item.market1.id,
                    "market2": item.market2.id,
                    "expires_at": item.expires_at,
                }
                for item in opportunities
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "min_spread": self.min_spread,
            "count": len(self.opportunities),
            "opportunities": self.opportunities,
        }


def run_scan(*, min_spread: float | None = None, settings: Settings | None = None) -> ScanSummary:
    settings = settings or get_settings()
    spread_floor = settings.arbitrage_min_spread if min_spread is None else min_spread
    started_at = datetime.now(timezone.utc)
    init_db()

    with PolymarketClient() as polymarket, KalshiClient() as kalshi, session_scope() as session:
        service = ArbitrageService(session, venue_a=polymarket, venue_b=kalshi, settings=settings)
        opportunities = service.scan(min_spread=spread_floor, now=started_at, fresh=True)

    logger.info("Arbitrage scan finished with {} opportunities", len(opportunities))
    return ScanSummary.from_opportunities(
        opportunities, started_at=started_at, min_spread=spread_floor
    )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a fresh cross-venue arbitrage scan")
    parser.add_argument(
        "--min-spread",
        type=float,
        default=None,
        help="Minimum profit percentage for reported opportunities",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: ScanSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Scan summary written to {}", path)


def main() -> ScanSummary:
    args = _parse_args()
    summary = run_scan(min_spread=args.min_spread)
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
