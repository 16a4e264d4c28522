import argparse

from loguru import logger

from app.db import init_db
from app.domain import MarketSource
from ingestion.service import ingest_active_markets


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest active Polymarket and Kalshi listings")
    parser.add_argument("--limit", type=int, default=None, help="Listings fetched per page")
    parser.add_argument("--pages", type=int, default=1, help="Pages fetched per venue")
    parser.add_argument(
        "--source",
        action="append",
        choices=[source.value for source in MarketSource],
        default=None,
        help="Restrict ingestion to one venue (repeatable)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    init_db()

    sources = [MarketSource(value) for value in args.source] if args.source else None
    counts = ingest_active_markets(limit=args.limit, pages=args.pages, sources=sources)
    logger.info("Ingested {} markets ({})", sum(counts.values()), counts)


if __name__ == "__main__":
    main()
