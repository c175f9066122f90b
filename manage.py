from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

from ledgerfolio.config import settings
from ledgerfolio.db import SessionLocal, init_db
from ledgerfolio.logging_config import setup_logging
from ledgerfolio.services.portfolio import distinct_transaction_kinds, get_portfolio_summary
from ledgerfolio.services.pricing import (
    UPDATE_TYPES,
    MarketDataService,
    RefreshResult,
    build_http_client,
)


async def _refresh(update_type: str, force: bool) -> list[RefreshResult]:
    service = MarketDataService(client=build_http_client(settings), session_factory=SessionLocal)
    try:
        return await service.update_market_data(update_type, force=force)
    finally:
        await service.aclose()


def refresh_market_data(update_type: str = "all", force: bool = False) -> list[RefreshResult]:
    """Run the market data pipelines once from the command line."""
    return asyncio.run(_refresh(update_type, force))


def show_summary() -> dict:
    with SessionLocal() as db:
        return asdict(get_portfolio_summary(db))


def inspect_kinds() -> dict[str, str]:
    """Report every recorded transaction type and how it is classified."""
    with SessionLocal() as db:
        return distinct_transaction_kinds(db)


def main() -> None:
    parser = argparse.ArgumentParser(description="Ledgerfolio management commands")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables if missing")

    refresh_parser = sub.add_parser(
        "refresh-market-data", help="Fetch prices into the asset cache"
    )
    refresh_parser.add_argument(
        "--type",
        dest="update_type",
        choices=sorted(UPDATE_TYPES),
        default="all",
        help="Which pipeline(s) to run",
    )
    refresh_parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore the staleness window and fetch anyway",
    )

    sub.add_parser("show-summary", help="Print the portfolio summary as JSON")
    sub.add_parser("inspect-kinds", help="List recorded transaction types and their BUY/SELL class")

    args = parser.parse_args()

    setup_logging(settings.log_level)
    init_db()

    if args.command == "init-db":
        print(f"Database ready at {settings.database_url}")
    elif args.command == "refresh-market-data":
        for result in refresh_market_data(args.update_type, args.force):
            if result.skipped:
                print(f"{result.pipeline}: skipped (data still fresh)")
            else:
                suffix = f" for {result.trading_date}" if result.trading_date else ""
                print(f"{result.pipeline}: wrote {result.written} price(s){suffix}")
    elif args.command == "show-summary":
        print(json.dumps(show_summary(), indent=2))
    elif args.command == "inspect-kinds":
        for raw, kind in inspect_kinds().items():
            print(f"{raw!r} -> {kind}")


if __name__ == "__main__":
    main()
