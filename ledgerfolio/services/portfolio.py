from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledgerfolio.config import settings
from ledgerfolio.db import session_errors
from ledgerfolio.models import Asset, Transaction
from ledgerfolio.services.assets import as_utc, get_assets_by_symbol
from ledgerfolio.services.lots import Lot, LotBook, match_lots, normalize_kind
from ledgerfolio.services.snapshots import (
    PERFORMANCE_WINDOWS,
    get_performance_change,
    save_snapshot,
)

logger = logging.getLogger(__name__)

USD_SYMBOL = "USD"


@dataclass
class Holding:
    symbol: str
    name: str
    asset_type: str
    quantity: float
    avg_cost: float
    current_price: float
    value: float
    pnl: float
    pnl_pct: float
    price_missing: bool = False


@dataclass
class PortfolioSummary:
    total_value: float
    total_value_usd: float
    unrealized_pnl: float
    realized_pnl: float
    total_return: float
    roi_pct: float
    holdings_count: int
    top_performer: str
    worst_performer: str
    last_updated: str | None
    daily_change: float
    daily_change_pct: float
    weekly_change: float
    weekly_change_pct: float
    monthly_change: float
    monthly_change_pct: float


def load_ledger(db: Session) -> list[Transaction]:
    """Load every ledger row ordered by trade date, then insertion order."""
    with session_errors(db, "read transaction ledger"):
        return list(
            db.scalars(
                select(Transaction).order_by(
                    Transaction.transaction_date.asc(), Transaction.id.asc()
                )
            )
        )


def _build_holding(symbol: str, lots: list[Lot], asset: Asset | None) -> Holding:
    quantity = sum(lot.quantity for lot in lots)
    total_cost = sum(lot.quantity * lot.unit_cost for lot in lots)
    avg_cost = total_cost / quantity

    price_missing = asset is None or asset.current_price is None
    current_price = 0.0 if price_missing else float(asset.current_price)
    if price_missing:
        logger.debug("No cached price for held symbol %s; valuing at zero", symbol)

    value = quantity * current_price
    pnl = value - total_cost
    pnl_pct = (pnl / total_cost) * 100.0 if total_cost > 0 else 0.0
    name = asset.name if asset is not None and asset.name else symbol

    return Holding(
        symbol=symbol,
        name=name,
        asset_type=lots[0].asset_type,
        quantity=quantity,
        avg_cost=avg_cost,
        current_price=current_price,
        value=value,
        pnl=pnl,
        pnl_pct=pnl_pct,
        price_missing=price_missing,
    )


def build_holdings(book: LotBook, assets: dict[str, Asset]) -> list[Holding]:
    """Value every open position in ``book`` against cached prices."""
    holdings = [
        _build_holding(symbol, list(queue), assets.get(symbol))
        for symbol, queue in book.open_positions()
    ]
    holdings.sort(key=lambda h: (-h.value, h.symbol))
    return holdings


def get_current_holdings(db: Session) -> tuple[list[Holding], float]:
    """Return open holdings and the unrestricted realized PnL."""
    book = match_lots(load_ledger(db))
    return build_holdings(book, get_assets_by_symbol(db)), book.realized_pnl


def get_realized_pnl_in_range(
    db: Session,
    start: date | None = None,
    end: date | None = None,
) -> float:
    """Realized PnL recognized by sells dated within ``[start, end]``."""
    return match_lots(load_ledger(db), start=start, end=end).realized_pnl


def resolve_usd_rate(price: float | None, limit: float | None = None) -> float:
    """Return the local-per-USD rate, replacing implausible values with 1.0."""
    sanity_limit = settings.usd_rate_sanity_limit if limit is None else limit
    if price is None:
        return 1.0
    rate = float(price)
    if rate > sanity_limit:
        logger.warning("USD rate %.4f exceeds sanity limit %.1f; using 1.0", rate, sanity_limit)
        return 1.0
    return rate


def performer_label(holding: Holding | None) -> str:
    if holding is None:
        return "-"
    return f"{holding.symbol} ({holding.pnl_pct:.1f}%)"


def _latest_asset_update(assets: dict[str, Asset]) -> str | None:
    stamps = [as_utc(a.last_updated) for a in assets.values() if a.last_updated is not None]
    return max(stamps).isoformat() if stamps else None


def get_portfolio_summary(db: Session, today: date | None = None) -> PortfolioSummary:
    """Build the portfolio summary and record today's snapshot as a side effect."""
    today = today or date.today()
    assets = get_assets_by_symbol(db)
    book = match_lots(load_ledger(db))
    holdings = build_holdings(book, assets)

    total_value = sum(h.value for h in holdings)
    unrealized = sum(h.pnl for h in holdings)
    total_cost = sum(h.quantity * h.avg_cost for h in holdings)

    usd = assets.get(USD_SYMBOL)
    usd_rate = resolve_usd_rate(usd.current_price if usd is not None else None)
    total_value_usd = total_value / usd_rate if usd_rate > 0 else 0.0

    roi_pct = (unrealized / total_cost) * 100.0 if total_cost > 0 else 0.0

    top = max(holdings, key=lambda h: h.pnl_pct, default=None)
    worst = min(holdings, key=lambda h: h.pnl_pct, default=None)
    last_updated = _latest_asset_update(assets)

    save_snapshot(db, total_value, total_value_usd, today)
    with session_errors(db, "commit portfolio snapshot"):
        db.commit()

    changes = {
        label: get_performance_change(db, total_value, days, today)
        for label, days in PERFORMANCE_WINDOWS.items()
    }

    return PortfolioSummary(
        total_value=total_value,
        total_value_usd=total_value_usd,
        unrealized_pnl=unrealized,
        realized_pnl=book.realized_pnl,
        total_return=unrealized + book.realized_pnl,
        roi_pct=roi_pct,
        holdings_count=len(holdings),
        top_performer=performer_label(top),
        worst_performer=performer_label(worst),
        last_updated=last_updated,
        daily_change=changes["daily"].change,
        daily_change_pct=changes["daily"].change_pct,
        weekly_change=changes["weekly"].change,
        weekly_change_pct=changes["weekly"].change_pct,
        monthly_change=changes["monthly"].change,
        monthly_change_pct=changes["monthly"].change_pct,
    )


def distinct_transaction_kinds(db: Session) -> dict[str, str]:
    """Map each recorded transaction type to the kind it normalizes to."""
    with session_errors(db, "read transaction types"):
        raw_types = list(db.scalars(select(Transaction.transaction_type).distinct()))
    return {raw: normalize_kind(raw).value for raw in sorted(raw_types)}
