from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ledgerfolio.db import session_errors, upsert_insert
from ledgerfolio.models import Asset, AssetCategory

logger = logging.getLogger(__name__)


@dataclass
class AssetQuote:
    """One normalized price record ready for the asset cache."""

    symbol: str
    name: str
    asset_type: str
    price: float
    day_change: float = 0.0


@dataclass
class AssetInfo:
    symbol: str
    name: str
    asset_type: str
    current_price: float


@dataclass
class LastUpdates:
    funds: datetime | None
    market: datetime | None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _category_values(categories: Iterable[AssetCategory | str]) -> list[str]:
    return [c.value if isinstance(c, AssetCategory) else str(c) for c in categories]


UPSERT_CHUNK_SIZE = 500

_UPSERT_COLUMNS = ("name", "asset_type", "current_price", "day_change", "last_updated")


def _asset_upsert(db: Session, rows: list[dict]):
    stmt = upsert_insert(db, Asset).values(rows)
    return stmt.on_conflict_do_update(
        index_elements=[Asset.symbol],
        set_={column: stmt.excluded[column] for column in _UPSERT_COLUMNS},
    )


def upsert_assets(db: Session, quotes: list[AssetQuote], fetched_at: datetime) -> int:
    """Insert or update cached assets by symbol in one transaction.

    Every row written shares ``fetched_at``. An empty batch writes nothing so a
    failed fetch can never wipe existing prices.
    """
    if not quotes:
        return 0

    stamp = as_utc(fetched_at)
    # Later duplicates of a symbol win, as they would with row-by-row upserts.
    by_symbol = {quote.symbol.strip().upper(): quote for quote in quotes}

    rows = [
        {
            "symbol": symbol,
            "name": quote.name,
            "asset_type": quote.asset_type,
            "current_price": quote.price,
            "day_change": quote.day_change,
            "last_updated": stamp,
        }
        for symbol, quote in by_symbol.items()
    ]

    with session_errors(db, "write market data batch"):
        # Chunked to stay under SQLite's bound-parameter limit.
        for offset in range(0, len(rows), UPSERT_CHUNK_SIZE):
            db.execute(_asset_upsert(db, rows[offset : offset + UPSERT_CHUNK_SIZE]))
        db.commit()

    logger.info("Upserted %d asset price(s)", len(by_symbol))
    return len(by_symbol)


def latest_update(
    db: Session,
    categories: Iterable[AssetCategory | str] | None = None,
    exclude: Iterable[AssetCategory | str] | None = None,
) -> datetime | None:
    """Return the newest ``last_updated`` among assets matching the filters."""
    query = select(func.max(Asset.last_updated))
    if categories is not None:
        query = query.where(Asset.asset_type.in_(_category_values(categories)))
    if exclude is not None:
        query = query.where(
            or_(Asset.asset_type.is_(None), Asset.asset_type.not_in(_category_values(exclude)))
        )
    with session_errors(db, "read asset update times"):
        value = db.scalar(query)
    return as_utc(value) if value is not None else None


def get_last_updates(db: Session) -> LastUpdates:
    return LastUpdates(
        funds=latest_update(db, categories=[AssetCategory.FUND]),
        market=latest_update(db, exclude=[AssetCategory.FUND]),
    )


def get_assets_by_symbol(db: Session) -> dict[str, Asset]:
    with session_errors(db, "load cached assets"):
        return {asset.symbol: asset for asset in db.scalars(select(Asset))}


def _to_info(asset: Asset) -> AssetInfo:
    return AssetInfo(
        symbol=asset.symbol,
        name=asset.name or asset.symbol,
        asset_type=asset.asset_type or "",
        current_price=float(asset.current_price or 0.0),
    )


def get_asset_info(db: Session, symbol: str) -> AssetInfo | None:
    """Look up one cached asset by symbol, case-insensitively."""
    clean_symbol = symbol.strip().upper()
    with session_errors(db, "look up asset"):
        asset = db.get(Asset, clean_symbol)
    return _to_info(asset) if asset else None


def search_assets(db: Session, query: str, limit: int = 20) -> list[AssetInfo]:
    """Substring search over symbol, name and category."""
    pattern = f"%{query.strip().upper()}%"
    stmt = (
        select(Asset)
        .where(
            or_(
                func.upper(Asset.symbol).like(pattern),
                func.upper(Asset.name).like(pattern),
                func.upper(Asset.asset_type).like(pattern),
            )
        )
        .order_by(Asset.symbol)
        .limit(limit)
    )
    with session_errors(db, "search assets"):
        return [_to_info(asset) for asset in db.scalars(stmt)]
