from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import Date, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledgerfolio.db import Base


def utc_now() -> datetime:
    """Return an aware UTC timestamp."""
    return datetime.now(timezone.utc)


class AssetCategory(str, Enum):
    CURRENCY = "currency"
    COMMODITY = "commodity"
    EQUITY = "equity"
    CRYPTO = "crypto"
    FUND = "fund"


GENERAL_CATEGORIES = (
    AssetCategory.CURRENCY,
    AssetCategory.COMMODITY,
    AssetCategory.EQUITY,
    AssetCategory.CRYPTO,
)


class TransactionKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Transaction(Base):
    """One recorded trade event. The valuation core only ever reads these."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    asset_type: Mapped[str] = mapped_column(String(32), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # Free text as recorded, e.g. "BUY", "Alış", "Satış".
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    fees: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="TRY", nullable=False)
    broker: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class Asset(Base):
    """Cached market data for one instrument, keyed by upper-cased symbol."""

    __tablename__ = "assets"

    symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    asset_type: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    current_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    day_change: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_updated: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    market: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sector: Mapped[str | None] = mapped_column(String(64), nullable=True)


class PortfolioSnapshot(Base):
    """Total portfolio value recorded once per calendar day."""

    __tablename__ = "portfolio_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_date: Mapped[date] = mapped_column(
        Date, unique=True, nullable=False, index=True
    )
    total_value_local: Mapped[float] = mapped_column(Float, nullable=False)
    total_value_usd: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
