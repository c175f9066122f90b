"""Daily portfolio snapshots and the performance figures derived from them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledgerfolio.db import session_errors, upsert_insert
from ledgerfolio.models import PortfolioSnapshot, utc_now

PERFORMANCE_WINDOWS = {"daily": 1, "weekly": 7, "monthly": 30}


@dataclass
class PerformanceChange:
    change: float = 0.0
    change_pct: float = 0.0


def save_snapshot(
    db: Session,
    total_value_local: float,
    total_value_usd: float,
    today: date | None = None,
) -> PortfolioSnapshot:
    """Upsert the snapshot row for ``today``; the last write of a day wins."""
    snapshot_date = today or date.today()
    values = {
        "total_value_local": total_value_local,
        "total_value_usd": total_value_usd,
        "created_at": utc_now(),
    }
    stmt = upsert_insert(db, PortfolioSnapshot).values(snapshot_date=snapshot_date, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[PortfolioSnapshot.snapshot_date],
        set_=values,
    )
    with session_errors(db, "save portfolio snapshot"):
        db.execute(stmt)
        return db.scalar(
            select(PortfolioSnapshot)
            .where(PortfolioSnapshot.snapshot_date == snapshot_date)
            .execution_options(populate_existing=True)
        )


def latest_snapshot_value(db: Session, on_or_before: date | None = None) -> float | None:
    """Local-currency total of the newest snapshot, optionally bounded by a date."""
    query = select(PortfolioSnapshot.total_value_local)
    if on_or_before is not None:
        query = query.where(PortfolioSnapshot.snapshot_date <= on_or_before)
    query = query.order_by(PortfolioSnapshot.snapshot_date.desc()).limit(1)
    with session_errors(db, "read portfolio snapshots"):
        value = db.scalar(query)
    return float(value) if value is not None else None


def _change_against(current: float, baseline: float | None) -> PerformanceChange:
    if baseline is None or baseline <= 0:
        return PerformanceChange()
    diff = current - baseline
    return PerformanceChange(change=diff, change_pct=(diff / baseline) * 100.0)


def get_performance_change(
    db: Session,
    current_total: float,
    days_ago: int,
    today: date | None = None,
) -> PerformanceChange:
    """Compare ``current_total`` with the latest snapshot at least ``days_ago`` old."""
    cutoff = (today or date.today()) - timedelta(days=days_ago)
    return _change_against(current_total, latest_snapshot_value(db, cutoff))


def get_range_performance(
    db: Session,
    start: date | None = None,
    end: date | None = None,
) -> PerformanceChange:
    """Value change between two dates.

    A missing ``end`` means the newest snapshot on record; a missing ``start``
    means a zero baseline, which always yields (0, 0).
    """
    end_value = latest_snapshot_value(db, end) or 0.0
    start_value = latest_snapshot_value(db, start) if start is not None else 0.0
    return _change_against(end_value, start_value)
