from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ledgerfolio.db import get_db
from ledgerfolio.services.portfolio import (
    get_current_holdings,
    get_portfolio_summary,
    get_realized_pnl_in_range,
)
from ledgerfolio.services.snapshots import get_range_performance

router = APIRouter(prefix="/api", tags=["portfolio"])


@router.get("/summary")
def summary(db: Session = Depends(get_db)):
    """Return the portfolio summary; also records today's snapshot."""
    return get_portfolio_summary(db)


@router.get("/holdings")
def holdings(db: Session = Depends(get_db)):
    rows, _realized = get_current_holdings(db)
    return rows


@router.get("/realized-pnl")
def realized_pnl(
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return {
        "start": start,
        "end": end,
        "realized_pnl": get_realized_pnl_in_range(db, start, end),
    }


@router.get("/performance")
def range_performance(
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return get_range_performance(db, start, end)
