from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ledgerfolio.db import get_db
from ledgerfolio.services.assets import get_asset_info, get_last_updates, search_assets

router = APIRouter(prefix="/api", tags=["market"])


@router.get("/assets/search")
def asset_search(
    q: str = Query(default="", description="Symbol, name or category fragment"),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return search_assets(db, q, limit=limit)


@router.get("/assets/last-updates")
def last_updates(db: Session = Depends(get_db)):
    return get_last_updates(db)


@router.get("/assets/{symbol}")
def asset_info(symbol: str, db: Session = Depends(get_db)):
    info = get_asset_info(db, symbol)
    if info is None:
        return JSONResponse(status_code=404, content={"error": f"Unknown asset {symbol.upper()}"})
    return info


@router.post("/market-data/refresh")
async def refresh_market_data(
    request: Request,
    update_type: str = Query(default="all"),
    force: bool = Query(default=False),
):
    """Trigger the ingestion pipelines; stale-gated unless ``force`` is set."""
    service = request.app.state.market_data_service
    results = await service.update_market_data(update_type, force=force)
    return {"results": results}
