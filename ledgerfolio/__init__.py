from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ledgerfolio.config import settings
from ledgerfolio.db import init_db
from ledgerfolio.errors import StoreError, UnknownUpdateType
from ledgerfolio.logging_config import setup_logging
from ledgerfolio.routes import market, portfolio
from ledgerfolio.services.pricing import MarketDataService, build_http_client


def create_app(
    market_data_service: MarketDataService | None = None,
    enable_startup_init: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging(settings.log_level)
    app = FastAPI(title=settings.app_name)

    owns_service = market_data_service is None
    if market_data_service is None:
        market_data_service = MarketDataService(client=build_http_client(settings))
    app.state.market_data_service = market_data_service

    @app.exception_handler(StoreError)
    async def _store_error(_request: Request, exc: StoreError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(UnknownUpdateType)
    async def _unknown_update(_request: Request, exc: UnknownUpdateType) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    app.include_router(portfolio.router)
    app.include_router(market.router)

    @app.on_event("startup")
    def startup() -> None:
        if enable_startup_init:
            init_db()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if owns_service:
            await market_data_service.aclose()

    return app
