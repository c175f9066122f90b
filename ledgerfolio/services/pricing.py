from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable

import httpx
from sqlalchemy.orm import Session, sessionmaker

from ledgerfolio.config import Settings, settings
from ledgerfolio.db import SessionLocal
from ledgerfolio.errors import StoreError, UnknownUpdateType
from ledgerfolio.models import GENERAL_CATEGORIES, AssetCategory, utc_now
from ledgerfolio.services.assets import AssetQuote, as_utc, latest_update, upsert_assets
from ledgerfolio.services.funds import fetch_funds
from ledgerfolio.services.scraper import fetch_general_assets

logger = logging.getLogger(__name__)

PIPELINE_GENERAL = "general"
PIPELINE_FUNDS = "funds"

UPDATE_TYPES = {
    "general": (PIPELINE_GENERAL,),
    "funds": (PIPELINE_FUNDS,),
    "tefas": (PIPELINE_FUNDS,),
    "all": (PIPELINE_GENERAL, PIPELINE_FUNDS),
}


@dataclass
class RefreshResult:
    pipeline: str
    skipped: bool
    written: int = 0
    trading_date: date | None = None


def is_fresh(last_updated: datetime | str | None, ttl: timedelta, now: datetime) -> bool:
    """Whether cached data stamped ``last_updated`` is younger than ``ttl``."""
    if last_updated is None:
        return False
    if isinstance(last_updated, str):
        try:
            last_updated = datetime.fromisoformat(last_updated)
        except ValueError:
            return False
    return as_utc(now) - as_utc(last_updated) < ttl


def build_http_client(config: Settings = settings) -> httpx.AsyncClient:
    """Create the shared HTTP client used by every ingestion pipeline."""
    return httpx.AsyncClient(
        headers={"User-Agent": config.http_user_agent},
        timeout=httpx.Timeout(config.http_timeout_seconds),
        follow_redirects=True,
    )


class MarketDataService:
    """Runs the staleness-gated ingestion pipelines against the asset cache.

    Invocations of the same pipeline are serialized; the general and fund
    pipelines may still run side by side. Cache reads and writes run in worker
    threads so a busy database never stalls the event loop.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        session_factory: sessionmaker[Session] | Callable[[], Session] = SessionLocal,
        config: Settings = settings,
        clock: Callable[[], datetime] = utc_now,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.client = client
        self.session_factory = session_factory
        self.config = config
        self.clock = clock
        self.today = today
        self._locks = {
            PIPELINE_GENERAL: asyncio.Lock(),
            PIPELINE_FUNDS: asyncio.Lock(),
        }

    def _is_recent(self, categories: tuple[AssetCategory, ...], ttl: timedelta) -> bool:
        with self.session_factory() as db:
            last = latest_update(db, categories=categories)
        return is_fresh(last, ttl, self.clock())

    def _store(self, quotes: list[AssetQuote]) -> int:
        if not quotes:
            return 0
        with self.session_factory() as db:
            return upsert_assets(db, quotes, self.clock())

    async def refresh_general(self, force: bool = False) -> RefreshResult:
        ttl = timedelta(minutes=self.config.general_assets_ttl_minutes)
        async with self._locks[PIPELINE_GENERAL]:
            if not force and await asyncio.to_thread(self._is_recent, GENERAL_CATEGORIES, ttl):
                logger.info("General asset prices are fresher than %s; skipping fetch", ttl)
                return RefreshResult(pipeline=PIPELINE_GENERAL, skipped=True)

            quotes = await fetch_general_assets(self.client)
            written = await asyncio.to_thread(self._store, quotes)
            return RefreshResult(pipeline=PIPELINE_GENERAL, skipped=False, written=written)

    async def refresh_funds(self, force: bool = False) -> RefreshResult:
        ttl = timedelta(hours=self.config.funds_ttl_hours)
        async with self._locks[PIPELINE_FUNDS]:
            if not force and await asyncio.to_thread(
                self._is_recent, (AssetCategory.FUND,), ttl
            ):
                logger.info("Fund prices are fresher than %s; skipping fetch", ttl)
                return RefreshResult(pipeline=PIPELINE_FUNDS, skipped=True)

            trading_date, quotes = await fetch_funds(
                self.client, self.today(), self.config.fund_probe_days
            )
            written = await asyncio.to_thread(self._store, quotes)
            return RefreshResult(
                pipeline=PIPELINE_FUNDS,
                skipped=False,
                written=written,
                trading_date=trading_date,
            )

    async def update_market_data(
        self, update_type: str = "all", force: bool = False
    ) -> list[RefreshResult]:
        """Run the pipelines named by ``update_type`` (general, funds or all)."""
        pipelines = UPDATE_TYPES.get(update_type.strip().lower())
        if pipelines is None:
            raise UnknownUpdateType(f"Unknown update type: {update_type}")

        if len(pipelines) == 1:
            return [await self._run(pipelines[0], force)]

        results = []
        try:
            results.append(await self.refresh_general(force))
        except StoreError as exc:
            logger.error("General asset refresh failed, continuing with funds: %s", exc)
        results.append(await self.refresh_funds(force))
        return results

    async def _run(self, pipeline: str, force: bool) -> RefreshResult:
        if pipeline == PIPELINE_GENERAL:
            return await self.refresh_general(force)
        return await self.refresh_funds(force)

    async def aclose(self) -> None:
        await self.client.aclose()
