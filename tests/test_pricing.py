from __future__ import annotations

import asyncio
import threading
from datetime import date, datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import run_in_threads
from ledgerfolio.errors import StoreError, UnknownUpdateType
from ledgerfolio.models import Asset
from ledgerfolio.services.assets import AssetQuote, latest_update, upsert_assets
from ledgerfolio.services.pricing import is_fresh
from ledgerfolio.services.scraper import GENERAL_SOURCES

NOW = datetime(2024, 3, 14, 12, 0, tzinfo=timezone.utc)

LISTING = """
<table>
  <tr class="currency-list-row">
    <td><span itemprop="name">{name}</span><span itemprop="currency">{code}</span></td>
    <td><span dt="bA">{price}</span></td>
  </tr>
</table>
"""


def _listing_handler(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    for index, (source_url, _category) in enumerate(GENERAL_SOURCES):
        if url == source_url:
            return httpx.Response(
                200,
                text=LISTING.format(name=f"Asset {index}", code=f"SYM{index}", price=f"{index + 1},50"),
            )
    return httpx.Response(404)


def _fund_handler(request: httpx.Request) -> httpx.Response:
    form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
    if form["bastarih"] == "14.03.2024":
        return httpx.Response(
            200, json={"data": [{"FONKODU": f"{form['fontip']}1", "FONUNVAN": "Fund", "FIYAT": 1.1}]}
        )
    return httpx.Response(200, json={"data": []})


def _seed_asset(db_session_factory, symbol: str, asset_type: str, stamp: datetime, price: float = 5.0) -> None:
    with db_session_factory() as db:
        db.add(Asset(symbol=symbol, name=symbol, asset_type=asset_type, current_price=price, last_updated=stamp))
        db.commit()


def test_is_fresh() -> None:
    ttl = timedelta(minutes=15)
    assert is_fresh(NOW - timedelta(minutes=5), ttl, NOW) is True
    assert is_fresh(NOW - timedelta(minutes=15), ttl, NOW) is False
    assert is_fresh(None, ttl, NOW) is False
    assert is_fresh("not a timestamp", ttl, NOW) is False
    assert is_fresh((NOW - timedelta(minutes=1)).isoformat(), ttl, NOW) is True
    # Naive timestamps are read as UTC.
    assert is_fresh(datetime(2024, 3, 14, 11, 50), ttl, NOW) is True


def test_upsert_batch_shares_timestamp_and_updates_in_place(db_session_factory) -> None:
    with db_session_factory() as db:
        written = upsert_assets(
            db,
            [
                AssetQuote(symbol="usd", name="Dollar", asset_type="currency", price=32.0, day_change=0.1),
                AssetQuote(symbol="EUR", name="Euro", asset_type="currency", price=35.0),
            ],
            NOW,
        )
    assert written == 2

    later = NOW + timedelta(hours=1)
    with db_session_factory() as db:
        upsert_assets(db, [AssetQuote(symbol="USD", name="US Dollar", asset_type="currency", price=33.0)], later)

    with db_session_factory() as db:
        rows = {a.symbol: a for a in db.scalars(select(Asset))}
        assert set(rows) == {"USD", "EUR"}
        assert rows["USD"].current_price == pytest.approx(33.0)
        assert rows["USD"].name == "US Dollar"
        assert rows["USD"].day_change == 0.0
        assert rows["EUR"].current_price == pytest.approx(35.0)
        assert latest_update(db, categories=["currency"]) == later


def test_empty_batch_writes_nothing(db_session_factory) -> None:
    _seed_asset(db_session_factory, "KEEP", "equity", NOW)
    with db_session_factory() as db:
        assert upsert_assets(db, [], NOW + timedelta(days=1)) == 0
        assert db.get(Asset, "KEEP").last_updated.replace(tzinfo=timezone.utc) == NOW


def test_rerunning_identical_batch_only_moves_timestamp(db_session_factory) -> None:
    batch = [AssetQuote(symbol="GLD", name="Gold", asset_type="commodity", price=2450.5, day_change=-0.2)]
    with db_session_factory() as db:
        upsert_assets(db, batch, NOW)
        first = {c: getattr(db.get(Asset, "GLD"), c) for c in ("name", "asset_type", "current_price", "day_change")}

    with db_session_factory() as db:
        upsert_assets(db, batch, NOW + timedelta(minutes=30))
        asset = db.get(Asset, "GLD")
        second = {c: getattr(asset, c) for c in ("name", "asset_type", "current_price", "day_change")}
        assert second == first
        assert asset.last_updated.replace(tzinfo=timezone.utc) == NOW + timedelta(minutes=30)


def test_upsert_failure_rolls_back_and_raises_store_error(db_session_factory, monkeypatch) -> None:
    with db_session_factory() as db:
        def _locked_commit() -> None:
            raise OperationalError("COMMIT", {}, RuntimeError("database is locked"))

        monkeypatch.setattr(db, "commit", _locked_commit)
        with pytest.raises(StoreError, match="write market data batch"):
            upsert_assets(db, [AssetQuote(symbol="X", name="X", asset_type="equity", price=1.0)], NOW)
        monkeypatch.undo()

        assert db.scalar(select(Asset).where(Asset.symbol == "X")) is None


@pytest.mark.asyncio
async def test_general_refresh_skips_when_recent(db_session_factory, make_service) -> None:
    _seed_asset(db_session_factory, "USD", "currency", NOW - timedelta(minutes=5))
    service, transport = make_service(_listing_handler, clock=lambda: NOW)

    result = await service.refresh_general()

    assert result.skipped is True
    assert transport.requests == []


@pytest.mark.asyncio
async def test_general_refresh_ignores_fund_timestamps(db_session_factory, make_service) -> None:
    _seed_asset(db_session_factory, "AAK", "fund", NOW - timedelta(minutes=1))
    service, transport = make_service(_listing_handler, clock=lambda: NOW)

    result = await service.refresh_general()

    assert result.skipped is False
    assert result.written == len(GENERAL_SOURCES)


@pytest.mark.asyncio
async def test_general_refresh_force_and_stale_fetch(db_session_factory, make_service) -> None:
    _seed_asset(db_session_factory, "USD", "currency", NOW - timedelta(minutes=5))
    service, transport = make_service(_listing_handler, clock=lambda: NOW)

    result = await service.refresh_general(force=True)

    assert result.skipped is False
    assert result.written == 4
    assert len(transport.requests) == 4
    with db_session_factory() as db:
        sym3 = db.get(Asset, "SYM3-C")
        assert sym3 is not None
        assert sym3.asset_type == "crypto"
        assert sym3.current_price == pytest.approx(4.5)
        stamps = {a.last_updated for a in db.scalars(select(Asset).where(Asset.symbol.like("SYM%")))}
        assert len(stamps) == 1


@pytest.mark.asyncio
async def test_general_refresh_with_all_sources_down_keeps_prices(db_session_factory, make_service) -> None:
    old = NOW - timedelta(hours=2)
    _seed_asset(db_session_factory, "USD", "currency", old, price=31.0)
    service, _transport = make_service(lambda request: httpx.Response(503), clock=lambda: NOW)

    result = await service.refresh_general()

    assert result.skipped is False
    assert result.written == 0
    with db_session_factory() as db:
        usd = db.get(Asset, "USD")
        assert usd.current_price == pytest.approx(31.0)
        assert usd.last_updated.replace(tzinfo=timezone.utc) == old


@pytest.mark.asyncio
async def test_fund_refresh_uses_four_hour_window(db_session_factory, make_service) -> None:
    _seed_asset(db_session_factory, "OLD", "fund", NOW - timedelta(hours=3))
    service, transport = make_service(_fund_handler, clock=lambda: NOW, today=lambda: date(2024, 3, 14))

    assert (await service.refresh_funds()).skipped is True
    assert transport.requests == []

    result = await service.refresh_funds(force=True)
    assert result.skipped is False
    assert result.trading_date == date(2024, 3, 14)
    assert result.written == 5
    with db_session_factory() as db:
        assert db.get(Asset, "EMK1").asset_type == "fund"


@pytest.mark.asyncio
async def test_concurrent_calls_of_one_pipeline_are_serialized(db_session_factory, make_service) -> None:
    service, transport = make_service(_listing_handler)

    first, second = await asyncio.gather(service.refresh_general(), service.refresh_general())

    assert sorted([first.skipped, second.skipped]) == [False, True]
    assert len(transport.requests) == len(GENERAL_SOURCES)


@pytest.mark.asyncio
async def test_update_market_data_dispatch(db_session_factory, make_service) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return _fund_handler(request)
        return _listing_handler(request)

    service, _transport = make_service(handler, clock=lambda: NOW, today=lambda: date(2024, 3, 14))

    results = await service.update_market_data("all", force=True)
    assert [r.pipeline for r in results] == ["general", "funds"]

    (alias,) = await service.update_market_data("tefas")
    assert alias.pipeline == "funds"
    assert alias.skipped is True

    with pytest.raises(UnknownUpdateType):
        await service.update_market_data("stocks")


@pytest.mark.asyncio
async def test_all_continues_with_funds_when_general_store_fails(
    db_session_factory, make_service, monkeypatch
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return _fund_handler(request)
        return _listing_handler(request)

    service, _transport = make_service(handler, clock=lambda: NOW, today=lambda: date(2024, 3, 14))
    real_store = service._store

    def _store(quotes):
        if quotes and quotes[0].asset_type != "fund":
            raise StoreError("Failed to write market data batch: database is locked")
        return real_store(quotes)

    monkeypatch.setattr(service, "_store", _store)

    results = await service.update_market_data("all", force=True)

    assert [r.pipeline for r in results] == ["funds"]
    assert results[0].written == 5


def test_concurrent_batches_for_same_symbols_both_succeed(file_session_factory) -> None:
    def writer(price: float, stamp: datetime):
        def _write() -> None:
            batch = [
                AssetQuote(symbol="USD", name="Dollar", asset_type="currency", price=price),
                AssetQuote(symbol="EUR", name="Euro", asset_type="currency", price=price + 3),
            ]
            with file_session_factory() as db:
                upsert_assets(db, batch, stamp)

        return _write

    errors = run_in_threads(writer(32.0, NOW), writer(33.0, NOW + timedelta(minutes=1)))

    assert errors == []
    with file_session_factory() as db:
        rows = {a.symbol: a for a in db.scalars(select(Asset))}
    assert set(rows) == {"USD", "EUR"}
    assert rows["USD"].current_price in (32.0, 33.0)
    assert rows["EUR"].current_price == pytest.approx(rows["USD"].current_price + 3)


def test_large_batch_is_written_in_chunks(db_session_factory) -> None:
    batch = [
        AssetQuote(symbol=f"F{index:04d}", name="Fund", asset_type="fund", price=1.0 + index)
        for index in range(1200)
    ]
    with db_session_factory() as db:
        assert upsert_assets(db, batch, NOW) == 1200
        assert db.get(Asset, "F1199").current_price == pytest.approx(1200.0)


@pytest.mark.asyncio
async def test_blocked_store_does_not_stall_event_loop(db_session_factory, make_service, monkeypatch) -> None:
    service, _transport = make_service(_listing_handler, clock=lambda: NOW)
    entered = threading.Event()
    release = threading.Event()

    def _slow_store(quotes):
        entered.set()
        release.wait(timeout=5)
        return len(quotes)

    monkeypatch.setattr(service, "_store", _slow_store)

    task = asyncio.create_task(service.refresh_general(force=True))
    ticks = 0
    while not entered.is_set():
        await asyncio.sleep(0.01)
        ticks += 1
        assert ticks < 500

    # The loop keeps running other work while the write is stuck.
    await asyncio.sleep(0.05)
    assert not task.done()

    release.set()
    result = await task
    assert result.written == len(GENERAL_SOURCES)
