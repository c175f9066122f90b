from __future__ import annotations

import sys
import threading
from datetime import date
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is importable in pytest runs.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ledgerfolio import create_app
from ledgerfolio.db import Base, get_db
from ledgerfolio.models import Transaction
from ledgerfolio.services.pricing import MarketDataService


class RecordingTransport:
    """Routes fake HTTP requests to a handler and remembers every call."""

    def __init__(self, handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def make_tx(
    tx_id: int,
    day: date,
    symbol: str,
    kind: str,
    quantity: float,
    price: float,
    asset_type: str = "equity",
):
    return SimpleNamespace(
        id=tx_id,
        transaction_date=day,
        symbol=symbol,
        transaction_type=kind,
        quantity=quantity,
        price=price,
        asset_type=asset_type,
    )


@pytest.fixture()
def db_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    engine.dispose()


@pytest.fixture()
def file_session_factory(tmp_path):
    """Sessions on a file-backed database, one connection per thread."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    engine.dispose()


def run_in_threads(*targets) -> list[Exception]:
    """Start every target behind one barrier and return what they raised."""
    barrier = threading.Barrier(len(targets))
    errors: list[Exception] = []

    def _run(target) -> None:
        barrier.wait()
        try:
            target()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_run, args=(target,)) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return errors


@pytest.fixture()
def add_transactions(db_session_factory):
    """Insert ledger rows given as (date, symbol, kind, quantity, price[, asset_type])."""

    def _add(rows) -> None:
        with db_session_factory() as db:
            for row in rows:
                day, symbol, kind, quantity, price, *rest = row
                db.add(
                    Transaction(
                        transaction_date=day,
                        symbol=symbol,
                        transaction_type=kind,
                        quantity=quantity,
                        price=price,
                        asset_type=rest[0] if rest else "equity",
                        total_value=quantity * price,
                    )
                )
            db.commit()

    return _add


@pytest.fixture()
def make_service(db_session_factory):
    def _make(handler, **kwargs) -> tuple[MarketDataService, RecordingTransport]:
        transport = RecordingTransport(handler)
        service = MarketDataService(
            client=transport.client(),
            session_factory=db_session_factory,
            **kwargs,
        )
        return service, transport

    return _make


@pytest.fixture()
def test_env(db_session_factory, make_service):
    service, transport = make_service(lambda request: httpx.Response(404))
    app = create_app(market_data_service=service, enable_startup_init=False)

    def override_get_db():
        db = db_session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield {
            "app": app,
            "client": client,
            "session_factory": db_session_factory,
            "transport": transport,
        }


@pytest.fixture()
def client(test_env):
    return test_env["client"]
