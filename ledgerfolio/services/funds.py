"""Fund NAV prices from the fund history JSON API.

The API only has data for trading days, so the latest session is found by
probing backwards from today with a single reference category before the
remaining categories are fetched concurrently for that date.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Any

import httpx

from ledgerfolio.models import AssetCategory
from ledgerfolio.services.assets import AssetQuote

logger = logging.getLogger(__name__)

FUND_HISTORY_URL = "https://www.tefas.gov.tr/api/DB/BindHistoryInfo"
FUND_CATEGORIES = ("YAT", "EMK", "BYF", "GYF", "GSYF")
REFERENCE_CATEGORY = "YAT"

# Ordered alternatives; the first field present on a record is its price.
PRICE_FIELDS = ("FIYAT", "SONFIYAT", "BORSABULTENFIYAT")
CODE_FIELD = "FONKODU"
NAME_FIELD = "FONUNVAN"
RETURN_FIELD = "GUNLUKGETIRI"

WIRE_DATE_FORMAT = "%d.%m.%Y"


def candidate_dates(today: date, days: int) -> list[date]:
    """Weekdays from ``today`` backwards across ``days`` calendar days."""
    candidates = []
    for offset in range(days):
        day = today - timedelta(days=offset)
        if day.weekday() >= 5:
            continue
        candidates.append(day)
    return candidates


def _records(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    data = payload.get("data")
    if not isinstance(data, list):
        return []
    return [record for record in data if isinstance(record, dict)]


async def fetch_category(
    client: httpx.AsyncClient, category: str, trading_date: date
) -> dict[str, Any]:
    day = trading_date.strftime(WIRE_DATE_FORMAT)
    response = await client.post(
        FUND_HISTORY_URL,
        data={"fontip": category, "bastarih": day, "bittarih": day},
    )
    response.raise_for_status()
    return response.json()


async def probe_trading_date(
    client: httpx.AsyncClient, today: date, days: int
) -> tuple[date, dict[str, Any]] | None:
    """Return the newest date with reference-category data, and that payload."""
    for candidate in candidate_dates(today, days):
        try:
            payload = await fetch_category(client, REFERENCE_CATEGORY, candidate)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Fund probe for %s failed: %s", candidate.isoformat(), exc)
            continue
        if _records(payload):
            logger.info("Fund data found for trading date %s", candidate.isoformat())
            return candidate, payload
        logger.debug("No fund data for %s", candidate.isoformat())
    return None


async def fetch_fund_payloads(
    client: httpx.AsyncClient,
    trading_date: date,
    categories: tuple[str, ...] = FUND_CATEGORIES,
) -> list[dict[str, Any]]:
    """Fetch the non-reference categories concurrently for one confirmed date."""
    remaining = [c for c in categories if c != REFERENCE_CATEGORY]
    results = await asyncio.gather(
        *(fetch_category(client, category, trading_date) for category in remaining),
        return_exceptions=True,
    )

    payloads = []
    for category, result in zip(remaining, results):
        if isinstance(result, BaseException):
            logger.warning("Dropping fund category %s: %s", category, result)
            continue
        payloads.append(result)
    return payloads


def _first_price(record: dict[str, Any]) -> float | None:
    for field in PRICE_FIELDS:
        value = record.get(field)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def parse_fund_records(payload: dict[str, Any]) -> list[AssetQuote]:
    quotes = []
    for record in _records(payload):
        code = record.get(CODE_FIELD)
        symbol = code.strip().upper() if isinstance(code, str) else ""
        price = _first_price(record)
        if not symbol or price is None or price <= 0:
            continue

        name = record.get(NAME_FIELD)
        day_change = record.get(RETURN_FIELD)
        quotes.append(
            AssetQuote(
                symbol=symbol,
                name=name if isinstance(name, str) else "",
                asset_type=AssetCategory.FUND.value,
                price=price,
                day_change=float(day_change) if isinstance(day_change, (int, float)) else 0.0,
            )
        )
    return quotes


async def fetch_funds(
    client: httpx.AsyncClient, today: date, days: int = 5
) -> tuple[date | None, list[AssetQuote]]:
    """Probe for the latest trading date and collect every category's NAVs."""
    probed = await probe_trading_date(client, today, days)
    if probed is None:
        logger.info("No fund data in the %d day(s) before %s", days, today.isoformat())
        return None, []

    trading_date, reference_payload = probed
    payloads = [reference_payload]
    payloads.extend(await fetch_fund_payloads(client, trading_date))

    quotes: list[AssetQuote] = []
    for payload in payloads:
        quotes.extend(parse_fund_records(payload))
    return trading_date, quotes
