"""General asset prices scraped from HTML listing pages.

Each category page is fetched concurrently. A page that fails to download or
parse is dropped; the remaining pages still contribute their rows.
"""

from __future__ import annotations

import asyncio
import logging
import re

import httpx
from bs4 import BeautifulSoup

from ledgerfolio.models import AssetCategory
from ledgerfolio.services.assets import AssetQuote

logger = logging.getLogger(__name__)

GENERAL_SOURCES: tuple[tuple[str, AssetCategory], ...] = (
    ("https://canlidoviz.com/doviz-kurlari", AssetCategory.CURRENCY),
    ("https://canlidoviz.com/altin-fiyatlari", AssetCategory.COMMODITY),
    ("https://canlidoviz.com/borsa", AssetCategory.EQUITY),
    ("https://canlidoviz.com/kripto-paralar", AssetCategory.CRYPTO),
)

ROW_SELECTOR = "tr.currency-list-row, tr.table-row-md"
NAME_SELECTOR = "span[itemprop='name'], span.truncate.text-theme.text-base"
PRICE_SELECTOR = "span[dt='bA'], span[dt='amount']"
CODE_SELECTOR = "span[itemprop='currency'], span.table-code, span.code"
CHANGE_SELECTOR = (
    "span[dt='change'], span[dt='perc'], span[dt='p'], "
    "span.table-perc, span.currency-change-text"
)

CRYPTO_SUFFIX = "-C"
DERIVED_SYMBOL_LENGTH = 5

_NUMERIC_NOISE = re.compile(r"[^0-9,.+\-]")


def parse_locale_float(text: str | None) -> float:
    """Parse a number written with either ``1.234,56`` or ``1,234.56`` grouping.

    When both separators appear the rightmost one is the decimal point; a lone
    comma is a decimal comma. Anything unparseable yields 0.0.
    """
    clean = _NUMERIC_NOISE.sub("", text or "")
    if "," in clean and "." in clean:
        if clean.rfind(",") > clean.rfind("."):
            clean = clean.replace(".", "").replace(",", ".")
        else:
            clean = clean.replace(",", "")
    elif "," in clean:
        clean = clean.replace(",", ".")
    try:
        return float(clean)
    except ValueError:
        return 0.0


def derive_symbol(name: str) -> str:
    """Build a ticker-like code from the first alphanumeric characters of a name."""
    return "".join(ch for ch in name if ch.isalnum())[:DERIVED_SYMBOL_LENGTH].upper()


def tag_crypto_symbol(symbol: str) -> str:
    """Append the crypto suffix exactly once."""
    if not symbol.endswith(CRYPTO_SUFFIX):
        symbol = f"{symbol}{CRYPTO_SUFFIX}"
    doubled = CRYPTO_SUFFIX * 2
    while symbol.endswith(doubled):
        symbol = symbol[: -len(CRYPTO_SUFFIX)]
    return symbol


def _text(node) -> str | None:
    if node is None:
        return None
    return node.get_text()


def parse_asset_rows(html: str, category: AssetCategory) -> list[AssetQuote]:
    """Extract priced rows from one listing page.

    Rows without a name or price are skipped; missing codes are derived from the
    name and a missing change column counts as zero.
    """
    soup = BeautifulSoup(html, "html.parser")
    quotes: list[AssetQuote] = []

    for row in soup.select(ROW_SELECTOR):
        name = _text(row.select_one(NAME_SELECTOR))
        price_text = _text(row.select_one(PRICE_SELECTOR))
        if name is None or price_text is None:
            continue
        name = name.strip()

        symbol = (_text(row.select_one(CODE_SELECTOR)) or "").strip()
        if not symbol:
            symbol = derive_symbol(name)
        if not symbol:
            continue
        symbol = symbol.upper()
        if category == AssetCategory.CRYPTO:
            symbol = tag_crypto_symbol(symbol)

        price = parse_locale_float(price_text)
        if price <= 0:
            continue

        change_text = _text(row.select_one(CHANGE_SELECTOR))
        day_change = parse_locale_float(change_text) if change_text is not None else 0.0

        quotes.append(
            AssetQuote(
                symbol=symbol,
                name=name,
                asset_type=category.value,
                price=price,
                day_change=day_change,
            )
        )

    return quotes


async def _fetch_source(
    client: httpx.AsyncClient, url: str, category: AssetCategory
) -> list[AssetQuote]:
    response = await client.get(url)
    response.raise_for_status()
    return parse_asset_rows(response.text, category)


async def fetch_general_assets(
    client: httpx.AsyncClient,
    sources: tuple[tuple[str, AssetCategory], ...] = GENERAL_SOURCES,
) -> list[AssetQuote]:
    """Fetch every source concurrently and merge whatever succeeded."""
    results = await asyncio.gather(
        *(_fetch_source(client, url, category) for url, category in sources),
        return_exceptions=True,
    )

    quotes: list[AssetQuote] = []
    for (url, category), result in zip(sources, results):
        if isinstance(result, BaseException):
            logger.warning("Dropping %s source %s: %s", category.value, url, result)
            continue
        logger.info("Parsed %d %s row(s) from %s", len(result), category.value, url)
        quotes.extend(result)
    return quotes
