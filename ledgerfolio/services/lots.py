"""FIFO lot matching over the transaction ledger.

Rows are replayed in (date, insertion) order. Every BUY opens a lot at the
tail of its symbol's queue and every SELL consumes lots from the head,
realizing ``(sell_price - unit_cost) * consumed_quantity`` per lot touched.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from ledgerfolio.models import Transaction, TransactionKind

logger = logging.getLogger(__name__)

# Recorded kinds that mean "buy"; everything else is a sell.
BUY_SYNONYMS = frozenset({"BUY", "PURCHASE", "ALIM", "ALIŞ", "ALIS", "A"})

# Sells beyond the open quantity are dropped rather than opening short lots.
OVERSELL_POLICY = "drop"

QUANTITY_EPSILON = 1e-9


def normalize_kind(raw: object) -> TransactionKind:
    """Collapse a free-text transaction type into BUY or SELL."""
    if isinstance(raw, TransactionKind):
        return raw
    token = str(raw or "").strip().upper()
    if token in BUY_SYNONYMS:
        return TransactionKind.BUY
    return TransactionKind.SELL


@dataclass
class Lot:
    quantity: float
    unit_cost: float
    asset_type: str


@dataclass
class LotBook:
    """Result of one matching pass: open queues plus realized profit."""

    queues: dict[str, deque[Lot]] = field(default_factory=dict)
    realized_pnl: float = 0.0
    oversold: dict[str, float] = field(default_factory=dict)

    def quantity(self, symbol: str) -> float:
        return sum(lot.quantity for lot in self.queues.get(symbol, ()))

    def open_positions(self) -> list[tuple[str, deque[Lot]]]:
        """Return symbols that still hold a positive quantity, sorted by symbol."""
        return [
            (symbol, queue)
            for symbol, queue in sorted(self.queues.items())
            if queue and sum(lot.quantity for lot in queue) > 0
        ]


def _tx_symbol(value: Transaction | object) -> str:
    return str(getattr(value, "symbol") or "").strip().upper()


def _tx_date(value: Transaction | object) -> date:
    return getattr(value, "transaction_date")


def _tx_id(value: Transaction | object) -> int:
    return int(getattr(value, "id", 0) or 0)


def _tx_quantity(value: Transaction | object) -> float:
    return float(getattr(value, "quantity") or 0.0)


def _tx_price(value: Transaction | object) -> float:
    return float(getattr(value, "price") or 0.0)


def _tx_asset_type(value: Transaction | object) -> str:
    return str(getattr(value, "asset_type", "") or "")


def sort_ledger(transactions: Iterable[Transaction | object]) -> list[Transaction | object]:
    """Sort ledger rows by trade date, then insertion sequence."""
    return sorted(transactions, key=lambda tx: (_tx_date(tx), _tx_id(tx)))


def _in_window(day: date, start: date | None, end: date | None) -> bool:
    if start is not None and day < start:
        return False
    if end is not None and day > end:
        return False
    return True


def _consume(queue: deque[Lot], quantity: float, price: float) -> tuple[float, float]:
    """Pop and split head lots for one sell; return (realized, unmatched quantity)."""
    realized = 0.0
    remaining = quantity
    while remaining > QUANTITY_EPSILON and queue:
        head = queue[0]
        if head.quantity <= remaining + QUANTITY_EPSILON:
            realized += (price - head.unit_cost) * head.quantity
            remaining -= head.quantity
            queue.popleft()
        else:
            realized += (price - head.unit_cost) * remaining
            head.quantity -= remaining
            remaining = 0.0
    return realized, max(remaining, 0.0)


def match_lots(
    transactions: Iterable[Transaction | object],
    start: date | None = None,
    end: date | None = None,
) -> LotBook:
    """Replay ledger rows in (date, insertion) order through per-symbol FIFO queues.

    ``start``/``end`` form an inclusive window on the SELL date that only gates
    which realized profit lands in ``LotBook.realized_pnl``. Lots are consumed
    the same way whether or not a sell falls inside the window.
    """
    queues: dict[str, deque[Lot]] = defaultdict(deque)
    book = LotBook()

    for tx in sort_ledger(transactions):
        symbol = _tx_symbol(tx)
        queue = queues[symbol]
        quantity = _tx_quantity(tx)
        price = _tx_price(tx)

        if normalize_kind(getattr(tx, "transaction_type", None)) == TransactionKind.BUY:
            if quantity > 0:
                queue.append(Lot(quantity=quantity, unit_cost=price, asset_type=_tx_asset_type(tx)))
            continue

        realized, unmatched = _consume(queue, quantity, price)
        if _in_window(_tx_date(tx), start, end):
            book.realized_pnl += realized

        if unmatched > QUANTITY_EPSILON:
            book.oversold[symbol] = book.oversold.get(symbol, 0.0) + unmatched
            logger.warning(
                "Sell of %s on %s exceeds open lots by %.6f; excess dropped",
                symbol,
                _tx_date(tx),
                unmatched,
            )

    book.queues = dict(queues)
    return book
