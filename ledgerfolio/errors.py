from __future__ import annotations


class LedgerfolioError(Exception):
    """Base class for failures surfaced by the valuation and ingestion core."""


class StoreError(LedgerfolioError):
    """Raised when the backing store fails during a core operation."""


class UnknownUpdateType(LedgerfolioError, ValueError):
    """Raised when a market data refresh names an unknown pipeline."""
