"""Data-retrieval collaborator interface.

The engines never talk to a market-data API directly: they ask an
:class:`~src.pipeline.context.AnalysisSession`, which delegates to a
``DataProvider``.  A provider returns raw payloads (dicts / DataFrames); the
session runs them through the normalizer.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Protocol, runtime_checkable

import pandas as pd


@runtime_checkable
class DataProvider(Protocol):
    """Four record shapes, per ticker."""

    def get_fundamentals(self, symbol: str, limit: int = 12) -> list[dict]:
        ...

    def get_price_history(self, symbol: str, start: date, end: date) -> pd.DataFrame | list[dict]:
        ...

    def get_dividends(self, symbol: str) -> list[dict]:
        ...

    def get_profile(self, symbol: str) -> dict:
        ...


class StaticProvider:
    """In-memory provider backed by pre-built payloads.

    Useful for offline runs and tests.  Symbols listed in *failing* raise
    ``ConnectionError`` on every request, mimicking a dead endpoint.
    """

    def __init__(
        self,
        fundamentals: dict[str, list[dict]] | None = None,
        prices: dict[str, Any] | None = None,
        dividends: dict[str, list[dict]] | None = None,
        profiles: dict[str, dict] | None = None,
        failing: set[str] | None = None,
    ):
        self.fundamentals = fundamentals or {}
        self.prices = prices or {}
        self.dividends = dividends or {}
        self.profiles = profiles or {}
        self.failing = set(failing or ())
        self.calls: list[tuple[str, str]] = []

    def _check(self, kind: str, symbol: str) -> None:
        self.calls.append((kind, symbol))
        if symbol in self.failing:
            raise ConnectionError(f"{kind} request failed for {symbol}")

    def get_fundamentals(self, symbol: str, limit: int = 12) -> list[dict]:
        self._check("fundamentals", symbol)
        return list(self.fundamentals.get(symbol, []))

    def get_price_history(self, symbol: str, start: date, end: date):
        self._check("prices", symbol)
        data = self.prices.get(symbol)
        if data is None:
            return []
        if isinstance(data, pd.DataFrame):
            if data.empty:
                return data
            idx = pd.to_datetime(data.index)
            mask = (idx >= pd.Timestamp(start)) & (idx <= pd.Timestamp(end))
            return data.loc[mask]
        return [row for row in data if start <= pd.Timestamp(row["date"]).date() <= end]

    def get_dividends(self, symbol: str) -> list[dict]:
        self._check("dividends", symbol)
        return list(self.dividends.get(symbol, []))

    def get_profile(self, symbol: str) -> dict:
        self._check("profile", symbol)
        return dict(self.profiles.get(symbol, {}))
