"""AnalysisSession: explicit per-session state passed into every engine run."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable

from src.data_sources.normalizer import (
    normalize_dividends,
    normalize_fundamentals,
    normalize_price_bars,
    normalize_profile,
)
from src.data_sources.provider import DataProvider
from src.records import (
    AnalysisResult,
    CompanyProfile,
    DividendEvent,
    FundamentalPeriod,
    HoldingSet,
    PriceBar,
)
from src.utils.logger import setup_logger
from src.utils.scheduler import BatchScheduler

logger = setup_logger("session")


@dataclass
class AnalysisSession:
    """Owns the request memo, the holding set and the result store of one run.

    Memo entries are keyed by request identity, written once and never
    invalidated, so overlapping reads from scheduler threads are safe.
    Two sessions never share state.
    """

    provider: DataProvider
    holdings: HoldingSet = field(default_factory=HoldingSet)
    as_of: date = field(default_factory=date.today)
    sleep: Callable[[float], None] = time.sleep
    session_id: str = field(default_factory=lambda: datetime.now().strftime("%Y%m%d_%H%M%S"))

    results: dict[tuple[str, str], AnalysisResult] = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)

    _memo: dict[tuple, Any] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    # ------------------------------------------------------------------
    # Memoized fetches
    # ------------------------------------------------------------------

    def fetch(self, kind: str, symbol: str, loader: Callable[[], Any], *args: Any) -> Any:
        """Return the memoized value for (kind, symbol, *args), loading it once.

        Failed loads are not memoized; the exception propagates.
        """
        key = (kind, symbol, args)
        with self._lock:
            if key in self._memo:
                return self._memo[key]
        value = loader()
        with self._lock:
            return self._memo.setdefault(key, value)

    @property
    def memo_size(self) -> int:
        return len(self._memo)

    def fundamentals(self, symbol: str, limit: int = 12, include_annual: bool = False) -> list[FundamentalPeriod]:
        periods = self.fetch(
            "fundamentals", symbol,
            lambda: normalize_fundamentals(self.provider.get_fundamentals(symbol, limit), symbol, include_annual),
            limit, include_annual,
        )
        return list(periods)

    def price_bars(
        self,
        symbol: str,
        start: date | None = None,
        end: date | None = None,
        lookback_days: int = 400,
    ) -> list[PriceBar]:
        end = end or self.as_of
        start = start or (end - timedelta(days=lookback_days))
        bars = self.fetch(
            "prices", symbol,
            lambda: normalize_price_bars(self.provider.get_price_history(symbol, start, end), symbol),
            start, end,
        )
        return list(bars)

    def dividends(self, symbol: str) -> list[DividendEvent]:
        events = self.fetch(
            "dividends", symbol,
            lambda: normalize_dividends(self.provider.get_dividends(symbol), symbol),
        )
        return list(events)

    def profile(self, symbol: str) -> CompanyProfile:
        return self.fetch(
            "profile", symbol,
            lambda: normalize_profile(self.provider.get_profile(symbol), symbol),
        )

    def latest_price(self, symbol: str) -> float | None:
        """Profile price when present, else the last close of the past two weeks."""
        prof = self.profile(symbol)
        if prof.price and prof.price > 0:
            return prof.price
        bars = self.price_bars(symbol, lookback_days=14)
        return bars[-1].close if bars else None

    # ------------------------------------------------------------------
    # Holdings / scheduling
    # ------------------------------------------------------------------

    def set_holdings(self, holdings: HoldingSet) -> None:
        self.holdings = holdings

    def scheduler(self, name: str) -> BatchScheduler:
        return BatchScheduler.from_settings(name, sleep=self.sleep)

    # ------------------------------------------------------------------
    # Result store
    # ------------------------------------------------------------------

    def store_result(self, result: AnalysisResult) -> None:
        self.results[(result.model_id, result.ticker)] = result

    def last_result(self, model_id: str, ticker: str) -> AnalysisResult | None:
        return self.results.get((model_id, ticker))

    def record_error(self, model_id: str, ticker: str, error: Exception) -> None:
        logger.error("%s failed for %s: %s", model_id, ticker, error)
        self.errors.append({"model_id": model_id, "ticker": ticker, "error": str(error)})
