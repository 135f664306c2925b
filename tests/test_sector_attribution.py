"""Tests for src.analysis.sector_attribution -- weights, selection and allocation effects."""

from datetime import date
from unittest.mock import MagicMock

import pytest

from src.analysis.base import MinimumDataError
from src.analysis.sector_attribution import (
    SECTOR_GROUPING_6,
    Constituent,
    SectorAttributionEngine,
    compute_sector_attribution,
    price_return,
    window_start,
)
from src.data_sources.provider import StaticProvider
from src.pipeline.context import AnalysisSession
from src.records import PORTFOLIO, Holding, HoldingSet

HOLDINGS = HoldingSet([
    Holding("A", 10, 100.0, "Information Technology"),
    Holding("B", 10, 100.0, "Information Technology"),
    Holding("C", 20, 100.0, "Financials"),
    Holding("D", 10, 100.0, "Other"),
])

BENCHMARK = [
    Constituent("X", "Information Technology", 60),
    Constituent("Y", "Financials", 30),
    Constituent("Z", "Energy", 10),
]

RETURNS = {"A": 10.0, "B": 20.0, "C": 5.0, "D": 100.0, "X": 12.0, "Y": 4.0, "Z": -10.0}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestWindows:

    def test_ytd(self):
        assert window_start("ytd", date(2024, 6, 28)) == date(2024, 1, 1)

    def test_trailing_years(self):
        assert window_start("1Y", date(2024, 6, 28)) == date(2023, 6, 28)
        assert window_start("3Y", date(2024, 6, 28)) == date(2021, 6, 28)

    def test_leap_day(self):
        assert window_start("1Y", date(2024, 2, 29)) == date(2023, 2, 28)

    def test_unknown_window(self):
        with pytest.raises(ValueError, match="Unknown attribution window"):
            window_start("5Y", date(2024, 6, 28))

    def test_price_return(self):
        assert price_return([100.0, 90.0, 110.0]) == pytest.approx(10.0)
        assert price_return([100.0]) is None
        assert price_return([0.0, 5.0]) is None


# ---------------------------------------------------------------------------
# Core model
# ---------------------------------------------------------------------------

class TestComputeAttribution:

    def test_effects_per_sector(self):
        r = compute_sector_attribution(HOLDINGS, BENCHMARK, RETURNS)
        rows = {row["sector"]: row for row in r.details["sectors"]}

        it = rows["Information Technology"]
        assert it["portfolio_weight"] == pytest.approx(50.0)
        assert it["benchmark_weight"] == pytest.approx(60.0)
        assert it["portfolio_return"] == pytest.approx(15.0)
        assert it["selection"] == pytest.approx(1.8)
        assert it["allocation"] == pytest.approx(-1.2)

        fin = rows["Financials"]
        assert fin["selection"] == pytest.approx(0.3)
        assert fin["allocation"] == pytest.approx(0.8)

        energy = rows["Energy"]
        assert energy["portfolio_weight"] == 0.0
        assert energy["selection"] == pytest.approx(1.0)
        assert energy["allocation"] == pytest.approx(1.0)

    def test_totals_and_verdict(self):
        r = compute_sector_attribution(HOLDINGS, BENCHMARK, RETURNS)
        assert r.ticker == PORTFOLIO
        assert r.metric("total_selection") == pytest.approx(3.1)
        assert r.metric("total_allocation") == pytest.approx(0.6)
        assert r.verdict == "OUTPERFORM"

    def test_rows_sorted_by_absolute_active_weight(self):
        r = compute_sector_attribution(HOLDINGS, BENCHMARK, RETURNS)
        assert r.derived_series["sector"] == ["Financials", "Information Technology", "Energy"]

    def test_weights_sum_to_100_without_other(self):
        r = compute_sector_attribution(HOLDINGS, BENCHMARK, RETURNS)
        rows = r.details["sectors"]
        assert "Other" not in r.derived_series["sector"]
        assert sum(row["portfolio_weight"] for row in rows) == pytest.approx(100.0)
        assert sum(row["benchmark_weight"] for row in rows) == pytest.approx(100.0)
        assert any("'Other'" in w and "D" in w for w in r.warnings)

    def test_unpriced_symbol_counts_as_zero(self):
        returns = dict(RETURNS, B=None)
        r = compute_sector_attribution(HOLDINGS, BENCHMARK, returns)
        it = next(row for row in r.details["sectors"] if row["sector"] == "Information Technology")
        assert it["portfolio_return"] == pytest.approx(5.0)
        assert r.details["unpriced_symbols"] == ["B"]
        assert any("No prices for: B" in w for w in r.warnings)

    def test_grouping_merges_sectors(self):
        holdings = HoldingSet([Holding("A", 10, 100.0, "Communication Services")])
        r = compute_sector_attribution(holdings, BENCHMARK, RETURNS, grouping=SECTOR_GROUPING_6)
        assert "Technology" in r.derived_series["sector"]
        assert "Information Technology" not in r.derived_series["sector"]

    def test_no_benchmark_prices_raises(self):
        with pytest.raises(MinimumDataError) as exc:
            compute_sector_attribution(HOLDINGS, BENCHMARK, {"A": 1.0})
        assert exc.value.missing_symbols == ["X", "Y", "Z"]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TestSectorAttributionEngine:

    @staticmethod
    def _series(ret):
        return [
            {"date": "2023-12-28", "close": 50.0},
            {"date": "2024-01-02", "close": 100.0},
            {"date": "2024-06-27", "close": 100.0 * (1 + ret / 100)},
        ]

    def test_run_ytd(self):
        provider = StaticProvider(prices={sym: self._series(r) for sym, r in RETURNS.items()})
        session = AnalysisSession(provider=provider, holdings=HOLDINGS, as_of=date(2024, 6, 28), sleep=MagicMock())
        r = SectorAttributionEngine().run(
            None, session,
            constituents=[(c.symbol, c.sector, c.weight) for c in BENCHMARK],
            window="YTD",
        )
        assert r.metric("window") == "YTD"
        assert r.metric("total_selection") == pytest.approx(3.1)
        assert r.metric("total_allocation") == pytest.approx(0.6)
        assert r.metric("constituents_priced") == 3
        # seven symbols in batches of five
        session.sleep.assert_called_once_with(0.25)

    def test_failed_fetch_is_unpriced(self):
        provider = StaticProvider(prices={sym: self._series(r) for sym, r in RETURNS.items()}, failing={"Z"})
        session = AnalysisSession(provider=provider, holdings=HOLDINGS, as_of=date(2024, 6, 28), sleep=MagicMock())
        r = SectorAttributionEngine().run(None, session, constituents=BENCHMARK)
        assert "Z" in r.details["unpriced_symbols"]
