"""Tests for src.data_sources.normalizer -- raw payloads to canonical records."""

from datetime import date

import pandas as pd
import pytest

from src.data_sources.normalizer import (
    latest,
    newest_first,
    normalize_dividends,
    normalize_fundamentals,
    normalize_price_bars,
    normalize_profile,
    ttm,
    value_creation_series,
)

from conftest import make_quarters, quarter_to_raw


# ---------------------------------------------------------------------------
# Fundamentals
# ---------------------------------------------------------------------------

class TestNormalizeFundamentals:

    def test_aliases_resolved(self):
        raw = [{
            "fiscalPeriod": "Q1", "fiscalYear": 2024, "endDate": "2024-03-31",
            "totalRevenue": "1000", "operatingCashFlow": 120, "epsDiluted": 0.5,
        }]
        (p,) = normalize_fundamentals(raw, "X")
        assert p.revenue == 1000.0
        assert p.operating_cash_flow == 120.0
        assert p.diluted_eps == 0.5
        assert p.period_end == date(2024, 3, 31)

    def test_annual_dropped_by_default(self):
        raw = [
            {"fiscalPeriod": "FY", "fiscalYear": 2023, "endDate": "2023-12-31", "revenues": 400},
            {"fiscalPeriod": "Q4", "fiscalYear": 2023, "endDate": "2023-12-31", "revenues": 100},
        ]
        assert [p.fiscal_period for p in normalize_fundamentals(raw, "X")] == ["Q4"]
        assert len(normalize_fundamentals(raw, "X", include_annual=True)) == 2

    def test_sorted_oldest_first(self):
        quarters = make_quarters("X", n=6)
        raw = [quarter_to_raw(q) for q in reversed(quarters)]
        periods = normalize_fundamentals(raw, "X")
        assert [p.period_end for p in periods] == [q.period_end for q in quarters]

    def test_duplicate_keeps_latest_filing(self):
        base = {"fiscalPeriod": "Q1", "fiscalYear": 2024, "endDate": "2024-03-31"}
        raw = [
            {**base, "revenues": 200, "filingDate": "2024-06-01"},
            {**base, "revenues": 100, "filingDate": "2024-05-01"},
        ]
        (p,) = normalize_fundamentals(raw, "X")
        assert p.revenue == 200

    def test_missing_and_nan_values_become_none(self):
        raw = [{"fiscalPeriod": "Q1", "fiscalYear": 2024, "revenues": float("nan"), "netIncome": "n/a"}]
        (p,) = normalize_fundamentals(raw, "X")
        assert p.revenue is None
        assert p.net_income is None

    def test_empty_payload(self):
        assert normalize_fundamentals(None, "X") == []
        assert normalize_fundamentals([], "X") == []


class TestPeriodHelpers:

    def test_ttm_sums_four_newest(self):
        quarters = make_quarters("X", n=8, start_revenue=10.0, qoq_growth=1.0)
        # revenues 10, 20, 40, ... 1280 -> newest four 160+320+640+1280
        assert ttm(quarters, "revenue") == pytest.approx(2400.0)

    def test_newest_first_and_latest(self):
        quarters = make_quarters("X", n=4)
        assert newest_first(quarters)[0] is quarters[-1]
        assert latest(quarters) is quarters[-1]
        assert latest([]) is None

    def test_value_creation_series(self):
        quarters = make_quarters("X", n=4, start_revenue=100.0)
        rows = value_creation_series(quarters)
        assert len(rows) == 4
        row = rows[-1]
        assert row["label"] == "Q4 2022"
        assert row["operating_margin"] == pytest.approx(0.20)
        assert row["asset_turnover"] == pytest.approx(1 / 8)
        assert row["roic"] == pytest.approx(20.0 / 800.0)
        assert row["debt_to_equity"] == pytest.approx(3.2 / 4.8)

    def test_value_creation_negative_equity(self):
        quarters = make_quarters("X", n=1, start_revenue=100.0, equity=-5.0)
        (row,) = value_creation_series(quarters)
        assert row["roe"] is None
        assert row["equity_multiplier"] is None


# ---------------------------------------------------------------------------
# Prices / dividends / profile
# ---------------------------------------------------------------------------

class TestNormalizePrices:

    def test_dataframe(self, sample_ohlcv):
        bars = normalize_price_bars(sample_ohlcv.iloc[::-1], "X")
        assert len(bars) == len(sample_ohlcv)
        assert bars[0].date == date(2023, 1, 2)
        assert bars[-1].close == pytest.approx(sample_ohlcv["Close"].iloc[-1])

    def test_dicts_with_short_keys(self):
        rows = [
            {"date": "2024-01-03", "c": 11.0},
            {"date": "2024-01-02", "close": 10.0, "volume": 500},
            {"date": "2024-01-04"},
        ]
        bars = normalize_price_bars(rows, "X")
        assert [b.close for b in bars] == [10.0, 11.0]
        assert bars[0].high == 10.0
        assert bars[0].volume == 500

    def test_empty(self):
        assert normalize_price_bars(None, "X") == []
        assert normalize_price_bars(pd.DataFrame(), "X") == []


class TestNormalizeDividends:

    def test_newest_first_and_negative_dropped(self):
        raw = [
            {"cashAmount": 0.5, "payDate": "2023-03-15", "frequency": 4},
            {"cashAmount": -1, "payDate": "2023-09-15"},
            {"amount": 0.6, "payDate": "2023-06-15", "frequency": 12},
        ]
        events = normalize_dividends(raw, "X")
        assert [e.cash_amount for e in events] == [0.6, 0.5]
        assert events[0].payments_per_year == 12
        assert events[1].payments_per_year == 4


class TestNormalizeProfile:

    def test_field_mapping(self):
        prof = normalize_profile({
            "longName": "Example Inc", "sicCode": "7372", "marketCap": 1e9,
            "sharesOutstanding": 1e7, "fullTimeEmployees": 250, "beta": 1.1,
            "currentPrice": 42.0,
        }, "EX")
        assert prof.name == "Example Inc"
        assert prof.sic_code == 7372
        assert prof.employee_count == 250
        assert prof.price == 42.0
        assert prof.display_name == "Example Inc"

    def test_empty_profile(self):
        prof = normalize_profile(None, "EX")
        assert prof.market_cap is None
        assert prof.display_name == "EX"
