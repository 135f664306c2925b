"""Shared pytest fixtures for the valuation-lab test suite.

Provides synthetic fundamentals, prices and dividends with fixed random
seeds for reproducibility.  All fixtures are independent of external APIs.
"""

from datetime import date, timedelta
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from src.data_sources.provider import StaticProvider
from src.pipeline.context import AnalysisSession
from src.records import CompanyProfile, DividendEvent, FundamentalPeriod, Holding, HoldingSet

AS_OF = date(2023, 12, 29)

_QUARTER_BOUNDS = {
    "Q1": ((1, 1), (3, 31)),
    "Q2": ((4, 1), (6, 30)),
    "Q3": ((7, 1), (9, 30)),
    "Q4": ((10, 1), (12, 31)),
}


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_quarter(symbol, year, quarter, revenue, op_margin=0.20, **fields):
    """One quarter whose line items scale with *revenue*.

    Defaults: gross margin 60%, NI = 80% of operating income, CFO = 120% of
    operating income, assets 8x, liabilities 3.2x, equity 4.8x revenue.
    """
    (sm, sd), (em, ed) = _QUARTER_BOUNDS[quarter]
    op_income = revenue * op_margin
    values = dict(
        revenue=revenue,
        gross_profit=revenue * 0.6,
        operating_income=op_income,
        net_income=op_income * 0.8,
        operating_cash_flow=op_income * 1.2,
        investing_cash_flow=-revenue * 0.04,
        assets=revenue * 8,
        liabilities=revenue * 3.2,
        equity=revenue * 4.8,
        long_term_debt=revenue * 1.2,
        current_assets=revenue * 2.4,
        diluted_eps=op_income * 0.8 / 1e7,
        dividends_paid=-revenue * 0.04,
    )
    values.update(fields)
    return FundamentalPeriod(
        symbol=symbol,
        fiscal_period=quarter,
        fiscal_year=year,
        period_start=date(year, sm, sd),
        period_end=date(year, em, ed),
        **values,
    )


def make_quarters(symbol="TEST", n=8, start_revenue=25e6, qoq_growth=0.0, start_year=2022, **fields):
    """*n* consecutive quarters, oldest first, starting Q1 of *start_year*."""
    out = []
    revenue = start_revenue
    for i in range(n):
        year = start_year + i // 4
        quarter = f"Q{i % 4 + 1}"
        out.append(make_quarter(symbol, year, quarter, revenue, **fields))
        revenue *= 1 + qoq_growth
    return out


def quarter_to_raw(period):
    """Provider-style dict for a FundamentalPeriod."""
    return {
        "fiscalPeriod": period.fiscal_period,
        "fiscalYear": period.fiscal_year,
        "startDate": period.period_start.isoformat(),
        "endDate": period.period_end.isoformat(),
        "revenues": period.revenue,
        "grossProfit": period.gross_profit,
        "operatingIncome": period.operating_income,
        "netIncome": period.net_income,
        "cashFlow": period.operating_cash_flow,
        "investingCashFlow": period.investing_cash_flow,
        "assets": period.assets,
        "liabilities": period.liabilities,
        "equity": period.equity,
        "longTermDebt": period.long_term_debt,
        "currentAssets": period.current_assets,
        "epsDiluted": period.diluted_eps,
        "dividends": period.dividends_paid,
    }


def make_ohlcv(n=252, seed=42, start_price=150.0, trend=0.0004, vol=0.015, start="2023-01-02"):
    """Synthetic OHLCV DataFrame (geometric Brownian motion)."""
    np.random.seed(seed)
    dates = pd.bdate_range(start=start, periods=n)
    log_returns = np.random.normal(trend, vol, n)
    close = start_price * np.exp(np.cumsum(log_returns))
    high = close * (1 + np.abs(np.random.normal(0.002, 0.005, n)))
    low = close * (1 - np.abs(np.random.normal(0.002, 0.005, n)))
    open_ = close * (1 + np.random.normal(0, 0.003, n))
    volume = np.random.randint(1_000_000, 10_000_000, n).astype(float)
    return pd.DataFrame(
        {"Open": open_, "High": high, "Low": low, "Close": close, "Volume": volume},
        index=dates,
    )


def make_dividends(symbol="DIV", amount=0.50, n=12, growth_per_year=0.0, last_pay=date(2023, 12, 15), ppy=4):
    """*n* evenly spaced payments, newest first."""
    events = []
    for i in range(n):
        years_back = i // ppy
        cash = amount / (1 + growth_per_year) ** years_back
        pay = last_pay - timedelta(days=round(i * 365 / ppy))
        events.append(DividendEvent(symbol, pay, pay - timedelta(days=14), cash, ppy))
    return events


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_ohlcv():
    """252 business days starting 2023-01-02, seeded at 42."""
    return make_ohlcv()


@pytest.fixture
def software_quarters():
    """Eight flat quarters of $25M revenue (TTM $100M), 20% operating margin."""
    return make_quarters("SOFT", n=8, start_revenue=25e6)


@pytest.fixture
def software_profile():
    return CompanyProfile(
        symbol="SOFT",
        name="Soft Corp",
        sic_code=7372,
        sic_description="Services-Prepackaged Software",
        market_cap=2e9,
        shares_outstanding=1e7,
        employee_count=400,
        beta=1.0,
        price=150.0,
    )


@pytest.fixture
def dividend_events():
    """Twelve quarterly payments of $0.50 (annual DPS $2.00)."""
    return make_dividends()


@pytest.fixture
def holdings():
    return HoldingSet([
        Holding("AAA", 100, 50.0, "Information Technology"),
        Holding("BBB", 200, 40.0, "Financials"),
        Holding("CCC", 50, 120.0, "Health Care"),
        Holding("DDD", 80, 75.0, "Energy"),
        Holding("EEE", 150, 20.0, "Utilities"),
    ])


@pytest.fixture
def portfolio_provider():
    """Payloads for AAA..DDD; EEE resolves but has no data at all."""
    fundamentals, prices, profiles = {}, {}, {}
    specs = {
        "AAA": (40e6, 0.25, 3e9, 1.2, 0.0010),
        "BBB": (60e6, 0.18, 8e9, 0.9, 0.0002),
        "CCC": (25e6, 0.30, 1.5e9, 0.8, 0.0006),
        "DDD": (90e6, 0.12, 20e9, 1.1, -0.0003),
    }
    for i, (sym, (rev, margin, cap, beta, trend)) in enumerate(specs.items()):
        quarters = make_quarters(sym, n=8, start_revenue=rev, qoq_growth=0.02, op_margin=margin)
        fundamentals[sym] = [quarter_to_raw(q) for q in quarters]
        prices[sym] = make_ohlcv(seed=10 + i, trend=trend)
        profiles[sym] = {
            "name": f"{sym} Inc", "marketCap": cap, "sharesOutstanding": cap / 100,
            "beta": beta, "totalEmployees": 5000 + 1000 * i, "price": 100.0,
        }
    return StaticProvider(fundamentals=fundamentals, prices=prices, profiles=profiles)


@pytest.fixture
def session(portfolio_provider, holdings):
    return AnalysisSession(provider=portfolio_provider, holdings=holdings, as_of=AS_OF, sleep=MagicMock())
