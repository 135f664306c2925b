"""Record normalizer: raw provider payloads -> canonical typed records.

Providers disagree on field names (``revenues`` vs ``revenue``, ``cashFlow``
vs ``operatingCashFlow``), on period tags (``FY`` vs ``annual``) and on units
(some ratios arrive already multiplied by 100).  All of that is resolved here
so the engines only ever see :mod:`src.records` types, sorted oldest-first.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any, Iterable, Sequence

import pandas as pd

from src.records import (
    ANNUAL,
    CompanyProfile,
    DividendEvent,
    FundamentalPeriod,
    PriceBar,
)
from src.utils.logger import setup_logger

logger = setup_logger("normalizer")

# ---------------------------------------------------------------------------
# Field aliases -- first hit wins
# ---------------------------------------------------------------------------
_FUNDAMENTAL_ALIASES: dict[str, list[str]] = {
    "revenue": ["revenue", "revenues", "totalRevenue", "Total Revenue"],
    "gross_profit": ["gross_profit", "grossProfit", "Gross Profit"],
    "operating_income": ["operating_income", "operatingIncome", "operatingIncomeLoss", "Operating Income"],
    "net_income": ["net_income", "netIncome", "netIncomeLoss", "Net Income"],
    "operating_cash_flow": [
        "operating_cash_flow", "operatingCashFlow", "cashFlow",
        "netCashFlowFromOperatingActivities", "Operating Cash Flow",
    ],
    "investing_cash_flow": [
        "investing_cash_flow", "investingCashFlow",
        "netCashFlowFromInvestingActivities", "Investing Cash Flow",
    ],
    "assets": ["assets", "totalAssets", "Total Assets"],
    "liabilities": ["liabilities", "totalLiabilities", "Total Liabilities"],
    "equity": ["equity", "stockholdersEquity", "totalEquity", "Stockholders Equity"],
    "long_term_debt": ["long_term_debt", "longTermDebt", "Long Term Debt"],
    "diluted_eps": ["diluted_eps", "epsDiluted", "dilutedEPS", "eps", "Diluted EPS"],
    "current_assets": ["current_assets", "currentAssets", "Current Assets"],
    "noncurrent_liabilities": [
        "noncurrent_liabilities", "noncurrentLiabilities", "nonCurrentLiabilities",
        "Total Non Current Liabilities Net Minority Interest",
    ],
    "dividends_paid": ["dividends_paid", "dividends", "dividendsPaid", "Cash Dividends Paid"],
}

_PERIOD_TAGS = {
    "FY": ANNUAL, "ANNUAL": ANNUAL, "A": ANNUAL, "Y": ANNUAL,
    "Q1": "Q1", "Q2": "Q2", "Q3": "Q3", "Q4": "Q4",
}

_FREQUENCY_TO_PPY = {1: 1, 2: 2, 4: 4, 12: 12}


# ---------------------------------------------------------------------------
# Low-level coercion helpers
# ---------------------------------------------------------------------------

def _num(value: Any) -> float | None:
    """Coerce to float; None for missing, NaN or unparsable input."""
    if value is None:
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def _pick(raw: dict, names: Sequence[str]) -> float | None:
    for name in names:
        if name in raw:
            val = _num(raw[name])
            if val is not None:
                return val
    return None


def _date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError):
        return None
    if pd.isna(ts):
        return None
    return ts.date()


def _int(value: Any) -> int | None:
    val = _num(value)
    return int(val) if val is not None else None


def _period_tag(value: Any) -> str:
    tag = str(value or "").strip().upper()
    return _PERIOD_TAGS.get(tag, tag or "Q?")


# ---------------------------------------------------------------------------
# Fundamentals
# ---------------------------------------------------------------------------

def normalize_fundamental(raw: dict, symbol: str) -> FundamentalPeriod:
    """Build a single :class:`FundamentalPeriod` from a provider dict."""
    values = {field: _pick(raw, aliases) for field, aliases in _FUNDAMENTAL_ALIASES.items()}
    return FundamentalPeriod(
        symbol=symbol,
        fiscal_period=_period_tag(raw.get("fiscalPeriod", raw.get("fiscal_period"))),
        fiscal_year=_int(raw.get("fiscalYear", raw.get("fiscal_year"))),
        period_start=_date(raw.get("startDate", raw.get("period_start"))),
        period_end=_date(raw.get("endDate", raw.get("period_end", raw.get("date")))),
        filing_date=_date(raw.get("filingDate", raw.get("filing_date"))),
        **values,
    )


def normalize_fundamentals(
    raw_records: Iterable[dict] | None,
    symbol: str,
    include_annual: bool = False,
) -> list[FundamentalPeriod]:
    """Normalize provider fundamentals into a chronological period list.

    Annual periods are dropped unless *include_annual* is set.  Duplicate
    (fiscal_year, fiscal_period) keys keep the most recently filed record.
    Result is sorted oldest -> newest.
    """
    by_key: dict[tuple, FundamentalPeriod] = {}
    for raw in raw_records or []:
        if not isinstance(raw, dict):
            continue
        period = normalize_fundamental(raw, symbol)
        if period.is_annual and not include_annual:
            continue
        if period.fiscal_period == "TTM":
            continue
        existing = by_key.get(period.key)
        if existing is not None and (existing.filing_date or date.min) > (period.filing_date or date.min):
            continue
        by_key[period.key] = period
    periods = sorted(by_key.values(), key=lambda p: p.sort_date)
    logger.debug("Normalized %d periods for %s", len(periods), symbol)
    return periods


def newest_first(periods: Sequence[FundamentalPeriod]) -> list[FundamentalPeriod]:
    return sorted(periods, key=lambda p: p.sort_date, reverse=True)


def ttm(periods: Sequence[FundamentalPeriod], field: str, n: int = 4) -> float:
    """Sum *field* over the *n* most recent periods (missing values count as 0)."""
    recent = newest_first(periods)[:n]
    return sum(getattr(p, field) or 0.0 for p in recent)


def latest(periods: Sequence[FundamentalPeriod]) -> FundamentalPeriod | None:
    return max(periods, key=lambda p: p.sort_date) if periods else None


def _ratio(num: float | None, den: float | None) -> float | None:
    if num is None or den is None or den <= 0:
        return None
    return num / den


def value_creation_series(periods: Sequence[FundamentalPeriod]) -> list[dict]:
    """Per-quarter DuPont / ROIC ratios, oldest first, all as decimals."""
    rows = []
    for p in sorted(periods, key=lambda p: p.sort_date):
        total_capital = None
        if p.equity is not None and p.liabilities is not None:
            total_capital = p.equity + p.liabilities
        rows.append({
            "label": p.label,
            "date": p.sort_date.isoformat(),
            "profit_margin": _ratio(p.net_income, p.revenue),
            "asset_turnover": _ratio(p.revenue, p.assets),
            "equity_multiplier": _ratio(p.assets, p.equity),
            "roe": _ratio(p.net_income, p.equity),
            "gross_margin": _ratio(p.gross_profit, p.revenue),
            "operating_margin": _ratio(p.operating_income, p.revenue),
            "net_margin": _ratio(p.net_income, p.revenue),
            "roa": _ratio(p.net_income, p.assets),
            "roic": _ratio(p.operating_income, total_capital),
            "debt_to_equity": _ratio(p.liabilities, p.equity),
            "revenue": p.revenue,
            "operating_income": p.operating_income,
            "net_income": p.net_income,
            "assets": p.assets,
            "equity": p.equity,
            "liabilities": p.liabilities,
        })
    return rows


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

def _bars_from_frame(df: pd.DataFrame, symbol: str) -> list[PriceBar]:
    cols = {c.lower(): c for c in df.columns}
    bars = []
    for idx, row in df.iterrows():
        close = _num(row[cols["close"]]) if "close" in cols else None
        if close is None:
            continue
        bars.append(PriceBar(
            symbol=symbol,
            date=_date(idx),
            open=_num(row[cols["open"]]) if "open" in cols else close,
            high=_num(row[cols["high"]]) if "high" in cols else close,
            low=_num(row[cols["low"]]) if "low" in cols else close,
            close=close,
            volume=_num(row[cols["volume"]]) or 0.0 if "volume" in cols else 0.0,
        ))
    return bars


def _bars_from_dicts(rows: Iterable[dict], symbol: str) -> list[PriceBar]:
    bars = []
    for raw in rows:
        close = _pick(raw, ["close", "c", "Close"])
        when = _date(raw.get("date", raw.get("t", raw.get("timestamp"))))
        if close is None or when is None:
            continue
        bars.append(PriceBar(
            symbol=symbol,
            date=when,
            open=_pick(raw, ["open", "o", "Open"]) or close,
            high=_pick(raw, ["high", "h", "High"]) or close,
            low=_pick(raw, ["low", "l", "Low"]) or close,
            close=close,
            volume=_pick(raw, ["volume", "v", "Volume"]) or 0.0,
        ))
    return bars


def normalize_price_bars(raw: pd.DataFrame | Iterable[dict] | None, symbol: str) -> list[PriceBar]:
    """Daily bars sorted ascending, one per date, rows without a close dropped."""
    if raw is None:
        return []
    if isinstance(raw, pd.DataFrame):
        bars = [] if raw.empty else _bars_from_frame(raw, symbol)
    else:
        bars = _bars_from_dicts(raw, symbol)
    unique: dict[date, PriceBar] = {}
    for bar in bars:
        if bar.date is not None:
            unique[bar.date] = bar
    return [unique[d] for d in sorted(unique)]


# ---------------------------------------------------------------------------
# Dividends
# ---------------------------------------------------------------------------

def normalize_dividends(raw_records: Iterable[dict] | None, symbol: str) -> list[DividendEvent]:
    """Dividend events sorted newest-first; negative or missing amounts are dropped."""
    events = []
    for raw in raw_records or []:
        amount = _pick(raw, ["cash_amount", "cashAmount", "amount", "dividend"])
        if amount is None or amount < 0:
            continue
        freq = _int(raw.get("frequency", raw.get("payments_per_year")))
        events.append(DividendEvent(
            symbol=symbol,
            pay_date=_date(raw.get("payDate", raw.get("pay_date"))),
            ex_date=_date(raw.get("exDividendDate", raw.get("ex_date", raw.get("exDate")))),
            cash_amount=amount,
            payments_per_year=_FREQUENCY_TO_PPY.get(freq, 4) if freq else 4,
        ))
    return sorted(events, key=lambda e: e.pay_date or e.ex_date or date.min, reverse=True)


# ---------------------------------------------------------------------------
# Company profile
# ---------------------------------------------------------------------------

def normalize_profile(raw: dict | None, symbol: str) -> CompanyProfile:
    raw = raw or {}
    shares = _pick(raw, [
        "shares_outstanding", "weightedSharesOutstanding",
        "shareClassSharesOutstanding", "sharesOutstanding",
    ])
    employees = _int(raw.get("employee_count", raw.get("totalEmployees", raw.get("fullTimeEmployees"))))
    return CompanyProfile(
        symbol=symbol,
        name=raw.get("name") or raw.get("longName"),
        sic_code=_int(raw.get("sic_code", raw.get("sicCode"))),
        sic_description=raw.get("sic_description", raw.get("sicDescription")),
        market_cap=_pick(raw, ["market_cap", "marketCap"]),
        shares_outstanding=shares,
        employee_count=employees,
        beta=_pick(raw, ["beta"]),
        price=_pick(raw, ["price", "currentPrice", "regularMarketPrice", "lastPrice"]),
        sector=raw.get("sector") or raw.get("gicsSector"),
    )
