"""yfinance-backed data provider.

Primary: yfinance | Fallback (prices only): TwelveData REST API

Statement frames come back with line items as rows and period dates as
columns (most recent first); they are flattened into provider dicts that the
normalizer understands.
"""

from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path

import pandas as pd
import requests as req_lib
import yfinance as yf

from src.config import Keys
from src.utils.cache import DataCache
from src.utils.logger import setup_logger

logger = setup_logger("yahoo_provider")

# ---------------------------------------------------------------------------
# yfinance statement row labels -> provider dict keys
# ---------------------------------------------------------------------------
_STATEMENT_ALIASES: dict[str, list[str]] = {
    "revenues": ["Total Revenue", "Revenue", "Operating Revenue"],
    "grossProfit": ["Gross Profit"],
    "operatingIncome": ["Operating Income", "Total Operating Income As Reported"],
    "netIncome": [
        "Net Income", "Net Income Common Stockholders",
        "Net Income From Continuing Operation Net Minority Interest",
    ],
    "epsDiluted": ["Diluted EPS"],
    "assets": ["Total Assets"],
    "liabilities": ["Total Liabilities Net Minority Interest", "Total Liabilities"],
    "equity": ["Stockholders Equity", "Common Stock Equity", "Total Equity Gross Minority Interest"],
    "longTermDebt": ["Long Term Debt", "Long Term Debt And Capital Lease Obligation"],
    "currentAssets": ["Current Assets"],
    "noncurrentLiabilities": ["Total Non Current Liabilities Net Minority Interest"],
    "operatingCashFlow": [
        "Operating Cash Flow", "Cash Flow From Continuing Operating Activities",
    ],
    "investingCashFlow": [
        "Investing Cash Flow", "Cash Flow From Continuing Investing Activities",
    ],
    "dividends": ["Cash Dividends Paid", "Common Stock Dividend Paid"],
}


def _statement_value(frames: list[pd.DataFrame], aliases: list[str], col) -> float | None:
    for df in frames:
        if df is None or df.empty or col not in df.columns:
            continue
        for alias in aliases:
            if alias in df.index:
                val = df.loc[alias, col]
                if isinstance(val, pd.Series):
                    val = val.iloc[0]
                if pd.notna(val):
                    return float(val)
    return None


def statements_to_records(
    income: pd.DataFrame, balance: pd.DataFrame, cashflow: pd.DataFrame
) -> list[dict]:
    """Flatten yfinance quarterly statements into provider dicts (one per period)."""
    frames = [income, balance, cashflow]
    columns: set = set()
    for df in frames:
        if df is not None and not df.empty:
            columns.update(df.columns)

    records = []
    for col in sorted(columns, reverse=True):
        end = pd.Timestamp(col)
        rec = {
            "fiscalPeriod": f"Q{(end.month - 1) // 3 + 1}",
            "fiscalYear": end.year,
            "endDate": end.date().isoformat(),
            "startDate": (end - pd.DateOffset(months=3) + pd.Timedelta(days=1)).date().isoformat(),
        }
        for key, aliases in _STATEMENT_ALIASES.items():
            rec[key] = _statement_value(frames, aliases, col)
        records.append(rec)
    return records


def _infer_payments_per_year(ex_dates: list[pd.Timestamp]) -> int:
    if not ex_dates:
        return 4
    cutoff = max(ex_dates) - pd.Timedelta(days=360)
    count = sum(1 for d in ex_dates if d > cutoff)
    for ppy in (12, 4, 2, 1):
        if count >= ppy:
            return ppy
    return 4


def _fetch_twelvedata_history(symbol: str, start: date, end: date) -> pd.DataFrame:
    """Fetch daily OHLCV from TwelveData (fallback when yfinance returns nothing).

    Returns DataFrame with yfinance-compatible column names (Open, High, Low, Close, Volume).
    """
    api_key = Keys.TWELVE_DATA
    if not api_key:
        logger.debug("No TwelveData API key, skipping fallback")
        return pd.DataFrame()

    try:
        logger.info("TwelveData fallback: %s (%s -> %s)", symbol, start, end)
        resp = req_lib.get(
            "https://api.twelvedata.com/time_series",
            params={
                "symbol": symbol,
                "interval": "1day",
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "apikey": api_key,
                "format": "JSON",
            },
            timeout=30,
        )
        data = resp.json()
        if data.get("status") == "error":
            logger.warning("TwelveData error for %s: %s", symbol, data.get("message", "unknown"))
            return pd.DataFrame()

        values = data.get("values", [])
        if not values:
            return pd.DataFrame()

        df = pd.DataFrame(values)
        df["datetime"] = pd.to_datetime(df["datetime"])
        df = df.set_index("datetime").sort_index()
        df = df.rename(columns={
            "open": "Open", "high": "High", "low": "Low",
            "close": "Close", "volume": "Volume",
        })
        for col in ["Open", "High", "Low", "Close", "Volume"]:
            if col in df.columns:
                df[col] = pd.to_numeric(df[col], errors="coerce")
        return df

    except Exception as e:
        logger.warning("TwelveData fetch failed for %s: %s", symbol, e)
        return pd.DataFrame()


class YahooProvider:
    """DataProvider implementation over yfinance with a file cache."""

    def __init__(self, cache_dir: Path | None = None):
        self._price_cache = DataCache("price_historical", base_dir=cache_dir)
        self._fund_cache = DataCache("fundamentals", base_dir=cache_dir)
        self._profile_cache = DataCache("profile", base_dir=cache_dir)
        self._dividend_cache = DataCache("dividends", base_dir=cache_dir)

    def get_fundamentals(self, symbol: str, limit: int = 12) -> list[dict]:
        cache_key = f"fundamentals_{symbol}"
        cached = self._fund_cache.get(cache_key)
        if cached is not None:
            return cached[:limit]

        logger.info("Fetching quarterly statements: %s", symbol)
        stock = yf.Ticker(symbol)
        records = statements_to_records(
            stock.quarterly_income_stmt, stock.quarterly_balance_sheet, stock.quarterly_cashflow,
        )
        if records:
            self._fund_cache.set(cache_key, records)
        return records[:limit]

    def get_price_history(self, symbol: str, start: date, end: date) -> pd.DataFrame:
        cache_key = f"{symbol}_{start}_{end}"
        cached = self._price_cache.get_df(cache_key)
        if cached is not None:
            logger.info("Cache hit: %s", cache_key)
            return cached

        logger.info("Fetching price history: %s (%s -> %s)", symbol, start, end)
        try:
            df = yf.Ticker(symbol).history(start=start, end=end + timedelta(days=1), interval="1d")
        except Exception as e:
            logger.warning("yfinance history failed for %s: %s", symbol, e)
            df = pd.DataFrame()

        if df.empty:
            df = _fetch_twelvedata_history(symbol, start, end)

        if not df.empty:
            self._price_cache.set_df(cache_key, df)
        return df

    def get_dividends(self, symbol: str) -> list[dict]:
        cache_key = f"dividends_{symbol}"
        cached = self._dividend_cache.get(cache_key)
        if cached is not None:
            return cached

        logger.info("Fetching dividends: %s", symbol)
        series = yf.Ticker(symbol).dividends
        if series is None or series.empty:
            return []
        ex_dates = [pd.Timestamp(d).tz_localize(None) if pd.Timestamp(d).tzinfo else pd.Timestamp(d)
                    for d in series.index]
        ppy = _infer_payments_per_year(ex_dates)
        events = [
            {
                "exDividendDate": d.date().isoformat(),
                "payDate": d.date().isoformat(),
                "cashAmount": float(amount),
                "frequency": ppy,
            }
            for d, amount in zip(ex_dates, series.values)
        ]
        self._dividend_cache.set(cache_key, events)
        return events

    def get_profile(self, symbol: str) -> dict:
        cache_key = f"profile_{symbol}"
        cached = self._profile_cache.get(cache_key)
        if cached is not None:
            return cached

        info = yf.Ticker(symbol).info or {}
        profile = {
            "name": info.get("longName"),
            "sicDescription": info.get("industry"),
            "marketCap": info.get("marketCap"),
            "sharesOutstanding": info.get("sharesOutstanding"),
            "totalEmployees": info.get("fullTimeEmployees"),
            "beta": info.get("beta"),
            "price": info.get("currentPrice", info.get("regularMarketPrice")),
            "sector": info.get("sector"),
        }
        self._profile_cache.set(cache_key, profile)
        return profile
