"""Technical-indicator scoring engine.

Computes SMA 20/50/200, Wilder RSI, MACD(12, 26, 9), Bollinger(20, 2),
60-bar support/resistance and an on-balance-volume trend over daily bars,
then folds four 25-point components into a 0-100 score and a signal.
"""

from __future__ import annotations

import math
from datetime import timedelta
from typing import Sequence

import numpy as np
import pandas as pd

from src.analysis import indicators as ind
from src.analysis.base import BaseEngine
from src.records import AnalysisResult, PriceBar
from src.utils.logger import setup_logger

logger = setup_logger("technical")

MODEL_ID = "technical"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_MIN_BARS = 30
_LOOKBACK_DAYS = 365
_SR_WINDOW = 5
_SR_LOOKBACK = 60
_OBV_SMA = 20
_OBV_SHIFT = 5

_SIGNALS = [
    (70, "STRONG BUY", "Multiple bullish signals across indicators"),
    (55, "BUY", "Bullish momentum with favorable technical setup"),
    (45, "HOLD", "Mixed signals, neutral technical outlook"),
    (30, "SELL", "Bearish momentum with weakening technicals"),
]
_FLOOR_SIGNAL = ("STRONG SELL", "Multiple bearish signals across indicators")


def _defined(value: float | None) -> bool:
    return value is not None and not math.isnan(value)


# ---------------------------------------------------------------------------
# Indicator frame
# ---------------------------------------------------------------------------

def bars_to_frame(bars: Sequence[PriceBar]) -> pd.DataFrame:
    """OHLCV DataFrame indexed by date, oldest first."""
    df = pd.DataFrame(
        [{"Date": b.date, "Open": b.open, "High": b.high, "Low": b.low,
          "Close": b.close, "Volume": b.volume or 0.0} for b in bars]
    )
    return df.set_index("Date").sort_index()


def compute_indicators(df: pd.DataFrame) -> pd.DataFrame:
    """Add the scored indicators as columns of a copy of *df*."""
    r = df.copy()
    close = r["Close"].values.astype(float)
    volume = r["Volume"].values.astype(float)

    r["SMA_20"] = ind.sma(close, 20)
    r["SMA_50"] = ind.sma(close, 50)
    r["SMA_200"] = ind.sma(close, 200)
    r["RSI_14"] = ind.rsi(close, 14)

    line, signal, hist = ind.macd(close)
    r["MACD"] = line
    r["MACD_signal"] = signal
    r["MACD_hist"] = hist

    upper, middle, lower, pct_b = ind.bollinger(close, 20, 2.0)
    r["BB_upper"] = upper
    r["BB_mid"] = middle
    r["BB_lower"] = lower
    r["BB_pct_b"] = pct_b

    r["OBV"] = ind.obv(close, volume)
    r["Volume_SMA_20"] = ind.sma(volume, 20)
    return r


# ---------------------------------------------------------------------------
# Component scores (25 points each)
# ---------------------------------------------------------------------------

def rsi_points(rsi: float) -> int:
    if rsi < 30:
        return 25
    if rsi < 40:
        return 20
    if rsi < 50:
        return 15
    if rsi < 60:
        return 12
    if rsi < 70:
        return 8
    return 3


def macd_points(hist: float, prev_hist: float) -> int:
    increasing = hist > prev_hist
    if hist > 0 and increasing:
        return 25
    if hist > 0:
        return 18
    if hist < 0 and increasing:
        return 12
    return 5


def trend_points(price: float, sma50: float | None, sma200: float | None) -> int:
    if _defined(sma200) and _defined(sma50):
        if price > sma200 and sma50 > sma200:
            return 25
        if price > sma200:
            return 18
        if price > sma50:
            return 12
        return 3
    if _defined(sma50):
        return 12 if price > sma50 else 3
    # not enough history for the 200-day average
    return 10


def bollinger_points(pct_b: float) -> int:
    if pct_b < 0.2:
        return 25
    if pct_b < 0.4:
        return 20
    if pct_b < 0.6:
        return 12
    if pct_b < 0.8:
        return 8
    return 3


def signal_for(score: float) -> tuple[str, str]:
    for threshold, label, desc in _SIGNALS:
        if score > threshold:
            return label, desc
    return _FLOOR_SIGNAL


def obv_trend(obv: np.ndarray) -> str:
    """Rising when the 20-bar OBV average is above its value 5 bars earlier."""
    avg = ind.sma(obv, _OBV_SMA)
    if len(avg) <= _OBV_SHIFT:
        return "Falling"
    now = avg[-1] if _defined(avg[-1]) else 0.0
    before = avg[-1 - _OBV_SHIFT] if _defined(avg[-1 - _OBV_SHIFT]) else 0.0
    return "Rising" if now > before else "Falling"


# ---------------------------------------------------------------------------
# Core model
# ---------------------------------------------------------------------------

def compute_technical(symbol: str, bars: Sequence[PriceBar]) -> AnalysisResult:
    """Score daily *bars* (any order) for *symbol*.

    Returns a not-applicable result with fewer than 30 bars.
    """
    if len(bars) < _MIN_BARS:
        return AnalysisResult.not_applicable(
            MODEL_ID, symbol,
            f"Insufficient price history for {symbol}. Need at least {_MIN_BARS} days of data, got {len(bars)}.",
        )

    df = compute_indicators(bars_to_frame(bars))
    closes = df["Close"].values.astype(float)
    price = float(closes[-1])

    rsi = ind.last_valid(df["RSI_14"].values, 50.0)
    macd_line = ind.last_valid(df["MACD"].values, 0.0)
    macd_signal = ind.last_valid(df["MACD_signal"].values, 0.0)
    hist_values = df["MACD_hist"].dropna().values
    hist = float(hist_values[-1]) if len(hist_values) else 0.0
    prev_hist = float(hist_values[-2]) if len(hist_values) >= 2 else 0.0
    pct_b = ind.last_valid(df["BB_pct_b"].values, 0.5)

    sma20 = float(df["SMA_20"].iloc[-1])
    sma50 = float(df["SMA_50"].iloc[-1])
    sma200 = float(df["SMA_200"].iloc[-1])

    volume = float(df["Volume"].iloc[-1])
    vol_avg = float(df["Volume_SMA_20"].iloc[-1])
    vol_avg = vol_avg if _defined(vol_avg) and vol_avg > 0 else 1.0
    volume_ratio = volume / vol_avg

    supports, resistances = ind.support_resistance(
        df["High"].values, df["Low"].values, window=_SR_WINDOW, lookback=_SR_LOOKBACK,
    )

    components = {
        "rsi": rsi_points(rsi),
        "macd": macd_points(hist, prev_hist),
        "trend": trend_points(price, sma50, sma200),
        "bollinger": bollinger_points(pct_b),
    }
    score = sum(components.values())
    signal, description = signal_for(score)

    warnings = []
    if not _defined(sma200):
        warnings.append(f"Only {len(df)} bars available; SMA200 undefined, trend component uses a neutral score.")

    logger.info("Technical %s: score %d (%s)", symbol, score, signal)
    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=symbol,
        scalar_metrics={
            "price": price,
            "technical_score": score,
            "rsi": rsi,
            "macd_line": macd_line,
            "macd_signal": macd_signal,
            "macd_histogram": hist,
            "macd_increasing": hist > prev_hist,
            "percent_b": pct_b,
            "sma20": sma20 if _defined(sma20) else None,
            "sma50": sma50 if _defined(sma50) else None,
            "sma200": sma200 if _defined(sma200) else None,
            "volume": volume,
            "volume_ratio": round(volume_ratio, 4),
            "obv_trend": obv_trend(df["OBV"].values),
            "rsi_score": components["rsi"],
            "macd_score": components["macd"],
            "trend_score": components["trend"],
            "bollinger_score": components["bollinger"],
        },
        derived_series={
            "date": [d.isoformat() for d in df.index],
            "close": list(closes),
            "sma20": ind.nan_to_none(df["SMA_20"]),
            "sma50": ind.nan_to_none(df["SMA_50"]),
            "sma200": ind.nan_to_none(df["SMA_200"]),
            "rsi": ind.nan_to_none(df["RSI_14"]),
            "macd": ind.nan_to_none(df["MACD"]),
            "macd_signal": ind.nan_to_none(df["MACD_signal"]),
            "macd_histogram": ind.nan_to_none(df["MACD_hist"]),
            "bb_upper": ind.nan_to_none(df["BB_upper"]),
            "bb_middle": ind.nan_to_none(df["BB_mid"]),
            "bb_lower": ind.nan_to_none(df["BB_lower"]),
            "percent_b": ind.nan_to_none(df["BB_pct_b"]),
        },
        verdict=signal,
        warnings=warnings,
        details={"supports": supports, "resistances": resistances, "signal_description": description},
    )


class TechnicalEngine(BaseEngine):
    model_id = MODEL_ID

    def run(self, ticker: str, session, lookback_days: int = _LOOKBACK_DAYS, **options) -> AnalysisResult:
        end = session.as_of
        bars = session.price_bars(ticker, start=end - timedelta(days=lookback_days), end=end)
        return compute_technical(ticker, bars)
