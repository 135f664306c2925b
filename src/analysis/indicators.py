"""Stateless numeric primitives shared by the engines.

Moving averages, oscillators, volatility bands, local extrema, regression
slope and cross-sectional z-scores.  Sequences go in as anything
array-like; outputs are float ``np.ndarray`` with ``NaN`` at leading
positions that do not have enough history yet.  Uses TA-Lib for the
textbook rolling statistics and plain numpy where the definition differs
from TA-Lib's (RSI on a flat window, MACD signal over the defined MACD
values only).
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

import numpy as np
import talib

_TRADING_DAYS = 252
Z_CLAMP = 2.0


def _arr(data: Iterable[float]) -> np.ndarray:
    return np.ascontiguousarray(np.asarray(list(data) if not isinstance(data, np.ndarray) else data, dtype=float))


def _empty(n: int) -> np.ndarray:
    return np.full(n, np.nan)


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def nan_to_none(values: Iterable[float]) -> list[float | None]:
    """Convert an indicator array to a JSON-friendly list."""
    out = []
    for v in values:
        if v is None or (isinstance(v, float) and math.isnan(v)):
            out.append(None)
        else:
            out.append(float(v))
    return out


def last_valid(values: Sequence[float], default: float | None = None) -> float | None:
    for v in reversed(list(values)):
        if v is not None and not math.isnan(v):
            return float(v)
    return default


# ---------------------------------------------------------------------------
# Moving averages / dispersion
# ---------------------------------------------------------------------------

def sma(data: Iterable[float], period: int) -> np.ndarray:
    """Simple moving average; first ``period - 1`` positions undefined."""
    x = _arr(data)
    if len(x) < period:
        return _empty(len(x))
    return talib.SMA(x, timeperiod=period)


def ema(data: Iterable[float], span: int) -> np.ndarray:
    """Exponential moving average seeded with the SMA of the first *span* values.

    k = 2 / (span + 1); ema[i] = x[i] * k + ema[i-1] * (1 - k).
    """
    x = _arr(data)
    if len(x) < span:
        return _empty(len(x))
    return talib.EMA(x, timeperiod=span)


def rolling_std(data: Iterable[float], period: int) -> np.ndarray:
    """Population standard deviation over each trailing window."""
    x = _arr(data)
    if len(x) < period:
        return _empty(len(x))
    return talib.STDDEV(x, timeperiod=period, nbdev=1)


# ---------------------------------------------------------------------------
# Oscillators
# ---------------------------------------------------------------------------

def rsi(closes: Iterable[float], period: int = 14) -> np.ndarray:
    """Wilder RSI.

    Seed averages are the plain means of the first *period* changes; after
    that ``avg = (avg * (period - 1) + current) / period``.  RSI is 100
    whenever the smoothed average loss is zero.
    """
    x = _arr(closes)
    n = len(x)
    out = _empty(n)
    if n < period + 1:
        return out

    deltas = np.diff(x)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, n):
        avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        out[i] = _rsi_value(avg_gain, avg_loss)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)


def macd(
    closes: Iterable[float], fast: int = 12, slow: int = 26, signal: int = 9,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """MACD line, signal line and histogram.

    The signal EMA runs over the defined MACD values only and is mapped back
    to their original positions.
    """
    x = _arr(closes)
    line = ema(x, fast) - ema(x, slow)
    sig = _empty(len(x))
    valid = np.where(~np.isnan(line))[0]
    if len(valid):
        sig[valid] = ema(line[valid], signal)
    return line, sig, line - sig


def bollinger(
    closes: Iterable[float], period: int = 20, k: float = 2.0,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Upper, middle, lower band and %B (0.5 where the band has zero width)."""
    x = _arr(closes)
    middle = sma(x, period)
    sd = rolling_std(x, period)
    upper = middle + k * sd
    lower = middle - k * sd
    width = upper - lower
    pct_b = _empty(len(x))
    defined = ~np.isnan(width)
    flat = defined & (width == 0)
    wide = defined & (width != 0)
    pct_b[flat] = 0.5
    pct_b[wide] = (x[wide] - lower[wide]) / width[wide]
    return upper, middle, lower, pct_b


def obv(closes: Iterable[float], volumes: Iterable[float]) -> np.ndarray:
    """On-balance volume."""
    c = _arr(closes)
    v = _arr(volumes)
    if len(c) == 0:
        return _empty(0)
    return talib.OBV(c, v)


# ---------------------------------------------------------------------------
# Extrema / support & resistance
# ---------------------------------------------------------------------------

def local_extrema(values: Iterable[float], mode: str = "min", order: int = 5) -> list[int]:
    """Indices that are strictly below (``min``) / above (``max``) every other
    value within *order* positions on either side.  Edges without a full
    window are skipped."""
    x = _arr(values)
    n = len(x)
    found = []
    for i in range(order, n - order):
        window = np.concatenate([x[i - order:i], x[i + 1:i + order + 1]])
        if np.isnan(x[i]) or np.isnan(window).any():
            continue
        if mode == "min" and (window > x[i]).all():
            found.append(i)
        elif mode == "max" and (window < x[i]).all():
            found.append(i)
    return found


def support_resistance(
    highs: Sequence[float],
    lows: Sequence[float],
    window: int = 5,
    lookback: int = 60,
    levels: int = 3,
) -> tuple[list[float], list[float]]:
    """Lowest local-minimum lows and highest local-maximum highs over the
    trailing *lookback* bars."""
    n = len(lows)
    start = n - min(lookback, n)
    lows_tail = list(lows)[start:]
    highs_tail = list(highs)[start:]
    supports = sorted(lows_tail[i] for i in local_extrema(lows_tail, "min", window))
    resistances = sorted((highs_tail[i] for i in local_extrema(highs_tail, "max", window)), reverse=True)
    return [float(s) for s in supports[:levels]], [float(r) for r in resistances[:levels]]


# ---------------------------------------------------------------------------
# Regression / cross-section
# ---------------------------------------------------------------------------

def linreg_slope(values: Sequence[float], x: Sequence[float] | None = None) -> float:
    """OLS slope of *values* against 0..n-1, or against *x* when given.

    Returns 0 for n < 2 or zero variance in x.
    """
    y = _arr(values)
    n = len(y)
    if n < 2:
        return 0.0
    x = np.arange(n, dtype=float) if x is None else _arr(x)
    denom = n * (x * x).sum() - x.sum() ** 2
    if denom == 0:
        return 0.0
    return float((n * (x * y).sum() - x.sum() * y.sum()) / denom)


def zscores(values: Sequence[float | None], limit: float = Z_CLAMP) -> list[float]:
    """Cross-sectional z-scores over the non-null subset, clamped to +/-limit.

    Null inputs score 0.  A zero dispersion is treated as 1 so identical
    values all score 0.
    """
    valid = [float(v) for v in values if v is not None and not math.isnan(v)]
    if not valid:
        return [0.0 for _ in values]
    mean = sum(valid) / len(valid)
    sd = math.sqrt(sum((v - mean) ** 2 for v in valid) / len(valid)) or 1.0
    out = []
    for v in values:
        if v is None or math.isnan(v):
            out.append(0.0)
        else:
            out.append(clamp((float(v) - mean) / sd, -limit, limit))
    return out


def median(values: Iterable[float | None]) -> float | None:
    valid = sorted(float(v) for v in values if v is not None and math.isfinite(v))
    if not valid:
        return None
    mid = len(valid) // 2
    if len(valid) % 2 == 0:
        return (valid[mid - 1] + valid[mid]) / 2
    return valid[mid]


def pstdev(values: Sequence[float]) -> float:
    """Population standard deviation (0 for an empty sequence)."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


# ---------------------------------------------------------------------------
# Price-derived statistics
# ---------------------------------------------------------------------------

def simple_returns(closes: Sequence[float]) -> np.ndarray:
    x = _arr(closes)
    if len(x) < 2:
        return np.array([])
    return np.diff(x) / x[:-1]


def annualized_volatility(closes: Sequence[float]) -> float | None:
    """Population stdev of daily simple returns scaled by sqrt(252)."""
    rets = simple_returns(closes)
    if len(rets) < 2:
        return None
    return float(rets.std() * math.sqrt(_TRADING_DAYS))


def momentum(closes: Sequence[float], bars: int = 60) -> float | None:
    """Percent change from *bars* observations ago to the last close."""
    if len(closes) < bars:
        return None
    base = closes[-bars]
    if not base:
        return None
    return (closes[-1] - base) / base * 100.0
