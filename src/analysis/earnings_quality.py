"""Forensic earnings-quality scoring.

Implements:
  * Accruals ratio per quarter      (NI - CFO) / assets
  * Beneish M-Score proxy           from the two most recent quarters
  * Cash-flow / earnings divergence CFO / NI per quarter and its trend
  * Revenue quality                 avg QoQ CFO growth / avg QoQ revenue growth
  * Earnings persistence            lag-1 autocorrelation of diluted EPS
  * Composite score 0-10 -> grade A..F, plus independent red flags

The Beneish inputs are proxies built from the fields a quarterly filing
reliably carries: receivables ~ max(revenue - CFO, 0), SG&A ~ gross profit -
operating income, hard assets ~ equity + liabilities.  DEPI is fixed at 1.0.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from src.analysis.base import BaseEngine
from src.analysis.indicators import linreg_slope
from src.records import AnalysisResult, FundamentalPeriod
from src.utils.logger import setup_logger

logger = setup_logger("earnings_quality")

MODEL_ID = "earnings_quality"

_MIN_QUARTERS = 4
M_SCORE_THRESHOLD = -1.78
_M_SCORE_SAFE = -2.22

# Beneish (1999) eight-variable model
_BENEISH_INTERCEPT = -4.84
_BENEISH_WEIGHTS = {
    "DSRI": 0.920, "GMI": 0.528, "AQI": 0.404, "SGI": 0.892,
    "DEPI": 0.115, "SGAI": -0.172, "TATA": 4.679, "LVGI": -0.327,
}
# (threshold, direction) at which a component reads as suspicious
_COMPONENT_FLAGS = {
    "DSRI": (1.0, ">"), "GMI": (1.0, ">"), "AQI": (1.0, ">"), "SGI": (1.0, ">"),
    "SGAI": (1.0, "<"), "TATA": (0.025, ">"), "LVGI": (1.0, ">"),
}

_GRADES = [(9, "A"), (7, "B"), (5, "C"), (3, "D")]


def _safe_div(
    numerator: Optional[float],
    denominator: Optional[float],
    default: Optional[float] = None,
) -> Optional[float]:
    """Division that returns *default* when inputs are missing or denom is 0."""
    if numerator is None or denominator is None or denominator == 0:
        return default
    return numerator / denominator


def _v(value: Optional[float]) -> float:
    return value or 0.0


def _mean(values: Sequence[float], default: float = 0.0) -> float:
    return sum(values) / len(values) if values else default


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

def accruals_ratios(quarters: Sequence[FundamentalPeriod]) -> list[Optional[float]]:
    return [
        None if not q.assets else (_v(q.net_income) - _v(q.operating_cash_flow)) / q.assets
        for q in quarters
    ]


def beneish_components(current: FundamentalPeriod, prior: FundamentalPeriod) -> dict[str, float]:
    """Proxy Beneish indices comparing *current* against *prior* quarter."""
    rev_t, rev_p = _v(current.revenue), _v(prior.revenue)

    rec_t = max(rev_t - _v(current.operating_cash_flow), 0.0)
    rec_p = max(rev_p - _v(prior.operating_cash_flow), 0.0)
    dsri = 1.0
    if rev_t > 0 and rev_p > 0 and rec_p > 0:
        dsri = (rec_t / rev_t) / (rec_p / rev_p)

    gm_t = _v(current.gross_profit) / rev_t if rev_t > 0 else 0.0
    gm_p = _v(prior.gross_profit) / rev_p if rev_p > 0 else 0.0
    gmi = gm_p / gm_t if gm_t > 0 else 1.0

    def soft_assets(q: FundamentalPeriod) -> float:
        if _v(q.assets) <= 0:
            return 0.0
        return 1 - (_v(q.equity) + _v(q.liabilities)) / q.assets

    aq_t, aq_p = soft_assets(current), soft_assets(prior)
    aqi = aq_t / aq_p if aq_p != 0 else 1.0
    if abs(aq_t) < 0.001 and abs(aq_p) < 0.001:
        aqi = 1.0

    sgi = rev_t / rev_p if rev_p > 0 else 1.0

    def sga_proxy(q: FundamentalPeriod) -> float:
        rev = _v(q.revenue)
        if rev > 0 and rev - _v(q.gross_profit) > 0:
            return (_v(q.gross_profit) - _v(q.operating_income)) / rev
        return 0.0

    sga_t, sga_p = sga_proxy(current), sga_proxy(prior)
    sgai = sga_t / sga_p if sga_p > 0 else 1.0

    tata = (
        (_v(current.net_income) - _v(current.operating_cash_flow)) / current.assets
        if _v(current.assets) > 0 else 0.0
    )

    lev_t = _v(current.liabilities) / current.assets if _v(current.assets) > 0 else 0.0
    lev_p = _v(prior.liabilities) / prior.assets if _v(prior.assets) > 0 else 0.0
    lvgi = lev_t / lev_p if lev_p > 0 else 1.0

    return {
        "DSRI": dsri, "GMI": gmi, "AQI": aqi, "SGI": sgi,
        "SGAI": sgai, "TATA": tata, "LVGI": lvgi, "DEPI": 1.0,
    }


def m_score(components: dict[str, float]) -> float:
    return _BENEISH_INTERCEPT + sum(w * components[k] for k, w in _BENEISH_WEIGHTS.items())


def component_flags(components: dict[str, float]) -> dict[str, bool]:
    flags = {}
    for key, (threshold, direction) in _COMPONENT_FLAGS.items():
        value = components[key]
        flags[key] = value > threshold if direction == ">" else value < threshold
    return flags


def cf_to_ni(quarters: Sequence[FundamentalPeriod]) -> list[Optional[float]]:
    """CFO / NI per quarter; undefined where NI is not positive."""
    return [
        _v(q.operating_cash_flow) / q.net_income if _v(q.net_income) > 0 else None
        for q in quarters
    ]


def cf_ni_trend(ratios: Sequence[Optional[float]]) -> Optional[float]:
    """Slope of the defined CF/NI ratios against their quarter index (>= 3 points)."""
    points = [(i, r) for i, r in enumerate(ratios) if r is not None]
    if len(points) < 3:
        return None
    xs = [p[0] for p in points]
    if len(set(xs)) < 2:
        return None
    return linreg_slope([p[1] for p in points], x=xs)


def growth_rates(values: Sequence[float]) -> list[float]:
    """QoQ changes relative to |previous|, skipping zero bases."""
    return [(cur - prev) / abs(prev) for prev, cur in zip(values, values[1:]) if prev != 0]


def revenue_quality(quarters: Sequence[FundamentalPeriod]) -> tuple[float, float, float]:
    """Return (quality ratio, avg revenue growth, avg CF growth)."""
    avg_rev = _mean(growth_rates([_v(q.revenue) for q in quarters]))
    avg_cf = _mean(growth_rates([_v(q.operating_cash_flow) for q in quarters]))
    if abs(avg_rev) > 0.001:
        ratio = avg_cf / avg_rev
    else:
        ratio = 1.0 if avg_cf >= 0 else 0.0
    return ratio, avg_rev, avg_cf


def earnings_persistence(eps: Sequence[float]) -> Optional[float]:
    """Lag-1 autocorrelation of the EPS series (None below 4 points or zero variance)."""
    if len(eps) < 4:
        return None
    mean = sum(eps) / len(eps)
    num = sum((eps[i] - mean) * (eps[i - 1] - mean) for i in range(1, len(eps)))
    den = sum((e - mean) ** 2 for e in eps)
    return num / den if den > 0 else None


def quality_score(
    avg_abs_accruals: float,
    mscore: Optional[float],
    avg_cfni: float,
    persistence: Optional[float],
    rev_quality: float,
) -> tuple[int, dict[str, int]]:
    """Composite 0-10: up to two points from each of five tests."""
    points = {
        "accruals": 2 if avg_abs_accruals < 0.05 else 1 if avg_abs_accruals < 0.10 else 0,
        "m_score": 0 if mscore is None else 2 if mscore < _M_SCORE_SAFE else 1 if mscore < M_SCORE_THRESHOLD else 0,
        "cf_to_ni": 2 if avg_cfni > 1.0 else 1 if avg_cfni > 0.7 else 0,
        "persistence": 0 if persistence is None else 2 if persistence > 0.6 else 1 if persistence > 0.3 else 0,
        "revenue_quality": 2 if rev_quality > 0.8 else 1 if rev_quality > 0.5 else 0,
    }
    return min(sum(points.values()), 10), points


def grade_for(score: int) -> str:
    for floor, grade in _GRADES:
        if score >= floor:
            return grade
    return "F"


def red_flags(
    avg_abs_accruals: float,
    mscore: Optional[float],
    slope: Optional[float],
    persistence: Optional[float],
    rev_quality: float,
    avg_rev_growth: float,
    components: Optional[dict[str, float]],
) -> list[dict[str, str]]:
    flags: list[dict[str, str]] = []

    def add(severity: str, flag: str, detail: str) -> None:
        flags.append({"severity": severity, "flag": flag, "detail": detail})

    if avg_abs_accruals >= 0.10:
        add("high", "high_accruals",
            f"High accruals ratio ({avg_abs_accruals:.2f}) suggests earnings not backed by cash")
    if mscore is not None and mscore > M_SCORE_THRESHOLD:
        add("high", "m_score",
            f"Beneish M-Score ({mscore:.2f}) above manipulation threshold ({M_SCORE_THRESHOLD})")
    if slope is not None and slope < -0.05:
        add("medium", "cf_divergence",
            f"Cash flow diverging from net income (CF/NI trend declining, slope: {slope:.2f})")
    if persistence is not None and persistence < 0.3:
        add("medium", "low_persistence",
            f"Low earnings persistence ({persistence:.2f}) indicates volatile, unreliable earnings")
    if rev_quality < 0.5 and abs(avg_rev_growth) > 0.01:
        add("medium", "revenue_quality",
            f"Revenue growing faster than cash flow (quality ratio: {rev_quality:.2f})")
    if components:
        if components["DSRI"] > 1.5:
            add("low", "dsri", f"Elevated Days Sales Receivable Index (DSRI: {components['DSRI']:.2f})")
        if components["GMI"] > 1.3:
            add("low", "gmi", f"Declining gross margins (GMI: {components['GMI']:.2f})")
    return flags


# ---------------------------------------------------------------------------
# Core model
# ---------------------------------------------------------------------------

def compute_earnings_quality(symbol: str, periods: Sequence[FundamentalPeriod]) -> AnalysisResult:
    """Grade the earnings quality of *symbol* from quarterly fundamentals.

    Annual periods are ignored; quarters are processed oldest first.
    Fewer than four quarters yields a not-applicable result.
    """
    quarters = sorted((p for p in periods if not p.is_annual), key=lambda p: p.sort_date)
    if len(quarters) < _MIN_QUARTERS:
        return AnalysisResult.not_applicable(
            MODEL_ID, symbol,
            f"Insufficient quarterly data for {symbol}. Need at least {_MIN_QUARTERS} quarters; "
            f"found {len(quarters)}.",
        )

    accruals = accruals_ratios(quarters)
    components = beneish_components(quarters[-1], quarters[-2])
    mscore = m_score(components)
    ratios = cf_to_ni(quarters)
    slope = cf_ni_trend(ratios)
    rev_quality, avg_rev_growth, avg_cf_growth = revenue_quality(quarters)
    persistence = earnings_persistence([_v(q.diluted_eps) for q in quarters])

    valid_accruals = [a for a in accruals if a is not None]
    avg_accruals = _mean(valid_accruals)
    avg_abs_accruals = _mean([abs(a) for a in valid_accruals])
    avg_cfni = _mean([r for r in ratios if r is not None])

    score, points = quality_score(avg_abs_accruals, mscore, avg_cfni, persistence, rev_quality)
    grade = grade_for(score)
    flags = red_flags(avg_abs_accruals, mscore, slope, persistence, rev_quality, avg_rev_growth, components)
    m_verdict = "LIKELY MANIPULATOR" if mscore > M_SCORE_THRESHOLD else "UNLIKELY MANIPULATOR"

    logger.info("Earnings quality %s: grade %s (%d/10), M-Score %.2f", symbol, grade, score, mscore)

    metrics: dict[str, Any] = {
        "quality_score": score,
        "grade": grade,
        "avg_accruals": avg_accruals,
        "avg_abs_accruals": avg_abs_accruals,
        "m_score": mscore,
        "m_score_verdict": m_verdict,
        "avg_cf_to_ni": avg_cfni,
        "cf_to_ni_slope": slope,
        "revenue_quality_ratio": rev_quality,
        "avg_revenue_growth": avg_rev_growth,
        "avg_cf_growth": avg_cf_growth,
        "earnings_persistence": persistence,
        "quarters_analyzed": len(quarters),
    }
    metrics.update({f"beneish_{k.lower()}": v for k, v in components.items()})

    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=symbol,
        scalar_metrics=metrics,
        derived_series={
            "quarter": [q.label for q in quarters],
            "accruals": accruals,
            "cf_to_ni": ratios,
            "net_income": [q.net_income for q in quarters],
            "operating_cash_flow": [q.operating_cash_flow for q in quarters],
            "revenue_growth": [None] + [
                _safe_div(_v(c.revenue) - _v(p.revenue), abs(_v(p.revenue)))
                for p, c in zip(quarters, quarters[1:])
            ],
            "cf_growth": [None] + [
                _safe_div(_v(c.operating_cash_flow) - _v(p.operating_cash_flow), abs(_v(p.operating_cash_flow)))
                for p, c in zip(quarters, quarters[1:])
            ],
        },
        verdict=grade,
        warnings=[f["detail"] for f in flags],
        details={
            "beneish_components": components,
            "component_flags": component_flags(components),
            "score_points": points,
            "red_flags": flags,
        },
    )


class EarningsQualityEngine(BaseEngine):
    model_id = MODEL_ID

    def run(self, ticker: str, session, **options) -> AnalysisResult:
        return compute_earnings_quality(ticker, session.fundamentals(ticker, limit=12))
