"""Capital allocation: ROIC against WACC, margin trends and DuPont.

WACC comes from CAPM under a fixed 70/30 equity/debt split.  ROIC, margin
and DuPont trends are OLS slopes over the available quarters; a 10-point
scorecard rolls them up into a capital-efficiency score and a moat label.
"""

from __future__ import annotations

from typing import Optional, Sequence

from src.analysis.base import BaseEngine
from src.analysis.indicators import clamp, linreg_slope
from src.config import market_assumption
from src.data_sources.normalizer import newest_first, value_creation_series
from src.records import AnalysisResult, CompanyProfile, FundamentalPeriod
from src.utils.logger import setup_logger

logger = setup_logger("capital_allocation")

MODEL_ID = "capital"

_MIN_QUARTERS = 4
_EQUITY_WEIGHT = 0.7
_DEBT_WEIGHT = 0.3
_COST_OF_DEBT = 0.05
_WACC_BOUNDS = (0.06, 0.15)
_TREND_THRESHOLD = 0.001


def trend_label(slope: float) -> str:
    if slope > _TREND_THRESHOLD:
        return "Expanding"
    if slope < -_TREND_THRESHOLD:
        return "Contracting"
    return "Stable"


def capm_wacc(beta: Optional[float]) -> tuple[float, float]:
    """Return (wacc, cost_of_equity); WACC clamped to [6%, 15%]."""
    rf = market_assumption("risk_free_rate", 0.045)
    erp = market_assumption("equity_risk_premium", 0.055)
    tax = market_assumption("tax_rate", 0.21)
    cost_of_equity = rf + (beta or 1.0) * erp
    wacc = _EQUITY_WEIGHT * cost_of_equity + _DEBT_WEIGHT * _COST_OF_DEBT * (1 - tax)
    return clamp(wacc, *_WACC_BOUNDS), cost_of_equity


def incremental_roics(rows: Sequence[dict]) -> list[float]:
    """Change in operating income over change in assets, for consecutive quarters with moving assets."""
    out = []
    for prev, cur in zip(rows, rows[1:]):
        delta_assets = (cur["assets"] or 0.0) - (prev["assets"] or 0.0)
        if delta_assets != 0:
            out.append(((cur["operating_income"] or 0.0) - (prev["operating_income"] or 0.0)) / delta_assets)
    return out


def reinvestment_rate(dividends: float, net_income: float, cash_flow: float, op_income: float) -> float:
    rate = 0.0
    if net_income > 0:
        rate = 1 - dividends / net_income
    elif cash_flow > 0 and op_income > 0:
        rate = (cash_flow - dividends) / op_income
    return clamp(rate, 0.0, 1.0)


def _growth(first: float, last: float) -> float:
    return (last - first) / abs(first) if first else 0.0


def scorecard(
    latest_roic: float,
    wacc: float,
    roic_slope: float,
    margin_expansions: int,
    revenue_growth: float,
    asset_growth: float,
    latest_de: float,
    negative_equity: bool,
    reinvestment: float,
) -> dict[str, int]:
    """Points per category; maxima 2/2/2/2/1/1."""
    return {
        "roic_vs_wacc": 2 if latest_roic > wacc + 0.05 else 1 if latest_roic > wacc else 0,
        "roic_trend": 2 if roic_slope > _TREND_THRESHOLD else 1 if roic_slope > -_TREND_THRESHOLD else 0,
        "margins": 2 if margin_expansions >= 2 else 1 if margin_expansions >= 1 else 0,
        "revenue_efficiency": (
            2 if revenue_growth > asset_growth * 1.2 else 1 if revenue_growth > asset_growth else 0
        ),
        "debt": 1 if not negative_equity and latest_de < 2.0 else 0,
        "reinvestment": 1 if 0.3 < reinvestment < 0.95 else 0,
    }


def moat_label(latest_roic: float, margin_expansions: int, score: int) -> str:
    if latest_roic > 0.15 and margin_expansions >= 1 and score >= 7:
        return "Strong Moat"
    if latest_roic > 0.10 and score >= 5:
        return "Moderate Moat"
    return "Weak/No Moat"


def compute_capital_allocation(
    symbol: str,
    periods: Sequence[FundamentalPeriod],
    profile: CompanyProfile,
) -> AnalysisResult:
    """Score how well *symbol* turns invested capital into returns above its WACC."""
    quarters = [p for p in periods if not p.is_annual]
    rows = value_creation_series(quarters)
    if len(rows) < _MIN_QUARTERS:
        return AnalysisResult.not_applicable(
            MODEL_ID, symbol,
            f"Insufficient value-creation data for {symbol}: need at least {_MIN_QUARTERS} quarters "
            f"(found {len(rows)}).",
            quarters_available=len(rows),
        )

    def col(name: str) -> list[float]:
        return [r[name] or 0.0 for r in rows]

    wacc, cost_of_equity = capm_wacc(profile.beta)

    roic = col("roic")
    latest_roic = roic[-1]
    avg_roic = sum(roic) / len(roic)
    roic_slope = linreg_slope(roic)

    incremental = incremental_roics(rows)
    avg_incremental = sum(incremental) / len(incremental) if incremental else None

    recent = newest_first(quarters)[:4]
    ttm_revenue = sum(q.revenue or 0.0 for q in recent)
    ttm_net_income = sum(q.net_income or 0.0 for q in recent)
    ttm_cash_flow = sum(q.operating_cash_flow or 0.0 for q in recent)
    ttm_op_income = sum(q.operating_income or 0.0 for q in recent)
    dividends = sum(abs(q.dividends_paid or 0.0) for q in recent)

    employees = profile.employee_count or 0
    revenue_per_employee = ttm_revenue / employees if employees > 0 and ttm_revenue > 0 else None

    margin_slopes = {m: linreg_slope(col(m)) for m in ("gross_margin", "operating_margin", "net_margin")}
    margin_expansions = sum(1 for s in margin_slopes.values() if s > _TREND_THRESHOLD)

    reinvestment = reinvestment_rate(dividends, ttm_net_income, ttm_cash_flow, ttm_op_income)

    first, last = rows[0], rows[-1]
    revenue_growth = _growth(first["revenue"] or 0.0, last["revenue"] or 0.0)
    asset_growth = _growth(first["assets"] or 0.0, last["assets"] or 0.0)
    latest_de = last["debt_to_equity"] or 0.0
    negative_equity = (last["equity"] or 0.0) < 0

    points = scorecard(
        latest_roic, wacc, roic_slope, margin_expansions,
        revenue_growth, asset_growth, latest_de, negative_equity, reinvestment,
    )
    score = int(clamp(sum(points.values()), 1, 10))
    moat = moat_label(latest_roic, margin_expansions, score)

    dupont_slopes = {m: linreg_slope(col(m)) for m in ("profit_margin", "asset_turnover", "equity_multiplier")}

    warnings = []
    if revenue_per_employee is None:
        warnings.append("Employee data unavailable; revenue per employee not computed.")
    if negative_equity:
        warnings.append("Negative shareholder equity in the latest quarter.")

    logger.info("Capital allocation %s: %d/10, %s (ROIC %.4f vs WACC %.4f)", symbol, score, moat, latest_roic, wacc)
    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=symbol,
        scalar_metrics={
            "score": score,
            "moat": moat,
            "wacc": wacc,
            "cost_of_equity": cost_of_equity,
            "latest_roic": latest_roic,
            "avg_roic": avg_roic,
            "roic_spread": latest_roic - wacc,
            "roic_slope": roic_slope,
            "roic_trend": trend_label(roic_slope),
            "avg_incremental_roic": avg_incremental,
            "revenue_per_employee": revenue_per_employee,
            "gross_margin_trend": trend_label(margin_slopes["gross_margin"]),
            "operating_margin_trend": trend_label(margin_slopes["operating_margin"]),
            "net_margin_trend": trend_label(margin_slopes["net_margin"]),
            "margin_expansion_count": margin_expansions,
            "reinvestment_rate": reinvestment,
            "revenue_growth": revenue_growth,
            "asset_growth": asset_growth,
            "debt_to_equity": latest_de,
            "profit_margin": last["profit_margin"] or 0.0,
            "asset_turnover": last["asset_turnover"] or 0.0,
            "equity_multiplier": last["equity_multiplier"] or 0.0,
            "roe": last["roe"] or 0.0,
            "roa": last["roa"] or 0.0,
            "profit_margin_trend": trend_label(dupont_slopes["profit_margin"]),
            "asset_turnover_trend": trend_label(dupont_slopes["asset_turnover"]),
            "equity_multiplier_trend": trend_label(dupont_slopes["equity_multiplier"]),
        },
        derived_series={
            "quarter": [r["label"] for r in rows],
            "roic": roic,
            "roic_spread": [v - wacc for v in roic],
            "gross_margin": col("gross_margin"),
            "operating_margin": col("operating_margin"),
            "net_margin": col("net_margin"),
            "profit_margin": col("profit_margin"),
            "asset_turnover": col("asset_turnover"),
            "equity_multiplier": col("equity_multiplier"),
            "roe": col("roe"),
        },
        verdict=moat,
        warnings=warnings,
        details={"score_points": points, "incremental_roics": incremental},
    )


class CapitalAllocationEngine(BaseEngine):
    model_id = MODEL_ID

    def run(self, ticker: str, session, **options) -> AnalysisResult:
        logger.info("Running capital allocation for %s", ticker)
        return compute_capital_allocation(ticker, session.fundamentals(ticker, limit=12), session.profile(ticker))
