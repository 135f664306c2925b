"""Sector-calibrated discounted cash flow valuation.

Five-year explicit projection off trailing-twelve-month fundamentals:
revenue growth fades linearly from the historical rate to terminal growth,
operating margin mean-reverts toward the sector target, FCF follows an
observed cash-conversion ratio.  Terminal value blends a Gordon perpetuity
and an exit multiple on operating income.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Sequence

from src.analysis.base import BaseEngine
from src.analysis.indicators import clamp
from src.config import market_assumption
from src.data_sources.normalizer import newest_first
from src.records import AnalysisResult, CompanyProfile, FundamentalPeriod
from src.utils.logger import setup_logger

logger = setup_logger("dcf")

MODEL_ID = "dcf"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_PROJECTION_YEARS = 5
_MIN_QUARTERS = 2
_GROWTH_BOUNDS = (-0.05, 0.30)
_FALLBACK_OP_MARGIN = 0.15
_FCF_RATIO_BOUNDS = (0.3, 1.0)
_FCF_MARGIN_TARGET = 0.12          # cash-burning but FCF-positive companies revert here
_DEBT_SPREAD = 0.02                # cost of debt = rf + spread
_NONCURRENT_DEBT_SHARE = 0.70
_LIABILITY_DEBT_SHARE = 0.40
_CURRENT_ASSET_CASH_SHARE = 0.50
_ASSET_CASH_SHARE = 0.10
_REVENUE_MULTIPLE_FALLBACK = 2.0
_VERDICT_BAND = 15.0               # +/- percent around fair value

_SENS_WACC_STEP = 0.005
_SENS_GROWTH_RANGE = (0.015, 0.02, 0.025, 0.03, 0.035, 0.04, 0.045)


# ---------------------------------------------------------------------------
# Sector profiles
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SectorProfile:
    name: str
    target_op_margin: float
    exit_multiple: float
    fcf_conversion: float
    default_growth: float
    terminal_growth: float
    wacc_bounds: tuple[float, float]

    def to_dict(self) -> dict:
        return asdict(self)


SECTOR_PROFILES: dict[str, SectorProfile] = {
    p.name: p for p in (
        SectorProfile("software",       0.20, 25, 0.90, 0.12, 0.03,  (0.08, 0.14)),
        SectorProfile("semiconductor",  0.25, 22, 0.70, 0.10, 0.03,  (0.08, 0.14)),
        SectorProfile("hardware",       0.12, 16, 0.75, 0.07, 0.03,  (0.07, 0.13)),
        SectorProfile("pharma",         0.20, 18, 0.75, 0.07, 0.03,  (0.07, 0.12)),
        SectorProfile("biotech",        0.15, 20, 0.70, 0.15, 0.03,  (0.09, 0.15)),
        SectorProfile("healthcare",     0.10, 16, 0.70, 0.07, 0.03,  (0.06, 0.11)),
        SectorProfile("financial",      0.25, 12, 0.80, 0.05, 0.025, (0.07, 0.12)),
        SectorProfile("energy",         0.15, 10, 0.55, 0.04, 0.02,  (0.07, 0.12)),
        SectorProfile("utilities",      0.18, 14, 0.50, 0.03, 0.02,  (0.06, 0.10)),
        SectorProfile("retail",         0.06, 14, 0.70, 0.05, 0.025, (0.07, 0.12)),
        SectorProfile("consumer",       0.13, 17, 0.75, 0.05, 0.025, (0.06, 0.11)),
        SectorProfile("industrial",     0.11, 14, 0.65, 0.05, 0.025, (0.07, 0.12)),
        SectorProfile("telecom",        0.15, 14, 0.55, 0.04, 0.02,  (0.06, 0.11)),
        SectorProfile("media",          0.15, 16, 0.70, 0.06, 0.025, (0.07, 0.12)),
        SectorProfile("realestate",     0.28, 18, 0.65, 0.04, 0.025, (0.06, 0.11)),
        SectorProfile("transportation", 0.10, 12, 0.55, 0.05, 0.025, (0.07, 0.12)),
        SectorProfile("default",        0.12, 15, 0.65, 0.08, 0.03,  (0.06, 0.15)),
    )
}

# (sector, SIC ranges, description keywords) -- checked in order, first hit wins
_SIC_RULES: list[tuple[str, list[tuple[int, int]], tuple[str, ...]]] = [
    ("software", [(7370, 7379)], ("software", "internet", "data processing", "prepackaged")),
    ("semiconductor", [(3674, 3674), (3672, 3672), (3679, 3679)], ("semiconductor", "integrated circuit")),
    ("hardware", [(3570, 3579), (3669, 3679), (3810, 3829)], ("computer hardware", "electronic component")),
    ("biotech", [(2836, 2836), (8731, 8731)], ("biotech", "biological product")),
    ("pharma", [(2830, 2835)], ("pharmaceutical", "drug store", "medicinal")),
    ("healthcare", [(8000, 8099)], ("hospital", "health service", "medical lab")),
    ("financial", [(6020, 6299), (6310, 6499)], ("bank", "financial service", "investment trust")),
    ("energy", [(1300, 1389), (2911, 2911)], ("oil", "petroleum", "natural gas", "crude")),
    ("utilities", [(4900, 4999)], ("electric service", "utility", "water supply", "gas distribution")),
    ("telecom", [(4810, 4899)], ("telephone", "telecom", "wireless", "cellular")),
    ("media", [(2710, 2799), (7810, 7819), (7920, 7929)], ("media", "entertainment", "broadcast", "publishing")),
    ("retail", [(5200, 5999)], ("retail store", "department store", "grocery")),
    ("consumer", [(2000, 2199)], ("food", "beverage", "tobacco", "consumer goods")),
    ("realestate", [(6500, 6552)], ("real estate", "reit")),
    ("transportation", [(4000, 4799)], ("airline", "railroad", "trucking", "shipping", "freight")),
    ("industrial", [(2000, 3999), (1000, 1499)], ("manufactur", "industrial", "mining")),
]


def sector_profile_for(sic_code: int | None, sic_description: str | None) -> SectorProfile:
    """Pick the industry profile from a SIC code and/or SIC description."""
    desc = (sic_description or "").lower()
    for sector, ranges, keywords in _SIC_RULES:
        if sic_code is not None and any(lo <= sic_code <= hi for lo, hi in ranges):
            return SECTOR_PROFILES[sector]
        if desc and any(k in desc for k in keywords):
            return SECTOR_PROFILES[sector]
    return SECTOR_PROFILES["default"]


@dataclass(frozen=True)
class DCFOverrides:
    """User assumptions that replace the model's derived values."""

    revenue_growth: float | None = None
    op_margin: float | None = None
    terminal_growth: float | None = None
    wacc: float | None = None
    exit_multiple: float | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _sum(periods: Sequence[FundamentalPeriod], field: str) -> float:
    return sum(getattr(p, field) or 0.0 for p in periods)


def historical_growth(quarters_newest_first: Sequence[FundamentalPeriod], default: float) -> float:
    """Mean year-over-year quarterly revenue growth, clamped to [-5%, 30%]."""
    q = quarters_newest_first
    rates = []
    for i in range(len(q) - 4):
        current, year_ago = q[i].revenue, q[i + 4].revenue
        if current and year_ago and year_ago > 0:
            rates.append((current - year_ago) / year_ago)
    growth = sum(rates) / len(rates) if rates else default
    return clamp(growth, *_GROWTH_BOUNDS)


def financial_debt(period: FundamentalPeriod) -> float:
    """Long-term debt, else 70% of non-current liabilities, else 40% of liabilities."""
    if (period.long_term_debt or 0) > 0:
        return period.long_term_debt
    if (period.noncurrent_liabilities or 0) > 0:
        return period.noncurrent_liabilities * _NONCURRENT_DEBT_SHARE
    return (period.liabilities or 0.0) * _LIABILITY_DEBT_SHARE


def estimated_cash(period: FundamentalPeriod) -> float:
    if (period.current_assets or 0) > 0:
        return period.current_assets * _CURRENT_ASSET_CASH_SHARE
    return (period.assets or 0.0) * _ASSET_CASH_SHARE


def blend_terminal_value(
    last_fcf: float,
    last_op_income: float,
    last_revenue: float,
    wacc: float,
    growth: float,
    exit_multiple: float,
) -> tuple[float, float, float, bool]:
    """Return (terminal value, perpetuity TV, exit-multiple TV, used_revenue_fallback)."""
    perp = last_fcf * (1 + growth) / (wacc - growth) if last_fcf > 0 else 0.0
    exit_tv = last_op_income * exit_multiple if last_op_income > 0 else 0.0
    if perp > 0 and exit_tv > 0:
        return (perp + exit_tv) / 2, perp, exit_tv, False
    if perp > 0:
        return perp, perp, exit_tv, False
    if exit_tv > 0:
        return exit_tv, perp, exit_tv, False
    return last_revenue * _REVENUE_MULTIPLE_FALLBACK, perp, exit_tv, True


def _discounted(fcfs: Sequence[float], terminal_value: float, wacc: float) -> tuple[float, float]:
    pv_fcfs = sum(f / (1 + wacc) ** yr for yr, f in enumerate(fcfs, 1))
    pv_tv = terminal_value / (1 + wacc) ** len(fcfs)
    return pv_fcfs, pv_tv


def _verdict(upside_pct: float) -> str:
    if upside_pct > _VERDICT_BAND:
        return "UNDERVALUED"
    if upside_pct > -_VERDICT_BAND:
        return "FAIRLY VALUED"
    return "OVERVALUED"


def sensitivity_grid(
    projections: list[dict],
    wacc: float,
    net_debt: float,
    shares: float,
    exit_multiple: float,
    growth_range: Sequence[float] = _SENS_GROWTH_RANGE,
) -> dict:
    """Fair value per share over a 7x7 WACC x terminal-growth matrix.

    Cells where WACC <= growth have no finite Gordon value and are None.
    """
    wacc_range = [round(wacc + k * _SENS_WACC_STEP, 6) for k in range(-3, 4)]
    fcfs = [p["fcf"] for p in projections]
    last = projections[-1]
    rows = []
    for w in wacc_range:
        row = []
        for g in growth_range:
            if w <= g:
                row.append(None)
                continue
            tv, _, _, _ = blend_terminal_value(
                last["fcf"], last["op_income"], last["revenue"], w, g, exit_multiple,
            )
            pv_fcfs, pv_tv = _discounted(fcfs, tv, w)
            equity = pv_fcfs + pv_tv - net_debt
            row.append(round(max(equity / shares, 0.0), 4) if shares > 0 else 0.0)
        rows.append(row)
    return {"wacc_range": wacc_range, "growth_range": list(growth_range), "fair_values": rows}


# ---------------------------------------------------------------------------
# Core model
# ---------------------------------------------------------------------------

def compute_dcf(
    symbol: str,
    periods: Sequence[FundamentalPeriod],
    profile: CompanyProfile,
    price: float | None,
    overrides: DCFOverrides | None = None,
    sector: SectorProfile | None = None,
) -> AnalysisResult:
    """Run the five-year DCF for one company.

    Parameters
    ----------
    symbol : str
    periods : normalized fundamentals (any order; annual periods ignored)
    profile : company profile (market cap, shares, beta, SIC data)
    price : current share price, used for upside / verdict
    overrides : optional user assumptions
    sector : force a sector profile instead of the SIC lookup

    Returns
    -------
    AnalysisResult with fair value, WACC / terminal-value components,
    yearly projections and a sensitivity matrix.
    """
    overrides = overrides or DCFOverrides()
    sector = sector or sector_profile_for(profile.sic_code, profile.sic_description)
    quarters = newest_first([p for p in periods if not p.is_annual])
    if len(quarters) < _MIN_QUARTERS:
        return AnalysisResult.not_applicable(
            MODEL_ID, symbol,
            f"DCF requires at least {_MIN_QUARTERS} quarterly periods; {len(quarters)} available.",
        )

    warnings: list[str] = []
    rf = market_assumption("risk_free_rate", 0.045)
    erp = market_assumption("equity_risk_premium", 0.055)
    tax_rate = market_assumption("tax_rate", 0.21)

    # --- Step 1: trailing metrics ---
    recent = quarters[:4]
    ttm_revenue = _sum(recent, "revenue")
    ttm_op_income = _sum(recent, "operating_income")
    ttm_net_income = _sum(recent, "net_income")
    ttm_true_fcf = _sum(recent, "operating_cash_flow") + _sum(recent, "investing_cash_flow")

    avg_margin = ttm_op_income / ttm_revenue if ttm_revenue > 0 else _FALLBACK_OP_MARGIN
    negative_margin = avg_margin < 0
    if negative_margin:
        warnings.append(
            f"Current TTM operating margin is {avg_margin * 100:.1f}% (negative). The model "
            "assumes margin improvement toward profitability over 5 years."
        )

    growth = historical_growth(quarters, sector.default_growth)
    if overrides.revenue_growth is not None:
        growth = overrides.revenue_growth
    if overrides.op_margin is not None:
        avg_margin = overrides.op_margin
    terminal_growth = (
        overrides.terminal_growth if overrides.terminal_growth is not None else sector.terminal_growth
    )

    # --- Step 2: projections ---
    projections = []
    prev_revenue = ttm_revenue
    target = sector.target_op_margin
    for yr in range(1, _PROJECTION_YEARS + 1):
        blended = growth * (1 - yr / 6) + terminal_growth * (yr / 6)
        revenue = prev_revenue * (1 + blended)
        if negative_margin:
            op_margin = avg_margin + (target - avg_margin) * (yr / 5)
        else:
            op_margin = avg_margin * (1 - yr * 0.01) + target * (yr * 0.01)
        op_income = revenue * op_margin

        if negative_margin and ttm_true_fcf > 0:
            fcf_margin = ttm_true_fcf / ttm_revenue if ttm_revenue > 0 else 0.05
            projected = fcf_margin + (_FCF_MARGIN_TARGET - fcf_margin) * (yr / 5)
            fcf = revenue * max(projected, op_margin * 0.70)
        elif op_income > 0:
            ratio = (
                clamp(ttm_true_fcf / ttm_op_income, *_FCF_RATIO_BOUNDS)
                if ttm_op_income > 0 else sector.fcf_conversion
            )
            fcf = op_income * ratio
        else:
            fcf = op_income * sector.fcf_conversion

        projections.append({
            "year": yr, "revenue": revenue, "growth": blended,
            "op_margin": op_margin, "op_income": op_income, "fcf": fcf,
        })
        prev_revenue = revenue

    # --- Step 3: WACC ---
    latest = quarters[0]
    beta = profile.beta if profile.beta is not None else 1.0
    cost_of_equity = rf + beta * erp
    debt = financial_debt(latest)
    mv_equity = max(profile.market_cap or 0.0, 1.0)
    mv_debt = max(debt, 0.0)
    weight_equity = mv_equity / (mv_equity + mv_debt)
    weight_debt = mv_debt / (mv_equity + mv_debt)
    cost_of_debt = rf + _DEBT_SPREAD
    wacc_calc = clamp(
        weight_equity * cost_of_equity + weight_debt * cost_of_debt * (1 - tax_rate),
        *sector.wacc_bounds,
    )
    wacc = overrides.wacc if overrides.wacc is not None else wacc_calc
    if wacc <= terminal_growth:
        return AnalysisResult.not_applicable(
            MODEL_ID, symbol,
            f"WACC ({wacc:.2%}) must exceed terminal growth ({terminal_growth:.2%}).",
        )

    # --- Step 4: terminal value ---
    exit_multiple = overrides.exit_multiple if overrides.exit_multiple is not None else sector.exit_multiple
    last = projections[-1]
    terminal_value, tv_perp, tv_exit, fallback = blend_terminal_value(
        last["fcf"], last["op_income"], last["revenue"], wacc, terminal_growth, exit_multiple,
    )
    if fallback:
        warnings.append(
            "Terminal value based on revenue multiple (2x) because projected FCF and operating "
            "income remain negative in Year 5."
        )

    # --- Step 5: EV -> equity bridge ---
    pv_fcfs, pv_terminal = _discounted([p["fcf"] for p in projections], terminal_value, wacc)
    enterprise_value = pv_fcfs + pv_terminal
    net_debt = debt - estimated_cash(latest)
    equity_value = enterprise_value - net_debt
    shares = profile.shares_outstanding or 0.0
    fair_value = max(equity_value / shares, 0.0) if shares > 0 else 0.0
    if fair_value <= 0:
        warnings.append(
            "DCF model produces a non-positive equity value. This typically occurs for highly "
            "leveraged or unprofitable companies. Consider adjusting growth or margin assumptions."
        )

    if price and price > 0:
        upside = (fair_value - price) / price * 100
    else:
        upside = 0.0
        warnings.append("No current share price available; upside reported as 0%.")

    sens = sensitivity_grid(projections, wacc, net_debt, shares, exit_multiple)
    logger.info("DCF %s: fair value %.2f vs price %s (%s)", symbol, fair_value, price, sector.name)

    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=symbol,
        scalar_metrics={
            "sector_profile": sector.name,
            "price": price,
            "market_cap": profile.market_cap,
            "shares_outstanding": shares,
            "ttm_revenue": ttm_revenue,
            "ttm_operating_income": ttm_op_income,
            "ttm_net_income": ttm_net_income,
            "ttm_true_fcf": ttm_true_fcf,
            "avg_op_margin": round(avg_margin, 6),
            "historical_growth": round(growth, 6),
            "terminal_growth": terminal_growth,
            "beta": beta,
            "risk_free_rate": rf,
            "cost_of_equity": round(cost_of_equity, 6),
            "cost_of_debt": cost_of_debt,
            "tax_rate": tax_rate,
            "weight_equity": round(weight_equity, 6),
            "weight_debt": round(weight_debt, 6),
            "wacc": round(wacc, 6),
            "exit_multiple": exit_multiple,
            "tv_perpetuity": tv_perp,
            "tv_exit_multiple": tv_exit,
            "terminal_value": terminal_value,
            "pv_fcfs": pv_fcfs,
            "pv_terminal": pv_terminal,
            "enterprise_value": enterprise_value,
            "financial_debt": debt,
            "net_debt": net_debt,
            "equity_value": equity_value,
            "fair_value": round(fair_value, 4),
            "upside_pct": round(upside, 4),
        },
        derived_series={
            key: [p[key] for p in projections]
            for key in ("year", "revenue", "growth", "op_margin", "op_income", "fcf")
        },
        verdict=_verdict(upside),
        warnings=warnings,
        details={"sensitivity": sens, "sector": sector.to_dict()},
    )


# ===================================================================
# Engine adapter
# ===================================================================

class DCFEngine(BaseEngine):
    """Gathers fundamentals, profile and price, then runs :func:`compute_dcf`."""

    model_id = MODEL_ID

    def run(self, ticker: str, session, overrides: DCFOverrides | None = None, **options) -> AnalysisResult:
        profile = session.profile(ticker)
        periods = session.fundamentals(ticker, limit=12)
        price = session.latest_price(ticker)
        return compute_dcf(ticker, periods, profile, price, overrides=overrides)
