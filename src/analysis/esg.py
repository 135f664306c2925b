"""ESG proxy scoring from financial data.

Environmental (0-35), Social (0-35) and Governance (0-30) are assembled
from sector constants plus tiers on revenue per employee, market cap,
accruals, leverage and cash conversion.  These are proxies derived from
filings, not third-party ESG ratings.

Single-ticker mode scores one company; portfolio mode scores every holding
and value-weights the sub-scores.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Sequence

from src.analysis.base import BaseEngine
from src.analysis.indicators import clamp
from src.data_sources.normalizer import newest_first
from src.records import PORTFOLIO, AnalysisResult, CompanyProfile, FundamentalPeriod, HoldingSet
from src.utils.logger import setup_logger

logger = setup_logger("esg")

MODEL_ID = "esg"

SECTOR_ENV_RISK: dict[str, int] = {
    "Information Technology": 17, "Communication Services": 17,
    "Health Care": 16, "Financials": 18,
    "Consumer Staples": 14, "Consumer Discretionary": 13,
    "Real Estate": 12, "Industrials": 11,
    "Utilities": 9, "Materials": 7, "Energy": 5,
}
SECTOR_LABOR: dict[str, int] = {
    "Information Technology": 9, "Financials": 8, "Health Care": 7,
    "Communication Services": 8, "Consumer Staples": 6, "Industrials": 5,
    "Consumer Discretionary": 6, "Real Estate": 7, "Utilities": 7,
    "Materials": 4, "Energy": 4,
}
_DEFAULT_ENV_RISK = 12
_DEFAULT_LABOR = 6

_RATINGS = [(90, "AAA"), (80, "AA"), (70, "A"), (60, "BBB"), (50, "BB"), (40, "B")]


def esg_rating(total: float) -> str:
    for floor, rating in _RATINGS:
        if total >= floor:
            return rating
    return "CCC"


def _fmt_big(value: float) -> str:
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if abs(value) >= threshold:
            return f"${value / threshold:.2f}{suffix}"
    return f"${value:,.0f}"


@dataclass
class ESGScore:
    environmental: int
    social: int
    governance: int
    total: int
    rating: str
    limited_data: bool
    components: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------

def _efficiency(rpe: float, has_data: bool) -> tuple[int, str]:
    if not has_data:
        return 5, "Default (no data)"
    if rpe > 1_000_000:
        return 10, "Very High efficiency"
    if rpe > 500_000:
        return 8, "High efficiency"
    if rpe > 250_000:
        return 6, "Moderate efficiency"
    if rpe > 100_000:
        return 4, "Low efficiency"
    return 2, "Very Low efficiency"


def _size(market_cap: float) -> tuple[int, str]:
    cap = _fmt_big(market_cap)
    if market_cap > 200e9:
        return 5, f"Mega cap ({cap})"
    if market_cap > 50e9:
        return 4, f"Large cap ({cap})"
    if market_cap > 10e9:
        return 3, f"Mid-large cap ({cap})"
    if market_cap > 1e9:
        return 2, f"Mid cap ({cap})"
    return 1, f"Small cap ({cap})"


def _labor(rpe: float, has_data: bool, employees: int) -> tuple[int, str]:
    if not has_data:
        return 8, "Default (no data)"
    if 300_000 < rpe < 800_000:
        return 15, "Optimal range"
    if 150_000 < rpe < 1_200_000:
        return 10, "Acceptable range"
    if rpe > 50_000:
        return 7, "Below optimal"
    return 5, "Low productivity concern" if employees > 0 else "Default (no data)"


def _transparency(accruals: Optional[float]) -> tuple[int, str]:
    if accruals is None:
        return 5, "Insufficient data"
    if accruals < 0:
        return 10, "Cash > Earnings, very transparent"
    if accruals < 0.05:
        return 8, "Low accruals, transparent"
    if accruals < 0.10:
        return 5, "Moderate accruals"
    return 2, "High accruals, concern"


def _debt(de: Optional[float]) -> tuple[int, str]:
    if de is None:
        return 2, "Negative equity"
    if 0.3 <= de <= 0.8:
        return 10, f"Optimal leverage ({de:.2f}x)"
    if 0.1 <= de <= 1.5:
        return 7, f"Acceptable ({de:.2f}x)"
    if 0 <= de <= 3.0:
        return 4, f"Elevated ({de:.2f}x)"
    return 2, f"Excessive ({de:.2f}x)"


def _earnings_quality(cf_to_ni: Optional[float]) -> tuple[int, str]:
    if cf_to_ni is None:
        return 5, "Insufficient data"
    if cf_to_ni > 1.2:
        return 10, f"Strong CF coverage ({cf_to_ni:.2f}x)"
    if cf_to_ni > 0.8:
        return 7, f"Good CF coverage ({cf_to_ni:.2f}x)"
    if cf_to_ni > 0.5:
        return 4, f"Moderate CF ({cf_to_ni:.2f}x)"
    return 2, f"Low CF quality ({cf_to_ni:.2f}x)"


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def esg_scores(profile: CompanyProfile, periods: Sequence[FundamentalPeriod], sector: Optional[str]) -> ESGScore:
    """Score one company; an empty profile and no periods yields the sector-only score."""
    employees = profile.employee_count or 0
    market_cap = profile.market_cap or 0.0
    quarters = newest_first([p for p in periods if not p.is_annual])
    recent = quarters[:4]

    ttm_revenue = sum(q.revenue or 0.0 for q in recent)
    ttm_net_income = sum(q.net_income or 0.0 for q in recent)
    ttm_cash_flow = sum(q.operating_cash_flow or 0.0 for q in recent)
    latest = quarters[0] if quarters else None
    assets = (latest.assets or 0.0) if latest else 0.0
    liabilities = (latest.liabilities or 0.0) if latest else 0.0
    equity = (latest.equity or 0.0) if latest else 0.0

    has_rpe = employees > 0 and ttm_revenue > 0
    rpe = ttm_revenue / employees if has_rpe else 0.0
    limited = not quarters and employees == 0
    full_year = len(quarters) >= 4

    sector_env = SECTOR_ENV_RISK.get(sector or "", _DEFAULT_ENV_RISK)
    eff, eff_label = _efficiency(rpe, has_rpe)
    size, size_label = _size(market_cap)
    environmental = int(clamp(sector_env + eff + size, 0, 35))

    labor, labor_label = _labor(rpe, has_rpe, employees)
    sector_labor = SECTOR_LABOR.get(sector or "", _DEFAULT_LABOR)
    scale = int(clamp(math.floor(math.log10(market_cap) - 7), 1, 10)) if market_cap > 0 else 3
    social = int(clamp(labor + sector_labor + scale, 0, 35))

    accruals = (ttm_net_income - ttm_cash_flow) / assets if assets > 0 and full_year else None
    debt_to_equity = liabilities / equity if equity > 0 else None
    cf_to_ni = ttm_cash_flow / ttm_net_income if ttm_net_income > 0 and full_year else None
    transparency, transparency_label = _transparency(accruals)
    debt, debt_label = _debt(debt_to_equity)
    eq, eq_label = _earnings_quality(cf_to_ni)
    governance = int(clamp(transparency + debt + eq, 0, 30))

    total = environmental + social + governance
    return ESGScore(
        environmental=environmental,
        social=social,
        governance=governance,
        total=total,
        rating=esg_rating(total),
        limited_data=limited,
        components={
            "sector_env_risk": sector_env, "efficiency": eff, "size": size,
            "labor": labor, "sector_labor": sector_labor, "scale": scale,
            "transparency": transparency, "debt": debt, "earnings_quality": eq,
            "revenue_per_employee": rpe, "market_cap": market_cap, "employees": employees,
            "ttm_revenue": ttm_revenue, "ttm_net_income": ttm_net_income, "ttm_cash_flow": ttm_cash_flow,
            "assets": assets, "liabilities": liabilities, "equity": equity,
            "debt_to_equity": debt_to_equity, "accruals": accruals, "cf_to_ni": cf_to_ni,
        },
        labels={
            "efficiency": eff_label, "size": size_label, "labor": labor_label,
            "transparency": transparency_label, "debt": debt_label, "earnings_quality": eq_label,
        },
    )


def compute_esg(
    symbol: str,
    profile: CompanyProfile,
    periods: Sequence[FundamentalPeriod],
    sector: Optional[str],
) -> AnalysisResult:
    score = esg_scores(profile, periods, sector)
    warnings = []
    if score.limited_data:
        warnings.append(f"No financials or employee data for {symbol} (ETF or fund?); sector defaults applied.")
    logger.info("ESG %s: %d (%s)", symbol, score.total, score.rating)
    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=symbol,
        scalar_metrics={
            "name": profile.display_name,
            "sector": sector,
            "environmental": score.environmental,
            "social": score.social,
            "governance": score.governance,
            "total_esg": score.total,
            "rating": score.rating,
            "limited_data": score.limited_data,
        },
        derived_series={},
        verdict=score.rating,
        warnings=warnings,
        details={"components": score.components, "labels": score.labels},
    )


@dataclass
class HoldingESG:
    symbol: str
    name: str
    sector: str
    score: ESGScore
    success: bool = True


def compute_portfolio_esg(holdings: HoldingSet, scored: Sequence[HoldingESG]) -> AnalysisResult:
    """Value-weighted E/S/G across *scored* holdings, with best/worst and sector averages."""
    if not scored:
        return AnalysisResult.not_applicable(MODEL_ID, PORTFOLIO, "No holdings to score.")

    weights = holdings.weights()
    n = len(scored)
    w = {h.symbol: weights.get(h.symbol, 1.0 / n) for h in scored}
    weighted = {
        key: sum(w[h.symbol] * getattr(h.score, key) for h in scored)
        for key in ("total", "environmental", "social", "governance")
    }

    ranked = sorted(scored, key=lambda h: h.score.total, reverse=True)
    sector_totals: dict[str, list[int]] = {}
    for h in scored:
        sector_totals.setdefault(h.sector or "Other", []).append(h.score.total)
    sector_avgs = sorted(
        ({"sector": s, "avg": sum(v) / len(v), "count": len(v)} for s, v in sector_totals.items()),
        key=lambda r: r["avg"], reverse=True,
    )

    failed = [h.symbol for h in scored if not h.success]
    warnings = []
    if failed:
        warnings.append(f"Data unavailable for: {', '.join(failed)}. Sector-only default scores applied.")

    rating = esg_rating(weighted["total"])
    logger.info("Portfolio ESG over %d holdings: %.1f (%s)", n, weighted["total"], rating)
    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=PORTFOLIO,
        scalar_metrics={
            "weighted_esg": round(weighted["total"], 4),
            "weighted_environmental": round(weighted["environmental"], 4),
            "weighted_social": round(weighted["social"], 4),
            "weighted_governance": round(weighted["governance"], 4),
            "rating": rating,
            "best_holding": ranked[0].symbol,
            "worst_holding": ranked[-1].symbol,
            "holdings_rated": n - len(failed),
            "holdings_total": n,
        },
        derived_series={},
        verdict=rating,
        warnings=warnings,
        details={
            "holdings": [
                {"symbol": h.symbol, "name": h.name, "sector": h.sector, "weight": w[h.symbol],
                 "success": h.success, **h.score.to_dict()}
                for h in ranked
            ],
            "sector_averages": sector_avgs,
        },
    )


# ===================================================================
# Engine adapter
# ===================================================================

class ESGEngine(BaseEngine):
    """Single ticker when *ticker* is given, portfolio mode otherwise."""

    model_id = MODEL_ID
    portfolio_mode = True

    def run(self, ticker: str | None, session, **options) -> AnalysisResult:
        if ticker and ticker != PORTFOLIO:
            profile = session.profile(ticker)
            sector = session.holdings.sector_of(ticker) or profile.sic_description or "Unknown"
            return compute_esg(ticker, profile, session.fundamentals(ticker, limit=4), sector)
        return self._run_portfolio(session)

    def _run_portfolio(self, session) -> AnalysisResult:
        holdings = list(session.holdings)
        logger.info("Analyzing ESG across %d holdings", len(holdings))

        def score(h) -> HoldingESG:
            profile = session.profile(h.symbol)
            return HoldingESG(
                h.symbol, profile.name or h.symbol, h.sector,
                esg_scores(profile, session.fundamentals(h.symbol, limit=4), h.sector),
            )

        scored = []
        for s in session.scheduler(MODEL_ID).map_settled(score, holdings):
            h = s.item
            if s.ok:
                scored.append(s.result)
            else:
                scored.append(HoldingESG(
                    h.symbol, h.symbol, h.sector,
                    esg_scores(CompanyProfile(symbol=h.symbol), [], h.sector), success=False,
                ))
        return compute_portfolio_esg(session.holdings, scored)
