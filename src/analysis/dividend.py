"""Dividend growth valuation: Gordon Growth Model, safety score, income projection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from src.analysis.base import BaseEngine
from src.analysis.dcf import financial_debt
from src.analysis.indicators import clamp
from src.config import market_assumption
from src.data_sources.normalizer import newest_first
from src.records import AnalysisResult, CompanyProfile, DividendEvent, FundamentalPeriod
from src.utils.logger import setup_logger

logger = setup_logger("dividend")

MODEL_ID = "dividend"
GGM_NOT_APPLICABLE = "GGM NOT APPLICABLE"

_DEFAULT_GROWTH = 0.03
_EXTREME_GROWTH = 0.50
_GROWTH_BOUNDS = (-0.10, 0.30)
_NOTIONAL = 10_000.0
_PROJECTION_YEARS = 10
_VERDICT_BAND = 15.0


@dataclass(frozen=True)
class DividendOverrides:
    growth_rate: float | None = None
    cost_of_equity: float | None = None


def _total(events: Sequence[DividendEvent]) -> float:
    return sum(e.cash_amount for e in events)


def dividend_growth_rate(events: Sequence[DividendEvent], payments_per_year: int) -> float:
    """CAGR of annual DPS, newest annual total vs one ~2 payment cycles back.

    Rates beyond +/-50% are treated as noise and replaced by the 3% default;
    the result is clamped to [-10%, 30%].
    """
    ppy = payments_per_year
    growth = _DEFAULT_GROWTH
    if len(events) >= ppy * 2:
        latest_annual = _total(events[:ppy])
        oldest_start = min(len(events), ppy * 3)
        oldest_annual = _total(events[oldest_start - ppy:oldest_start])
        if oldest_annual > 0 and latest_annual > 0:
            years = (oldest_start - ppy) / ppy
            raw = (latest_annual / oldest_annual) ** (1 / max(years, 0.5)) - 1
            if -_EXTREME_GROWTH <= raw <= _EXTREME_GROWTH:
                growth = raw
    return clamp(growth, *_GROWTH_BOUNDS)


def quarterly_dps(quarters: Sequence[FundamentalPeriod], events: Sequence[DividendEvent]) -> list[float]:
    """Per-share dividends paid inside each quarter's [start, end] window."""
    out = []
    for q in quarters:
        total = 0.0
        if q.period_start and q.period_end:
            for e in events:
                if e.pay_date and q.period_start <= e.pay_date <= q.period_end:
                    total += e.cash_amount
        out.append(total)
    return out


def quarterly_payout_ratios(quarters: Sequence[FundamentalPeriod], shares: float) -> list[float | None]:
    """Reported dividends per share over diluted EPS, in percent, one per quarter.

    None where EPS is zero or missing, no dividend was paid, or the share count is unknown.
    """
    out: list[float | None] = []
    for q in quarters:
        paid = abs(q.dividends_paid or 0.0)
        eps = q.diluted_eps
        if not shares or not paid or not eps:
            out.append(None)
        else:
            out.append(paid / shares / eps * 100)
    return out


def income_projection(
    annual_dps: float, growth: float, price: float, years: int = _PROJECTION_YEARS, notional: float = _NOTIONAL,
) -> list[dict]:
    """Yearly income on *notional* with and without reinvestment at today's price."""
    shares = notional / price if price > 0 else 0.0
    drip_shares = shares
    cum_plain = cum_drip = 0.0
    rows = []
    for yr in range(1, years + 1):
        dps = annual_dps * (1 + growth) ** yr
        income_plain = shares * dps
        income_drip = drip_shares * dps
        cum_plain += income_plain
        cum_drip += income_drip
        if price > 0:
            drip_shares += income_drip / price
        rows.append({
            "year": yr, "dps": dps,
            "income": income_plain, "income_drip": income_drip,
            "cumulative": cum_plain, "cumulative_drip": cum_drip,
            "drip_shares": drip_shares,
        })
    return rows


def safety_checks(
    payout_ratio: float | None,
    cf_payout_ratio: float | None,
    quarter_dividends: Sequence[float],
    ttm_cash_flow: float,
    total_dividends: float,
    latest: FundamentalPeriod | None,
) -> dict[str, bool]:
    """The five one-point safety tests. Ratios are in percent."""
    growing = False
    if len(quarter_dividends) >= 8:
        growing = sum(quarter_dividends[:4]) > sum(quarter_dividends[-4:])
    leverage_ok = False
    if latest is not None and (latest.equity or 0) > 0:
        leverage_ok = financial_debt(latest) / latest.equity < 1.5
    return {
        "payout_below_75": payout_ratio is not None and 0 < payout_ratio < 75,
        "cf_payout_below_60": cf_payout_ratio is not None and 0 < cf_payout_ratio < 60,
        "dividend_growing": growing,
        "cash_coverage_1_5x": ttm_cash_flow > 0 and total_dividends > 0 and ttm_cash_flow / total_dividends > 1.5,
        "debt_to_equity_below_1_5": leverage_ok,
    }


def compute_dividend(
    symbol: str,
    events: Sequence[DividendEvent],
    periods: Sequence[FundamentalPeriod],
    profile: CompanyProfile,
    price: float | None,
    overrides: DividendOverrides | None = None,
) -> AnalysisResult:
    """Value a dividend payer with the Gordon Growth Model.

    Parameters
    ----------
    events : dividend events, newest first
    periods : normalized quarterly fundamentals
    price : current share price

    Returns
    -------
    AnalysisResult.  Not applicable when there is no positive payment
    (verdict ``NOT APPLICABLE``) or when cost of equity <= growth
    (verdict ``GGM NOT APPLICABLE``, safety score and projection kept).
    """
    overrides = overrides or DividendOverrides()
    if not any(e.cash_amount > 0 for e in events):
        return AnalysisResult.not_applicable(
            MODEL_ID, symbol,
            f"No dividend payments found for {symbol}. The Dividend Growth Model requires dividend-paying stocks.",
        )

    events = list(events)
    price = price or 0.0
    shares = profile.shares_outstanding or 0.0
    beta = profile.beta if profile.beta is not None else 1.0
    warnings: list[str] = []

    ppy = events[0].payments_per_year
    annual_dps = _total(events[:ppy])
    dividend_yield = annual_dps / price * 100 if price > 0 else 0.0

    quarters = newest_first([p for p in periods if not p.is_annual])
    recent = quarters[:4]
    dps_by_quarter = quarterly_dps(quarters, events)
    quarter_dividends = [d * shares for d in dps_by_quarter]

    ttm_eps = sum(q.diluted_eps or 0.0 for q in recent)
    ttm_cash_flow = sum(q.operating_cash_flow or 0.0 for q in recent)
    total_dividends = annual_dps * shares

    payout_ratio = annual_dps / ttm_eps * 100 if ttm_eps != 0 and annual_dps > 0 else None
    cf_payout_ratio = (
        total_dividends / ttm_cash_flow * 100 if ttm_cash_flow > 0 and total_dividends > 0 else None
    )
    if payout_ratio is not None and payout_ratio < 0:
        warnings.append("Trailing EPS is negative; the dividend is not covered by earnings.")

    growth = dividend_growth_rate(events, ppy)
    if overrides.growth_rate is not None:
        growth = overrides.growth_rate

    rf = market_assumption("risk_free_rate", 0.045)
    erp = market_assumption("equity_risk_premium", 0.055)
    cost_of_equity = overrides.cost_of_equity if overrides.cost_of_equity is not None else rf + beta * erp

    checks = safety_checks(
        payout_ratio, cf_payout_ratio, quarter_dividends, ttm_cash_flow, total_dividends,
        quarters[0] if quarters else None,
    )
    safety_score = sum(1 for ok in checks.values() if ok)
    projection = income_projection(annual_dps, growth, price)

    d1 = annual_dps * (1 + growth)
    metrics = {
        "price": price,
        "shares_outstanding": shares,
        "beta": beta,
        "payments_per_year": ppy,
        "annual_dps": annual_dps,
        "dividend_yield": round(dividend_yield, 4),
        "ttm_eps": ttm_eps,
        "payout_ratio": payout_ratio,
        "cf_payout_ratio": cf_payout_ratio,
        "growth_rate": growth,
        "risk_free_rate": rf,
        "equity_risk_premium": erp,
        "cost_of_equity": cost_of_equity,
        "d1": d1,
        "safety_score": safety_score,
    }
    series = {
        "projection_year": [r["year"] for r in projection],
        "projection_dps": [r["dps"] for r in projection],
        "income": [r["income"] for r in projection],
        "income_drip": [r["income_drip"] for r in projection],
        "cumulative": [r["cumulative"] for r in projection],
        "cumulative_drip": [r["cumulative_drip"] for r in projection],
        "drip_shares": [r["drip_shares"] for r in projection],
        # oldest -> newest for charting
        "quarter": [q.label for q in reversed(quarters)],
        "quarter_dps": list(reversed(dps_by_quarter)),
        "quarterly_payout_ratio": list(reversed(quarterly_payout_ratios(quarters, shares))),
    }
    details = {"safety_checks": checks}

    if cost_of_equity <= growth:
        logger.warning("%s: cost of equity %.4f <= growth %.4f, GGM not applicable", symbol, cost_of_equity, growth)
        warnings.insert(
            0,
            f"Cost of equity ({cost_of_equity:.2%}) does not exceed dividend growth ({growth:.2%}); "
            "the Gordon Growth Model is not applicable.",
        )
        return AnalysisResult(
            model_id=MODEL_ID, ticker=symbol,
            scalar_metrics={**metrics, "fair_value": None, "upside_pct": None},
            derived_series=series, verdict=GGM_NOT_APPLICABLE, warnings=warnings,
            applicable=False, details=details,
        )

    fair_value = d1 / (cost_of_equity - growth)
    upside = (fair_value - price) / price * 100 if price > 0 else 0.0
    if upside > _VERDICT_BAND:
        verdict = "UNDERVALUED"
    elif upside > -_VERDICT_BAND:
        verdict = "FAIRLY VALUED"
    else:
        verdict = "OVERVALUED"

    logger.info("Dividend %s: GGM %.2f vs price %.2f, safety %d/5", symbol, fair_value, price, safety_score)
    return AnalysisResult(
        model_id=MODEL_ID, ticker=symbol,
        scalar_metrics={**metrics, "fair_value": round(fair_value, 4), "upside_pct": round(upside, 4)},
        derived_series=series, verdict=verdict, warnings=warnings, details=details,
    )


class DividendEngine(BaseEngine):
    model_id = MODEL_ID

    def run(self, ticker: str, session, overrides: DividendOverrides | None = None, **options) -> AnalysisResult:
        events = session.dividends(ticker)
        periods = session.fundamentals(ticker, limit=12)
        profile = session.profile(ticker)
        price = session.latest_price(ticker)
        return compute_dividend(ticker, events, periods, profile, price, overrides=overrides)
