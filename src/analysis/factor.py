"""Five-factor exposure across the holding set.

Value, Momentum, Quality, Size and Low-Volatility scores are cross-sectional
z-scores (clamped to +/-2) over the holdings; the portfolio tilt of each
factor is the value-weighted sum of the holding scores.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Sequence

from src.analysis import indicators as ind
from src.analysis.base import BaseEngine, MinimumDataError
from src.data_sources.normalizer import newest_first
from src.records import PORTFOLIO, AnalysisResult, Holding
from src.utils.logger import setup_logger

logger = setup_logger("factor")

MODEL_ID = "factor"
FACTORS = ("value", "momentum", "quality", "size", "low_vol")
FACTOR_LABELS = {
    "value": "Value", "momentum": "Momentum", "quality": "Quality",
    "size": "Size", "low_vol": "Low Volatility",
}

_MIN_HOLDINGS = 5
_PRICE_LOOKBACK_DAYS = 180
_MOMENTUM_BARS = 60
_TOP_CONTRIBUTORS = 3

# Fallbacks for a holding whose fetch failed outright
_FAILED_BETA = 1.0
_FAILED_VOLATILITY = 0.25
_FAILED_MOMENTUM = 0.0


@dataclass
class FactorInputs:
    """Raw per-holding inputs before cross-sectional scoring."""

    symbol: str
    sector: str = "Other"
    weight: float = 0.0
    beta: float | None = None
    volatility: float | None = None
    momentum_3m: float | None = None
    pe_ratio: float | None = None
    pb_ratio: float | None = None
    roe: float | None = None
    operating_margin: float | None = None
    market_cap: float | None = None
    failed: bool = False

    @classmethod
    def defaults(cls, symbol: str, sector: str, weight: float) -> FactorInputs:
        return cls(
            symbol=symbol, sector=sector, weight=weight,
            beta=_FAILED_BETA, volatility=_FAILED_VOLATILITY, momentum_3m=_FAILED_MOMENTUM,
            failed=True,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _positive(value: float | None) -> bool:
    return value is not None and not math.isnan(value) and value > 0


def _combine(za: float, zb: float, has_a: bool, has_b: bool) -> float:
    if has_a and has_b:
        return ind.clamp((za + zb) / 2, -ind.Z_CLAMP, ind.Z_CLAMP)
    if has_a:
        return za
    if has_b:
        return zb
    return 0.0


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def factor_scores(inputs: Sequence[FactorInputs]) -> list[dict[str, float]]:
    """Per-holding z-score of each factor, in input order."""
    neg_pe = [-h.pe_ratio if _positive(h.pe_ratio) else None for h in inputs]
    neg_pb = [-h.pb_ratio if _positive(h.pb_ratio) else None for h in inputs]
    z_pe, z_pb = ind.zscores(neg_pe), ind.zscores(neg_pb)

    z_mom = ind.zscores([h.momentum_3m for h in inputs])

    roe = [h.roe for h in inputs]
    margin = [h.operating_margin for h in inputs]
    z_roe, z_margin = ind.zscores(roe), ind.zscores(margin)

    z_size = ind.zscores([-math.log10(h.market_cap) if _positive(h.market_cap) else None for h in inputs])
    z_vol = ind.zscores([-h.volatility if h.volatility is not None else None for h in inputs])

    scores = []
    for i in range(len(inputs)):
        scores.append({
            "value": _combine(z_pe[i], z_pb[i], neg_pe[i] is not None, neg_pb[i] is not None),
            "momentum": z_mom[i],
            "quality": _combine(z_roe[i], z_margin[i], roe[i] is not None, margin[i] is not None),
            "size": z_size[i],
            "low_vol": z_vol[i],
        })
    return scores


def diversification(tilts: dict[str, float]) -> tuple[int, str, float]:
    """Score 1-10 from the dispersion of the absolute tilts.

    Returns (score, label, stdev of |tilt|).
    """
    sd = ind.pstdev([abs(tilts[f]) for f in FACTORS])
    if sd < 0.3:
        score, label = (10 if sd < 0.15 else 9), "Well Diversified"
    elif sd < 0.6:
        score, label = math.floor(8 - (sd - 0.3) / 0.3 * 2 + 0.5), "Moderately Diversified"
    elif sd < 1.0:
        score, label = math.floor(5 - (sd - 0.6) / 0.4 * 2 + 0.5), "Concentrated"
    else:
        score, label = (1 if sd > 1.5 else 2), "Highly Concentrated"
    return int(ind.clamp(score, 1, 10)), label, sd


def compute_factor(inputs: Sequence[FactorInputs]) -> AnalysisResult:
    """Score the holding set and aggregate portfolio tilts.

    Raises
    ------
    MinimumDataError
        When fewer than five holdings returned data.
    """
    failed = [h.symbol for h in inputs if h.failed]
    successes = len(inputs) - len(failed)
    if successes < _MIN_HOLDINGS:
        raise MinimumDataError(
            MODEL_ID, _MIN_HOLDINGS, successes, failed,
            detail=f"Only {successes} of {len(inputs)} holdings returned data; "
                   "factor analysis needs at least 5.",
        )

    scores = factor_scores(inputs)
    tilts = {f: sum(h.weight * s[f] for h, s in zip(inputs, scores)) for f in FACTORS}
    div_score, div_label, tilt_sd = diversification(tilts)

    warnings = []
    if failed:
        warnings.append(f"Data unavailable for: {', '.join(failed)}. Defaults applied.")
    sectors = {h.sector for h in inputs}
    if len(sectors) <= 2:
        warnings.append(
            f"Low sector variation detected ({len(sectors)} sectors). "
            "Cross-sectional z-scores may have limited statistical meaning."
        )

    contributors = {}
    for f in FACTORS:
        rows = [
            {"symbol": h.symbol, "score": s[f], "weight": h.weight, "contribution": h.weight * s[f]}
            for h, s in zip(inputs, scores)
        ]
        rows.sort(key=lambda r: abs(r["contribution"]), reverse=True)
        contributors[f] = rows[:_TOP_CONTRIBUTORS]

    holdings = []
    for h, s in zip(inputs, scores):
        holdings.append({**h.to_dict(), **{f"{f}_score": s[f] for f in FACTORS}, "total_score": sum(s.values())})
    holdings.sort(key=lambda r: r["total_score"], reverse=True)

    logger.info("Factor exposure over %d holdings: diversification %d (%s)", len(inputs), div_score, div_label)
    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=PORTFOLIO,
        scalar_metrics={
            **{f"{f}_tilt": round(tilts[f], 6) for f in FACTORS},
            "diversification_score": div_score,
            "tilt_dispersion": round(tilt_sd, 6),
            "holdings_analyzed": len(inputs),
            "holdings_with_data": successes,
        },
        derived_series={},
        verdict=div_label,
        warnings=warnings,
        details={"holdings": holdings, "top_contributors": contributors, "failed_symbols": failed},
    )


# ===================================================================
# Engine adapter
# ===================================================================

def gather_inputs(session, holding: Holding, weight: float) -> FactorInputs:
    """Fetch and reduce one holding's records to factor inputs.

    Provider errors propagate so the scheduler can mark the holding failed.
    """
    sym = holding.symbol
    profile = session.profile(sym)
    quarters = newest_first([p for p in session.fundamentals(sym, limit=4) if not p.is_annual])[:4]
    bars = session.price_bars(
        sym, start=session.as_of - timedelta(days=_PRICE_LOOKBACK_DAYS), end=session.as_of,
    )
    closes = [b.close for b in bars]

    roe = margin = pe = pb = None
    if quarters:
        ttm_ni = sum(q.net_income or 0.0 for q in quarters)
        ttm_rev = sum(q.revenue or 0.0 for q in quarters)
        ttm_op = sum(q.operating_income or 0.0 for q in quarters)
        ttm_eps = sum(q.diluted_eps or 0.0 for q in quarters)
        equity = quarters[0].equity or 0.0
        if equity > 0 and ttm_ni != 0:
            roe = ttm_ni / equity
        if ttm_rev > 0:
            margin = ttm_op / ttm_rev
        price = profile.price or (closes[-1] if closes else None)
        if price and ttm_eps > 0:
            pe = price / ttm_eps
        if _positive(profile.market_cap) and equity > 0:
            pb = profile.market_cap / equity

    return FactorInputs(
        symbol=sym,
        sector=holding.sector or "Other",
        weight=weight,
        beta=profile.beta,
        volatility=ind.annualized_volatility(closes),
        momentum_3m=ind.momentum(closes, _MOMENTUM_BARS),
        pe_ratio=pe,
        pb_ratio=pb,
        roe=roe,
        operating_margin=margin,
        market_cap=profile.market_cap if _positive(profile.market_cap) else None,
    )


class FactorEngine(BaseEngine):
    """Portfolio-wide; fetches every holding in batches of four."""

    model_id = MODEL_ID
    portfolio_level = True

    def run(self, ticker: str | None, session, **options) -> AnalysisResult:
        holdings = list(session.holdings)
        weights = session.holdings.weights()
        logger.info("Analyzing 5-factor exposure across %d holdings", len(holdings))

        settled = session.scheduler(MODEL_ID).map_settled(
            lambda h: gather_inputs(session, h, weights[h.symbol]), holdings,
        )
        inputs = []
        for s in settled:
            h = s.item
            if s.ok:
                inputs.append(s.result)
            else:
                inputs.append(FactorInputs.defaults(h.symbol, h.sector or "Other", weights[h.symbol]))
        return compute_factor(inputs)
