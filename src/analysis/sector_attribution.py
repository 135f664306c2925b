"""Sector attribution of the portfolio against a benchmark.

Sector weights on both sides exclude the "Other" bucket and are normalized
to 100.  Sector returns are weight-averaged start-to-end price returns of
the members.  Active return per sector splits into

    selection  = (portfolio return - benchmark return) x benchmark weight / 100
    allocation = (portfolio weight - benchmark weight) / 100 x benchmark return

Weights and returns are in percent.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Mapping, Optional, Sequence

from src.analysis.base import BaseEngine, MinimumDataError
from src.records import PORTFOLIO, AnalysisResult, HoldingSet
from src.utils.logger import setup_logger

logger = setup_logger("sector_attribution")

MODEL_ID = "attribution"
OTHER = "Other"
WINDOWS = ("YTD", "1Y", "3Y")

# Collapses the eleven GICS sectors into six groups
SECTOR_GROUPING_6: dict[str, str] = {
    "Technology": "Technology",
    "Information Technology": "Technology",
    "Communication Services": "Technology",
    "Consumer Discretionary": "Consumer",
    "Consumer Staples": "Consumer",
    "Healthcare": "Healthcare",
    "Health Care": "Healthcare",
    "Financials": "Financials",
    "Industrials": "Industrials",
    "Materials": "Industrials",
    "Energy": "Energy",
    "Utilities": "Utilities",
    "Real Estate": "Real Estate",
}


@dataclass(frozen=True)
class Constituent:
    """One benchmark member; *weight* in any unit, normalized per sector."""

    symbol: str
    sector: str
    weight: float


def window_start(window: str, as_of: date) -> date:
    """First day of the YTD / 1Y / 3Y window ending at *as_of*."""
    window = window.upper()
    if window == "YTD":
        return date(as_of.year, 1, 1)
    years = {"1Y": 1, "3Y": 3}.get(window)
    if years is None:
        raise ValueError(f"Unknown attribution window {window!r}; expected one of {', '.join(WINDOWS)}")
    try:
        return as_of.replace(year=as_of.year - years)
    except ValueError:  # Feb 29
        return as_of.replace(year=as_of.year - years, day=28)


def price_return(closes: Sequence[float]) -> Optional[float]:
    """Percent change from the first to the last close, None with fewer than two closes."""
    if len(closes) < 2 or not closes[0]:
        return None
    return (closes[-1] - closes[0]) / closes[0] * 100.0


def _group(sector: Optional[str], grouping: Optional[Mapping[str, str]]) -> str:
    sector = sector or OTHER
    if grouping:
        return grouping.get(sector, sector)
    return sector


def _normalize(members: dict[str, list[tuple[str, float]]]) -> dict[str, float]:
    """Sector weights in percent of the non-Other total."""
    total = sum(w for rows in members.values() for _, w in rows)
    if total <= 0:
        n = len(members)
        return {s: 100.0 / n for s in members} if n else {}
    return {s: sum(w for _, w in rows) / total * 100.0 for s, rows in members.items()}


def _sector_returns(
    members: dict[str, list[tuple[str, float]]],
    returns: Mapping[str, Optional[float]],
) -> dict[str, float]:
    out = {}
    for sector, rows in members.items():
        total = sum(w for _, w in rows)
        if total > 0:
            out[sector] = sum((returns.get(sym) or 0.0) * w / total for sym, w in rows)
        else:
            out[sector] = sum(returns.get(sym) or 0.0 for sym, _ in rows) / len(rows)
    return out


def compute_sector_attribution(
    holdings: HoldingSet,
    constituents: Iterable[Constituent],
    returns: Mapping[str, Optional[float]],
    window: str = "YTD",
    grouping: Optional[Mapping[str, str]] = None,
) -> AnalysisResult:
    """Attribute active return to sector selection and allocation.

    *returns* maps symbol to percent return over the window; None (or a
    missing key) means the symbol could not be priced and contributes 0.

    Raises
    ------
    MinimumDataError
        When no benchmark constituent could be priced.
    """
    constituents = list(constituents)
    priced = [c.symbol for c in constituents if returns.get(c.symbol) is not None]
    if not priced:
        raise MinimumDataError(
            MODEL_ID, 1, 0, [c.symbol for c in constituents],
            detail="No benchmark constituent returned prices for the window.",
        )

    portfolio: dict[str, list[tuple[str, float]]] = {}
    for h in holdings:
        sector = _group(h.sector, grouping)
        if sector != OTHER:
            portfolio.setdefault(sector, []).append((h.symbol, h.market_value))
    benchmark: dict[str, list[tuple[str, float]]] = {}
    for c in constituents:
        sector = _group(c.sector, grouping)
        if sector != OTHER:
            benchmark.setdefault(sector, []).append((c.symbol, c.weight))

    port_w, bm_w = _normalize(portfolio), _normalize(benchmark)
    port_r, bm_r = _sector_returns(portfolio, returns), _sector_returns(benchmark, returns)

    rows = []
    for sector in list(dict.fromkeys([*port_w, *bm_w])):
        pw, bw = port_w.get(sector, 0.0), bm_w.get(sector, 0.0)
        pr, br = port_r.get(sector, 0.0), bm_r.get(sector, 0.0)
        rows.append({
            "sector": sector,
            "portfolio_weight": pw,
            "benchmark_weight": bw,
            "active_weight": pw - bw,
            "portfolio_return": pr,
            "benchmark_return": br,
            "active_return": pr - br,
            "selection": (pr - br) * bw / 100.0,
            "allocation": (pw - bw) / 100.0 * br,
        })
    rows.sort(key=lambda r: abs(r["active_weight"]), reverse=True)

    total_selection = sum(r["selection"] for r in rows)
    total_allocation = sum(r["allocation"] for r in rows)

    unpriced = sorted({
        sym for sym in [*(h.symbol for h in holdings), *(c.symbol for c in constituents)]
        if returns.get(sym) is None
    })
    warnings = []
    if unpriced:
        warnings.append(f"No prices for: {', '.join(unpriced)}. Treated as 0% return.")
    excluded = [h.symbol for h in holdings if _group(h.sector, grouping) == OTHER]
    if excluded:
        warnings.append(f"Excluded from sector weights (sector 'Other'): {', '.join(excluded)}.")

    total_active = total_selection + total_allocation
    verdict = "OUTPERFORM" if total_active > 0 else "UNDERPERFORM" if total_active < 0 else "IN LINE"
    logger.info(
        "Sector attribution (%s): selection %.4f, allocation %.4f over %d sectors",
        window, total_selection, total_allocation, len(rows),
    )
    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=PORTFOLIO,
        scalar_metrics={
            "window": window,
            "total_selection": total_selection,
            "total_allocation": total_allocation,
            "total_active": total_active,
            "sectors": len(rows),
            "constituents_priced": len(priced),
            "constituents_total": len(constituents),
        },
        derived_series={
            "sector": [r["sector"] for r in rows],
            "selection": [r["selection"] for r in rows],
            "allocation": [r["allocation"] for r in rows],
        },
        verdict=verdict,
        warnings=warnings,
        details={"sectors": rows, "unpriced_symbols": unpriced},
    )


# ===================================================================
# Engine adapter
# ===================================================================

class SectorAttributionEngine(BaseEngine):
    """Options: ``constituents`` (Constituent or (symbol, sector, weight) tuples),
    ``window`` (YTD / 1Y / 3Y) and ``grouping`` (sector map or ``"custom6"``)."""

    model_id = MODEL_ID
    portfolio_level = True

    def run(self, ticker: str | None, session, **options) -> AnalysisResult:
        constituents = [
            c if isinstance(c, Constituent) else Constituent(*c)
            for c in options.get("constituents") or ()
        ]
        window = options.get("window", "YTD")
        grouping = options.get("grouping")
        if grouping == "custom6":
            grouping = SECTOR_GROUPING_6

        start, end = window_start(window, session.as_of), session.as_of
        symbols = list(dict.fromkeys([*session.holdings.symbols, *(c.symbol for c in constituents)]))
        logger.info("Fetching %s returns for %d symbols", window, len(symbols))

        def fetch_return(sym: str) -> Optional[float]:
            return price_return([b.close for b in session.price_bars(sym, start=start, end=end)])

        settled = session.scheduler(MODEL_ID).map_settled(fetch_return, symbols)
        returns = {s.item: s.result if s.ok else None for s in settled}
        return compute_sector_attribution(session.holdings, constituents, returns, window, grouping)
