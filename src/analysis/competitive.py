"""Competitive position and economic-moat scoring against sector peers.

Resolves the target's sector, pulls up to six peers from a fixed per-sector
roster and scores every company on:

  * Moat (1-5 per component): brand power, cost advantage, network
    effects, switching costs; averaged into Wide / Narrow / None
  * Management quality (0-10)
  * Composite rank: 30% moat + 25% management + 25% inverse P/E +
    20% revenue growth, each min-max normalised across the peer set

plus a rule-based SWOT for the two largest companies and catalysts for the
top-ranked one.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Optional, Sequence

from src.analysis.base import BaseEngine
from src.analysis.indicators import clamp, median
from src.data_sources.normalizer import newest_first
from src.records import AnalysisResult, CompanyProfile, FundamentalPeriod
from src.utils.logger import setup_logger

logger = setup_logger("competitive")

MODEL_ID = "competitive"

# ---------------------------------------------------------------------------
# Sector rosters
# ---------------------------------------------------------------------------
SECTOR_COMPETITORS: dict[str, list[str]] = {
    "Information Technology": ["AAPL", "MSFT", "NVDA", "CRM", "ORCL", "ADBE", "IBM"],
    "Communication Services": ["META", "GOOGL", "NFLX", "DIS", "CMCSA", "T", "VZ"],
    "Consumer Discretionary": ["AMZN", "TSLA", "HD", "MCD", "NKE", "SBUX", "LOW"],
    "Financials": ["JPM", "BAC", "GS", "MS", "BLK", "AXP", "WFC"],
    "Health Care": ["JNJ", "UNH", "LLY", "PFE", "ABT", "TMO", "MRK"],
    "Industrials": ["HON", "CAT", "UPS", "RTX", "LMT", "DE", "GE"],
    "Consumer Staples": ["PG", "KO", "PEP", "WMT", "COST", "CL", "MDLZ"],
    "Energy": ["XOM", "CVX", "COP", "SLB", "EOG", "MPC", "VLO"],
    "Materials": ["LIN", "APD", "ECL", "NEM", "NUE", "DD", "PPG"],
    "Real Estate": ["AMT", "PLD", "CCI", "EQIX", "SPG", "O", "VICI"],
    "Utilities": ["NEE", "DUK", "SO", "D", "AEP", "EXC", "SRE"],
}

SECTOR_THREATS: dict[str, list[str]] = {
    "Information Technology": [
        "Rapid technological obsolescence and disruption",
        "Intensifying regulatory scrutiny on big tech",
        "Talent war driving up R&D costs",
    ],
    "Communication Services": [
        "Cord-cutting eroding traditional media revenue",
        "Regulatory pressure on content and data practices",
        "Ad market cyclicality and competition",
    ],
    "Consumer Discretionary": [
        "Consumer spending sensitivity to macro downturns",
        "E-commerce disruption to legacy retail",
        "Rising input costs and supply chain risk",
    ],
    "Financials": [
        "Interest rate volatility compressing margins",
        "Fintech disruption to traditional banking",
        "Heightened regulatory capital requirements",
    ],
    "Health Care": [
        "Drug pricing reform and government intervention",
        "Patent cliffs on blockbuster drugs",
        "Rising clinical trial costs and regulatory hurdles",
    ],
    "Industrials": [
        "Cyclical demand tied to economic conditions",
        "Supply chain disruptions and input cost inflation",
        "Geopolitical risk in global operations",
    ],
    "Consumer Staples": [
        "Private-label competition eroding brand premiums",
        "Commodity cost inflation squeezing margins",
        "Shifting consumer preferences to niche brands",
    ],
    "Energy": [
        "Accelerating energy transition reducing fossil fuel demand",
        "Commodity price volatility",
        "Stricter environmental regulations and carbon taxes",
    ],
    "Materials": [
        "Commodity price swings impacting profitability",
        "Environmental regulation compliance costs",
        "Substitution risk from alternative materials",
    ],
    "Real Estate": [
        "Rising interest rates increasing cap rates",
        "Remote work reducing office demand",
        "Oversupply risk in key markets",
    ],
    "Utilities": [
        "Regulatory rate caps limiting revenue growth",
        "Extreme weather and infrastructure vulnerability",
        "Competition from distributed energy and renewables",
    ],
}
_DEFAULT_THREATS = [
    "Macroeconomic uncertainty",
    "Competitive pressure from new entrants",
    "Regulatory changes",
]
DEFAULT_SECTOR = "Information Technology"

# (SIC ranges, sector) -- first hit wins
_SIC_SECTORS: list[tuple[list[tuple[int, int]], str]] = [
    ([(3570, 3599), (7370, 7379), (3670, 3679)], "Information Technology"),
    ([(6000, 6799)], "Financials"),
    ([(2000, 2099), (5400, 5499)], "Consumer Staples"),
    ([(2800, 2899), (3841, 3851)], "Health Care"),
    ([(4900, 4999)], "Utilities"),
    ([(1300, 1399), (2900, 2999)], "Energy"),
    ([(6500, 6599)], "Real Estate"),
    ([(3400, 3599), (3700, 3799)], "Industrials"),
    ([(4800, 4899)], "Communication Services"),
]

_MAX_PEERS = 6
_MIN_PEERS = 3
_MAX_SWOT_ITEMS = 4
_MIN_SWOT_ITEMS = 2
_MAX_CATALYSTS = 5

_WEIGHTS = {"moat": 0.30, "management": 0.25, "valuation": 0.25, "growth": 0.20}

_SWOT_FILLERS = {
    "strengths": [
        "Established market presence and brand recognition",
        "Diversified revenue base across products and customers",
    ],
    "weaknesses": [
        "Exposure to macroeconomic headwinds",
        "Execution risk in sustaining competitive position",
    ],
    "opportunities": [
        "Expansion into adjacent markets and product lines",
        "Pricing optimisation across the existing customer base",
    ],
}


def _fmt_pct(ratio: float) -> str:
    return f"{ratio * 100:.1f}%"


def _fmt_big(value: float) -> str:
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M")):
        if abs(value) >= threshold:
            return f"${value / threshold:.2f}{suffix}"
    return f"${value:,.0f}"


# ---------------------------------------------------------------------------
# Sector resolution
# ---------------------------------------------------------------------------

def match_sector(name: Optional[str]) -> Optional[str]:
    """Fuzzy-match a free-text sector/SIC description onto a roster key."""
    if not name:
        return None
    lower = name.lower().strip()
    if not lower:
        return None
    for key in SECTOR_COMPETITORS:
        if key.lower() == lower:
            return key
    for key in SECTOR_COMPETITORS:
        k = key.lower()
        if k in lower or lower in k:
            return key
    words = lower.split()
    for key in SECTOR_COMPETITORS:
        key_words = key.lower().split()
        if any(w == kw and len(w) > 3 for w in words for kw in key_words):
            return key
    return None


def sector_from_sic(sic_code: Optional[int]) -> Optional[str]:
    if sic_code is None:
        return None
    for ranges, sector in _SIC_SECTORS:
        if any(lo <= sic_code <= hi for lo, hi in ranges):
            return sector
    return None


def resolve_sector(
    holding_sector: Optional[str],
    sic_description: Optional[str],
    sic_code: Optional[int],
) -> str:
    """Holding tag, else SIC description match, else SIC range, else the default.

    Only tags naming a roster sector count; "Other", "N/A" and unknown tags fall through.
    """
    sector = holding_sector if holding_sector in SECTOR_COMPETITORS else None
    if sector is None:
        sector = match_sector(sic_description)
    if sector is None:
        sector = sector_from_sic(sic_code)
    return sector or DEFAULT_SECTOR


def select_peers(symbol: str, sector: str, limit: int = _MAX_PEERS) -> list[str]:
    peers: list[str] = []
    for s in SECTOR_COMPETITORS.get(sector, []):
        if s != symbol and s not in peers:
            peers.append(s)
        if len(peers) >= limit:
            break
    return peers


# ---------------------------------------------------------------------------
# Per-company metrics
# ---------------------------------------------------------------------------

@dataclass
class CompanyMetrics:
    ticker: str
    name: str
    market_cap: float = 0.0
    employees: int = 0
    ttm_revenue: float = 0.0
    ttm_net_income: float = 0.0
    ttm_operating_income: float = 0.0
    ttm_gross_profit: float = 0.0
    ttm_eps: float = 0.0
    gross_margin: Optional[float] = None
    operating_margin: Optional[float] = None
    net_margin: Optional[float] = None
    revenue_growth: Optional[float] = None
    rd_proxy: float = 0.0
    revenue_per_employee: Optional[float] = None
    roe: Optional[float] = None
    roa: Optional[float] = None
    debt_to_equity: Optional[float] = None
    pe: Optional[float] = None
    price: float = 0.0
    valid: bool = False
    # filled in by the cross-sectional pass
    moat: dict = field(default_factory=dict)
    management_score: int = 0
    market_share: float = 0.0
    composite_score: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def company_metrics(profile: CompanyProfile, periods: Sequence[FundamentalPeriod]) -> CompanyMetrics:
    """TTM profile of one company, annualising when fewer than four quarters exist."""
    m = CompanyMetrics(
        ticker=profile.symbol,
        name=profile.display_name,
        market_cap=profile.market_cap or 0.0,
        employees=profile.employee_count or 0,
    )
    quarters = newest_first([p for p in periods if not p.is_annual]) or newest_first(periods)
    if not quarters:
        return m

    recent = quarters[:4]
    factor = 4 / len(recent)
    m.ttm_revenue = sum(q.revenue or 0.0 for q in recent) * factor
    m.ttm_net_income = sum(q.net_income or 0.0 for q in recent) * factor
    m.ttm_operating_income = sum(q.operating_income or 0.0 for q in recent) * factor
    m.ttm_gross_profit = sum(q.gross_profit or 0.0 for q in recent) * factor
    m.ttm_eps = sum(q.diluted_eps or 0.0 for q in recent) * factor

    if m.ttm_revenue > 0:
        m.gross_margin = m.ttm_gross_profit / m.ttm_revenue
        m.operating_margin = m.ttm_operating_income / m.ttm_revenue
        m.net_margin = m.ttm_net_income / m.ttm_revenue
    m.rd_proxy = max(m.ttm_gross_profit - m.ttm_operating_income, 0.0)
    if m.employees > 0 and m.ttm_revenue > 0:
        m.revenue_per_employee = m.ttm_revenue / m.employees

    latest = quarters[0]
    equity = latest.equity or 0.0
    assets = latest.assets or 0.0
    if equity > 0:
        m.roe = m.ttm_net_income / equity
        m.debt_to_equity = (latest.liabilities or 0.0) / equity
    if assets > 0:
        m.roa = m.ttm_net_income / assets

    shares = profile.shares_outstanding or 0.0
    if m.ttm_eps > 0 and m.market_cap > 0 and shares > 0:
        m.price = m.market_cap / shares
        m.pe = m.price / m.ttm_eps

    if len(quarters) >= 8:
        recent_rev = sum(q.revenue or 0.0 for q in quarters[:4])
        prior_rev = sum(q.revenue or 0.0 for q in quarters[4:8])
        if prior_rev > 0:
            m.revenue_growth = (recent_rev - prior_rev) / prior_rev
    elif len(quarters) >= 5:
        first, last = quarters[-1].revenue or 0.0, quarters[0].revenue or 0.0
        if first > 0:
            m.revenue_growth = (last - first) / first

    m.valid = m.market_cap > 0 and m.ttm_revenue > 0
    return m


def moat_scores(m: CompanyMetrics, sector_median_margin: Optional[float]) -> dict:
    moat = {"brand_power": 1, "cost_advantage": 1, "network_effects": 1, "switching_costs": 1}

    gm = m.gross_margin
    if gm is not None:
        moat["brand_power"] = 5 if gm > 0.60 else 4 if gm > 0.50 else 3 if gm > 0.40 else 2 if gm > 0.25 else 1

    if m.operating_margin is not None and sector_median_margin and sector_median_margin > 0:
        r = m.operating_margin / sector_median_margin
        moat["cost_advantage"] = 5 if r > 1.5 else 4 if r > 1.25 else 3 if r > 1.0 else 2 if r > 0.75 else 1

    rpe = m.revenue_per_employee
    if rpe is not None:
        moat["network_effects"] = (
            5 if rpe > 1_000_000 else 4 if rpe > 600_000 else 3 if rpe > 400_000 else 2 if rpe > 200_000 else 1
        )

    stable = m.revenue_growth is not None and m.revenue_growth > -0.05
    large, mid = m.market_cap > 50e9, m.market_cap > 10e9
    if stable and large:
        moat["switching_costs"] = 5
    elif stable and mid:
        moat["switching_costs"] = 4
    elif stable:
        moat["switching_costs"] = 3
    elif mid:
        moat["switching_costs"] = 2

    overall = sum(moat.values()) / 4
    moat["overall"] = overall
    moat["label"] = "Wide" if overall >= 4.0 else "Narrow" if overall >= 2.5 else "None"
    return moat


def management_score(m: CompanyMetrics) -> int:
    score = 0
    if m.roe is not None:
        score += 3 if m.roe > 0.20 else 2 if m.roe > 0.15 else 1 if m.roe > 0.10 else 0
    if m.operating_margin is not None:
        score += 2 if m.operating_margin > 0.25 else 1 if m.operating_margin > 0.15 else 0
    if m.revenue_growth is not None:
        score += 2 if m.revenue_growth > 0.15 else 1 if m.revenue_growth > 0.05 else 0
    if m.debt_to_equity is not None:
        score += 2 if m.debt_to_equity < 0.5 else 1 if m.debt_to_equity < 1.0 else 0
    if m.revenue_per_employee is not None and m.revenue_per_employee > 500_000:
        score += 1
    return min(score, 10)


# ---------------------------------------------------------------------------
# Narrative builders
# ---------------------------------------------------------------------------

def swot(m: CompanyMetrics, sector: str) -> dict[str, list[str]]:
    moat, mgmt = m.moat, m.management_score
    strengths, weaknesses, opportunities = [], [], []
    threats = list(SECTOR_THREATS.get(sector, _DEFAULT_THREATS))

    if moat["overall"] >= 4.0:
        strengths.append("Wide competitive moat with strong defensibility")
    if moat["brand_power"] >= 4:
        strengths.append("Strong brand power reflected in premium gross margins")
    if m.gross_margin is not None and m.gross_margin > 0.50:
        strengths.append(f"Industry-leading gross margin of {_fmt_pct(m.gross_margin)}")
    if m.revenue_growth is not None and m.revenue_growth > 0.10:
        strengths.append(f"Robust revenue growth of {_fmt_pct(m.revenue_growth)} YoY")
    if m.market_cap > 100e9:
        strengths.append(f"Dominant market position with {_fmt_big(m.market_cap)} market cap")
    if mgmt >= 7:
        strengths.append(f"High-quality management team (score: {mgmt}/10)")
    if m.roe is not None and m.roe > 0.20:
        strengths.append(f"Exceptional capital efficiency with {_fmt_pct(m.roe)} ROE")

    if m.gross_margin is not None and m.gross_margin < 0.30:
        weaknesses.append(f"Below-average gross margins ({_fmt_pct(m.gross_margin)}) limiting pricing power")
    if m.revenue_growth is not None and m.revenue_growth < 0:
        weaknesses.append(f"Revenue decline of {_fmt_pct(m.revenue_growth)} signals demand weakness")
    if m.debt_to_equity is not None and m.debt_to_equity > 2.0:
        weaknesses.append(f"High leverage (D/E: {m.debt_to_equity:.1f}x) constraining financial flexibility")
    if moat["network_effects"] <= 2:
        weaknesses.append("Limited network effects or scale economies")
    if mgmt < 4:
        weaknesses.append(f"Below-average management quality score ({mgmt}/10)")
    if m.operating_margin is not None and m.operating_margin < 0.10:
        weaknesses.append(f"Thin operating margins ({_fmt_pct(m.operating_margin)}) vulnerable to cost pressure")

    if m.revenue_growth is not None and m.revenue_growth > 0.05:
        opportunities.append("Continued market share gains in growing addressable market")
    if m.market_cap > 50e9:
        opportunities.append("Scale advantages to fund international expansion and M&A")
    if (m.gross_margin is not None and m.operating_margin is not None
            and m.gross_margin - m.operating_margin > 0.20):
        opportunities.append("Significant margin expansion potential through operating leverage")
    opportunities.append("Strategic investments in AI, automation, and digital transformation")

    out = {"strengths": strengths, "weaknesses": weaknesses, "opportunities": opportunities}
    for quadrant, items in out.items():
        for filler in _SWOT_FILLERS[quadrant]:
            if len(items) >= _MIN_SWOT_ITEMS:
                break
            items.append(filler)
    out["threats"] = threats
    return {k: v[:_MAX_SWOT_ITEMS] for k, v in out.items()}


def catalysts(winner: CompanyMetrics, sector: str) -> list[str]:
    items = []
    if (winner.gross_margin is not None and winner.operating_margin is not None
            and winner.gross_margin - winner.operating_margin > 0.15):
        items.append(
            "Margin expansion driven by operating leverage as fixed costs are amortized "
            "across growing revenue base"
        )
    if winner.revenue_growth is not None and winner.revenue_growth > 0.05:
        items.append(f"Sustained market share gains in the {sector} sector through competitive differentiation")
    if winner.moat["brand_power"] >= 4:
        items.append("Premium pricing power from strong brand positioning supports durable revenue growth")
    if winner.roe is not None and winner.roe > 0.15:
        items.append(
            f"Superior capital allocation with {_fmt_pct(winner.roe)} ROE enabling value-accretive reinvestment"
        )
    if winner.moat["network_effects"] >= 4:
        items.append("Network effects and scale advantages creating a flywheel of increasing returns")
    items.append("Potential for strategic M&A or partnerships to accelerate growth trajectory")
    if winner.debt_to_equity is not None and winner.debt_to_equity < 1.0:
        items.append(
            f"Strong balance sheet (D/E: {winner.debt_to_equity:.1f}x) provides flexibility for shareholder returns"
        )
    return items[:_MAX_CATALYSTS]


def rationale(winner: CompanyMetrics, valid_pes: Sequence[float]) -> str:
    reasons = []
    if winner.moat["overall"] >= 3.5:
        reasons.append(f"a {winner.moat['label'].lower()} competitive moat")
    if winner.management_score >= 7:
        reasons.append("high management quality")
    if winner.revenue_growth is not None and winner.revenue_growth > 0.10:
        reasons.append("strong revenue growth")
    pe_median = median(valid_pes)
    if winner.pe is not None and pe_median is not None and winner.pe < pe_median:
        reasons.append("attractive valuation")
    if not reasons:
        reasons.append("balanced performance across all categories")
    return (
        f"{winner.name} ranks #1 with a composite score of {winner.composite_score:.1f}/100, "
        f"driven by {', '.join(reasons)}."
    )


# ---------------------------------------------------------------------------
# Core model
# ---------------------------------------------------------------------------

def composite_scores(companies: Sequence[CompanyMetrics]) -> list[float]:
    """Weighted 0-100 rank score per company, min-max normalised across the set."""
    max_moat = max(c.moat["overall"] for c in companies)
    max_mgmt = max(c.management_score for c in companies)
    max_growth = max(c.revenue_growth if c.revenue_growth is not None else -1 for c in companies)
    min_growth = min(c.revenue_growth if c.revenue_growth is not None else 1 for c in companies)
    pes = [c.pe for c in companies if c.pe is not None and c.pe > 0]
    max_pe = max(pes) if pes else 30.0
    min_pe = min(pes) if pes else 5.0

    scores = []
    for c in companies:
        moat_n = c.moat["overall"] / max_moat if max_moat > 0 else 0.0
        mgmt_n = c.management_score / max_mgmt if max_mgmt > 0 else 0.0
        val_n = 0.5
        if c.pe is not None and c.pe > 0 and max_pe > min_pe:
            val_n = clamp(1 - (c.pe - min_pe) / (max_pe - min_pe), 0.0, 1.0)
        growth_n = 0.5
        if c.revenue_growth is not None and max_growth > min_growth:
            growth_n = clamp((c.revenue_growth - min_growth) / (max_growth - min_growth), 0.0, 1.0)
        scores.append((
            moat_n * _WEIGHTS["moat"] + mgmt_n * _WEIGHTS["management"]
            + val_n * _WEIGHTS["valuation"] + growth_n * _WEIGHTS["growth"]
        ) * 100)
    return scores


def compute_competitive(
    symbol: str,
    target: CompanyMetrics,
    peers: Sequence[CompanyMetrics],
    sector: str,
    failed_peers: Sequence[str] = (),
) -> AnalysisResult:
    """Rank *target* against *peers* (invalid peers are dropped).

    Fewer than three valid peers yields a not-applicable result naming the
    peers that were tried.
    """
    valid = [p for p in peers if p.valid and p.ticker != symbol]
    if len(valid) < _MIN_PEERS:
        missing = [p.ticker for p in peers if not p.valid] + list(failed_peers)
        reason = (
            f"Unable to find enough competitors with sufficient data for {symbol}. "
            f"Only {len(valid)} competitors returned valid data. Minimum {_MIN_PEERS} required."
        )
        if missing:
            reason += f" Missing: {', '.join(missing)}."
        return AnalysisResult.not_applicable(MODEL_ID, symbol, reason, sector=sector, peers_valid=len(valid))

    companies = [target, *valid]
    sector_median = median(c.operating_margin for c in companies)
    for c in companies:
        c.moat = moat_scores(c, sector_median)
        c.management_score = management_score(c)

    total_revenue = sum(c.ttm_revenue for c in companies)
    for c in companies:
        c.market_share = c.ttm_revenue / total_revenue if total_revenue > 0 else 0.0
    for c, score in zip(companies, composite_scores(companies)):
        c.composite_score = score

    ranked = sorted(companies, key=lambda c: c.composite_score, reverse=True)
    winner = ranked[0]
    by_cap = sorted(companies, key=lambda c: c.market_cap, reverse=True)[:2]
    valid_pes = [c.pe for c in companies if c.pe is not None and c.pe > 0]

    warnings = []
    if failed_peers:
        warnings.append(f"Data unavailable for: {', '.join(failed_peers)}. Excluded from peer set.")
    if not target.valid:
        warnings.append(f"{symbol} lacks market cap or revenue data; its ranking is indicative only.")

    logger.info("Competitive %s (%s): winner %s of %d companies", symbol, sector, winner.ticker, len(companies))
    return AnalysisResult(
        model_id=MODEL_ID,
        ticker=symbol,
        scalar_metrics={
            "sector": sector,
            "peer_count": len(valid),
            "sector_median_op_margin": sector_median,
            "total_revenue": total_revenue,
            "target_rank": ranked.index(target) + 1,
            "target_composite_score": round(target.composite_score, 4),
            "target_moat_overall": target.moat["overall"],
            "target_moat_label": target.moat["label"],
            "target_management_score": target.management_score,
            "target_market_share": target.market_share,
            "winner": winner.ticker,
            "winner_composite_score": round(winner.composite_score, 4),
        },
        derived_series={},
        verdict="NO MOAT" if target.moat["label"] == "None" else f"{target.moat['label'].upper()} MOAT",
        warnings=warnings,
        details={
            "companies": [c.to_dict() for c in companies],
            "ranking": [c.ticker for c in ranked],
            "swot": {c.ticker: swot(c, sector) for c in by_cap},
            "catalysts": catalysts(winner, sector),
            "rationale": rationale(winner, valid_pes),
        },
    )


# ===================================================================
# Engine adapter
# ===================================================================

class CompetitiveEngine(BaseEngine):
    model_id = MODEL_ID

    def run(self, ticker: str, session, **options) -> AnalysisResult:
        profile = session.profile(ticker)
        periods = session.fundamentals(ticker, limit=12)
        if not periods:
            return AnalysisResult.not_applicable(
                MODEL_ID, ticker,
                f"No financial data available for {ticker}. This ticker may be an ETF or have no reported financials.",
            )
        sector = resolve_sector(session.holdings.sector_of(ticker), profile.sic_description, profile.sic_code)
        target = company_metrics(profile, periods)
        peer_symbols = select_peers(ticker, sector)
        logger.info("Analyzing %s against %d competitors in %s", ticker, len(peer_symbols), sector)

        def load(sym: str) -> CompanyMetrics:
            return company_metrics(session.profile(sym), session.fundamentals(sym, limit=12))

        peers, failed = [], []
        for s in session.scheduler(MODEL_ID).map_settled(load, peer_symbols):
            if s.ok:
                peers.append(s.result)
            else:
                failed.append(s.item)
        return compute_competitive(ticker, target, peers, sector, failed_peers=failed)
