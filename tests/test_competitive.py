"""Tests for src.analysis.competitive -- sector resolution, moat, ranking, SWOT."""

from unittest.mock import MagicMock

import pytest

from src.analysis.competitive import (
    CompanyMetrics,
    CompetitiveEngine,
    company_metrics,
    compute_competitive,
    management_score,
    match_sector,
    moat_scores,
    resolve_sector,
    select_peers,
    sector_from_sic,
)
from src.data_sources.provider import StaticProvider
from src.pipeline.context import AnalysisSession
from src.records import CompanyProfile, Holding, HoldingSet

from conftest import AS_OF, make_quarters, quarter_to_raw


def _company(symbol, market_cap, revenue, margin=0.20, growth=0.0, employees=1000):
    profile = CompanyProfile(
        symbol=symbol, name=f"{symbol} Corp", market_cap=market_cap,
        shares_outstanding=market_cap / 100, employee_count=employees,
    )
    quarters = make_quarters(symbol, n=8, start_revenue=revenue, qoq_growth=growth, op_margin=margin)
    return company_metrics(profile, quarters)


def _peer_set():
    return [
        _company("P1", 80e9, 5e9, margin=0.30, growth=0.03),
        _company("P2", 20e9, 2e9, margin=0.15, growth=0.01),
        _company("P3", 5e9, 1e9, margin=0.10, growth=-0.02),
    ]


# ---------------------------------------------------------------------------
# Sector resolution
# ---------------------------------------------------------------------------

class TestSectorResolution:

    def test_match_sector(self):
        assert match_sector("Energy") == "Energy"
        assert match_sector("technology") == "Information Technology"
        assert match_sector("") is None
        assert match_sector("Services-Prepackaged Software") is None

    def test_sector_from_sic(self):
        assert sector_from_sic(7372) == "Information Technology"
        assert sector_from_sic(6021) == "Financials"
        assert sector_from_sic(9999) is None

    def test_resolve_order(self):
        assert resolve_sector("Utilities", "Crude Oil", 1311) == "Utilities"
        assert resolve_sector("N/A", None, 6021) == "Financials"
        assert resolve_sector(None, "Services-Prepackaged Software", 7372) == "Information Technology"
        assert resolve_sector(None, None, None) == "Information Technology"

    def test_untagged_or_unknown_tag_falls_through(self):
        assert resolve_sector("Other", "Services-Prepackaged Software", 7372) == "Information Technology"
        assert resolve_sector("Widgets", None, 6021) == "Financials"

    def test_select_peers(self):
        assert select_peers("MSFT", "Information Technology") == ["AAPL", "NVDA", "CRM", "ORCL", "ADBE", "IBM"]
        assert len(select_peers("ZZZ", "Information Technology")) == 6
        assert select_peers("ZZZ", "Unknown") == []


# ---------------------------------------------------------------------------
# Per-company metrics
# ---------------------------------------------------------------------------

class TestCompanyMetrics:

    def test_ttm_profile(self):
        m = _company("T", 2e9, 25e6, employees=400)
        assert m.valid
        assert m.ttm_revenue == pytest.approx(100e6)
        assert m.gross_margin == pytest.approx(0.6)
        assert m.operating_margin == pytest.approx(0.2)
        assert m.revenue_growth == pytest.approx(0.0)
        assert m.revenue_per_employee == pytest.approx(250_000)
        assert m.roe == pytest.approx(16e6 / 120e6)
        assert m.pe == pytest.approx(100 / (4 * 25e6 * 0.16 / 1e7))

    def test_annualises_short_history(self):
        profile = CompanyProfile(symbol="T", market_cap=1e9)
        m = company_metrics(profile, make_quarters("T", n=2, start_revenue=25e6))
        assert m.ttm_revenue == pytest.approx(100e6)
        assert m.revenue_growth is None

    def test_invalid_without_market_cap(self):
        m = company_metrics(CompanyProfile(symbol="T"), make_quarters("T", n=4))
        assert not m.valid


class TestScoring:

    def test_moat_components(self):
        m = CompanyMetrics("T", "T", market_cap=60e9, gross_margin=0.65, operating_margin=0.30,
                           revenue_per_employee=1_200_000, revenue_growth=0.10)
        moat = moat_scores(m, 0.15)
        assert moat["brand_power"] == 5
        assert moat["cost_advantage"] == 5
        assert moat["network_effects"] == 5
        assert moat["switching_costs"] == 5
        assert moat["label"] == "Wide"

    def test_moat_without_data(self):
        moat = moat_scores(CompanyMetrics("T", "T"), None)
        assert moat["overall"] == pytest.approx(1.0)
        assert moat["label"] == "None"

    def test_management_score(self):
        m = CompanyMetrics("T", "T", roe=0.25, operating_margin=0.30, revenue_growth=0.20,
                           debt_to_equity=0.3, revenue_per_employee=600_000)
        assert management_score(m) == 10
        assert management_score(CompanyMetrics("T", "T")) == 0


# ---------------------------------------------------------------------------
# Core model
# ---------------------------------------------------------------------------

class TestComputeCompetitive:

    def test_ranking_and_narrative(self):
        target = _company("TGT", 30e9, 3e9, margin=0.25, growth=0.04)
        r = compute_competitive("TGT", target, _peer_set(), "Information Technology")
        assert r.applicable
        assert r.metric("peer_count") == 3
        assert sorted(r.details["ranking"]) == ["P1", "P2", "P3", "TGT"]
        assert r.metric("winner") == r.details["ranking"][0]
        assert 1 <= r.metric("target_rank") <= 4
        assert r.verdict in ("WIDE MOAT", "NARROW MOAT", "NO MOAT")
        shares = sum(c["market_share"] for c in r.details["companies"])
        assert shares == pytest.approx(1.0)

    def test_swot_for_two_largest(self):
        target = _company("TGT", 30e9, 3e9)
        r = compute_competitive("TGT", target, _peer_set(), "Energy")
        swot = r.details["swot"]
        assert set(swot) == {"P1", "TGT"}
        for quadrants in swot.values():
            for name in ("strengths", "weaknesses", "opportunities", "threats"):
                assert 2 <= len(quadrants[name]) <= 4
        assert len(r.details["catalysts"]) <= 5
        assert r.details["rationale"].endswith(".")

    def test_fewer_than_three_valid_peers(self):
        peers = _peer_set()[:2] + [company_metrics(CompanyProfile(symbol="P9"), [])]
        r = compute_competitive("TGT", _company("TGT", 30e9, 3e9), peers, "Energy", failed_peers=["P8"])
        assert not r.applicable
        assert r.metric("peers_valid") == 2
        assert "P9" in r.warnings[0]
        assert "P8" in r.warnings[0]


class TestCompetitiveEngine:

    def _session(self, failing=(), holding=None):
        def raw(symbol, rev):
            return [quarter_to_raw(q) for q in make_quarters(symbol, n=8, start_revenue=rev)]

        fundamentals = {
            "ZZZ": raw("ZZZ", 25e6),
            "AAPL": raw("AAPL", 90e9),
            "MSFT": raw("MSFT", 50e9),
            "NVDA": raw("NVDA", 20e9),
            "CRM": raw("CRM", 9e9),
        }
        profiles = {
            "ZZZ": {"marketCap": 2e9, "sharesOutstanding": 1e7},
            "AAPL": {"marketCap": 3e12, "sharesOutstanding": 1.5e10},
            "MSFT": {"marketCap": 2.8e12, "sharesOutstanding": 7.4e9},
            "NVDA": {"marketCap": 1.2e12, "sharesOutstanding": 2.5e9},
            "CRM": {"marketCap": 2.6e11, "sharesOutstanding": 9.7e8},
        }
        profiles["MSFT"].update(sicCode=7372, sicDescription="Services-Prepackaged Software")
        provider = StaticProvider(fundamentals=fundamentals, profiles=profiles, failing=set(failing))
        holdings = HoldingSet([holding or Holding("ZZZ", 10, 100.0, "Information Technology")])
        return AnalysisSession(provider=provider, holdings=holdings, as_of=AS_OF, sleep=MagicMock())

    def test_run_with_partial_peer_data(self):
        session = self._session(failing={"CRM"})
        r = CompetitiveEngine().run("ZZZ", session)
        assert r.applicable
        assert r.metric("sector") == "Information Technology"
        assert r.metric("peer_count") == 3
        assert any("CRM" in w for w in r.warnings)
        session.sleep.assert_not_called()

    def test_no_financials(self):
        session = self._session()
        r = CompetitiveEngine().run("ETF", session)
        assert not r.applicable
        assert "No financial data" in r.warnings[0]

    def test_untagged_holding_resolves_sector_from_sic(self):
        session = self._session(holding=Holding("MSFT", 10, 300.0))
        r = CompetitiveEngine().run("MSFT", session)
        assert r.applicable
        assert r.metric("sector") == "Information Technology"
        assert sorted(c["ticker"] for c in r.details["companies"]) == ["AAPL", "CRM", "MSFT", "NVDA"]
