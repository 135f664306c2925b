"""Tests for src.analysis.esg -- proxy pillar scores, ratings and portfolio mode."""

import pytest

from src.analysis.esg import (
    ESGEngine,
    HoldingESG,
    compute_esg,
    compute_portfolio_esg,
    esg_rating,
    esg_scores,
)
from src.records import PORTFOLIO, CompanyProfile, Holding, HoldingSet

from conftest import make_quarters


@pytest.fixture
def mega_cap():
    profile = CompanyProfile(symbol="BIG", name="Big Tech", market_cap=300e9, employee_count=10_000)
    return profile, make_quarters("BIG", n=4, start_revenue=2.5e9)


class TestRating:

    @pytest.mark.parametrize("total, rating", [
        (95, "AAA"), (90, "AAA"), (85, "AA"), (70, "A"), (65, "BBB"),
        (50, "BB"), (45, "B"), (39, "CCC"),
    ])
    def test_bands(self, total, rating):
        assert esg_rating(total) == rating


class TestESGScores:

    def test_full_data_company(self, mega_cap):
        profile, quarters = mega_cap
        s = esg_scores(profile, quarters, "Information Technology")
        # E: sector 17 + efficiency 8 ($1.0M/employee) + size 5
        assert s.environmental == 30
        # S: labor 10 + sector labor 9 + scale floor(log10(3e11) - 7) = 4
        assert s.social == 23
        # G: negative accruals 10 + D/E 0.67 optimal 10 + CF/NI 1.5 strong 10
        assert s.governance == 30
        assert s.total == 83
        assert s.rating == "AA"
        assert not s.limited_data
        assert s.labels["efficiency"] == "High efficiency"

    def test_sector_only_defaults(self):
        s = esg_scores(CompanyProfile(symbol="ETF"), [], None)
        assert (s.environmental, s.social, s.governance) == (18, 17, 12)
        assert s.total == 47
        assert s.rating == "B"
        assert s.limited_data

    def test_pillars_within_bounds(self, mega_cap):
        profile, quarters = mega_cap
        for sector in ("Energy", "Utilities", "Unknown", None):
            s = esg_scores(profile, quarters, sector)
            assert 0 <= s.environmental <= 35
            assert 0 <= s.social <= 35
            assert 0 <= s.governance <= 30

    def test_negative_equity_debt_tier(self, mega_cap):
        profile, _ = mega_cap
        quarters = make_quarters("BIG", n=4, start_revenue=2.5e9, equity=-1e9)
        s = esg_scores(profile, quarters, "Information Technology")
        assert s.components["debt"] == 2
        assert s.labels["debt"] == "Negative equity"

    def test_partial_year_skips_accruals(self, mega_cap):
        profile, quarters = mega_cap
        s = esg_scores(profile, quarters[:2], "Information Technology")
        assert s.components["accruals"] is None
        assert s.components["transparency"] == 5


class TestComputeESG:

    def test_single_result(self, mega_cap):
        profile, quarters = mega_cap
        r = compute_esg("BIG", profile, quarters, "Information Technology")
        assert r.verdict == "AA"
        assert r.metric("total_esg") == 83
        assert r.metric("name") == "Big Tech"
        assert r.warnings == ()

    def test_limited_data_warns(self):
        r = compute_esg("ETF", CompanyProfile(symbol="ETF"), [], "Unknown")
        assert r.metric("limited_data") is True
        assert "sector defaults applied" in r.warnings[0]


class TestPortfolioESG:

    def test_value_weighted(self, mega_cap):
        profile, quarters = mega_cap
        holdings = HoldingSet([Holding("BIG", 30, 100.0, "Information Technology"),
                               Holding("ETF", 10, 100.0, "Energy")])
        scored = [
            HoldingESG("BIG", "Big Tech", "Information Technology",
                       esg_scores(profile, quarters, "Information Technology")),
            HoldingESG("ETF", "ETF", "Energy", esg_scores(CompanyProfile(symbol="ETF"), [], "Energy")),
        ]
        r = compute_portfolio_esg(holdings, scored)
        expected = 0.75 * scored[0].score.total + 0.25 * scored[1].score.total
        assert r.ticker == PORTFOLIO
        assert r.metric("weighted_esg") == pytest.approx(expected)
        assert r.metric("best_holding") == "BIG"
        assert r.metric("worst_holding") == "ETF"
        assert [row["sector"] for row in r.details["sector_averages"]] == ["Information Technology", "Energy"]

    def test_empty_portfolio(self):
        assert not compute_portfolio_esg(HoldingSet(), []).applicable


class TestESGEngine:

    def test_single_ticker_uses_holding_sector(self, session):
        r = ESGEngine().run("AAA", session)
        assert r.ticker == "AAA"
        assert r.metric("sector") == "Information Technology"

    def test_portfolio_mode(self, session):
        r = ESGEngine().run(None, session)
        assert r.ticker == PORTFOLIO
        assert r.metric("holdings_total") == 5
        assert r.metric("holdings_rated") == 5
        session.sleep.assert_not_called()

    def test_failed_holding_gets_sector_defaults(self, session, portfolio_provider):
        portfolio_provider.failing = {"EEE"}
        r = ESGEngine().run(None, session)
        assert r.metric("holdings_rated") == 4
        assert any("EEE" in w and "Sector-only default" in w for w in r.warnings)
        eee = next(h for h in r.details["holdings"] if h["symbol"] == "EEE")
        assert eee["success"] is False
        assert eee["limited_data"] is True
