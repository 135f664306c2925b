"""Tests for src.analysis.factor -- cross-sectional scores and portfolio tilts."""

from unittest.mock import patch

import pytest

from src.analysis.base import MinimumDataError
from src.analysis.factor import (
    FACTORS,
    FactorEngine,
    FactorInputs,
    compute_factor,
    diversification,
    factor_scores,
)
from src.records import PORTFOLIO, Holding


def _inputs(n=5, **overrides):
    base = [
        FactorInputs(f"S{i}", sector=f"Sector{i}", weight=1 / n, volatility=0.2 + 0.05 * i,
                     momentum_3m=5.0 * i, pe_ratio=10.0 + 5 * i, pb_ratio=2.0 + i,
                     roe=0.10 + 0.02 * i, operating_margin=0.15, market_cap=10 ** (9 + i % 3))
        for i in range(n)
    ]
    for i, fields in overrides.items():
        for k, v in fields.items():
            setattr(base[int(i)], k, v)
    return base


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

class TestFactorScores:

    def test_cheaper_scores_higher_value(self):
        scores = factor_scores(_inputs())
        assert scores[0]["value"] > scores[4]["value"]

    def test_low_volatility_sign(self):
        scores = factor_scores(_inputs())
        assert scores[0]["low_vol"] > scores[4]["low_vol"]

    def test_smaller_cap_scores_higher_size(self):
        scores = factor_scores(_inputs())
        # market caps 1e9, 1e10, 1e11, 1e9, 1e10
        assert scores[0]["size"] > scores[2]["size"]

    def test_scores_clamped(self):
        for row in factor_scores(_inputs(n=8)):
            assert all(-2.0 <= row[f] <= 2.0 for f in FACTORS)

    def test_missing_inputs_score_zero(self):
        inputs = _inputs(**{"1": {"momentum_3m": None, "market_cap": None}})
        row = factor_scores(inputs)[1]
        assert row["momentum"] == 0.0
        assert row["size"] == 0.0

    def test_negative_pe_excluded_from_value(self):
        inputs = _inputs(**{"2": {"pe_ratio": -8.0, "pb_ratio": None}})
        assert factor_scores(inputs)[2]["value"] == 0.0


class TestDiversification:

    def test_no_tilt_is_well_diversified(self):
        assert diversification({f: 0.0 for f in FACTORS})[:2] == (10, "Well Diversified")

    def test_single_large_tilt_is_concentrated(self):
        tilts = {f: 0.0 for f in FACTORS}
        tilts["value"] = 2.0
        score, label, sd = diversification(tilts)
        assert sd == pytest.approx(0.8)
        assert (score, label) == (4, "Concentrated")

    @patch("src.analysis.factor.ind.pstdev", return_value=0.525)
    def test_half_score_rounds_up(self, _):
        # 8 - (0.525 - 0.3) / 0.3 * 2 = 6.5
        assert diversification({f: 0.0 for f in FACTORS})[:2] == (7, "Moderately Diversified")

    def test_score_bounds(self):
        score, label, _ = diversification({"value": 2, "momentum": -2, "quality": 0, "size": 0, "low_vol": 0})
        assert 1 <= score <= 10


class TestComputeFactor:

    def test_tilts_are_weighted_sums(self):
        inputs = _inputs()
        result = compute_factor(inputs)
        scores = factor_scores(inputs)
        expected = sum(h.weight * s["momentum"] for h, s in zip(inputs, scores))
        assert result.metric("momentum_tilt") == pytest.approx(expected, abs=1e-6)
        assert result.ticker == PORTFOLIO
        assert len(result.details["top_contributors"]["value"]) == 3

    def test_fewer_than_five_successes_raises(self):
        inputs = _inputs(n=4) + [FactorInputs.defaults("BAD", "Other", 0.1)]
        with pytest.raises(MinimumDataError) as exc:
            compute_factor(inputs)
        assert exc.value.available == 4
        assert exc.value.missing_symbols == ["BAD"]
        assert "BAD" in str(exc.value)

    def test_low_sector_variation_warning(self):
        inputs = _inputs()
        for h in inputs:
            h.sector = "Energy"
        assert any("Low sector variation" in w for w in compute_factor(inputs).warnings)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TestFactorEngine:

    def test_holding_without_data_still_counts(self, session):
        r = FactorEngine().run(None, session)
        assert set(r.scalar_metrics) >= {f"{f}_tilt" for f in FACTORS}
        assert 1 <= r.metric("diversification_score") <= 10
        assert r.metric("holdings_with_data") == 5
        eee = next(h for h in r.details["holdings"] if h["symbol"] == "EEE")
        assert eee["momentum_score"] == 0.0

    def test_batches_of_four_with_pause(self, session):
        FactorEngine().run(None, session)
        session.sleep.assert_called_once_with(0.3)

    def test_failed_fetch_below_minimum_raises(self, session, portfolio_provider):
        portfolio_provider.failing = {"EEE"}
        with pytest.raises(MinimumDataError):
            FactorEngine().run(None, session)

    def test_failed_fetch_uses_defaults(self, session, portfolio_provider, holdings):
        portfolio_provider.failing = {"FFF"}
        session.set_holdings(holdings.with_holding(Holding("FFF", 10, 10.0, "Materials")))
        r = FactorEngine().run(None, session)
        assert r.details["failed_symbols"] == ["FFF"]
        assert any("FFF" in w for w in r.warnings)
        fff = next(h for h in r.details["holdings"] if h["symbol"] == "FFF")
        assert fff["beta"] == 1.0
        assert fff["volatility"] == 0.25
