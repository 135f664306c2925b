"""Tests for src.pipeline.registry and src.pipeline.steps -- discovery and engine runs."""

import logging

import pytest

from src.analysis.base import BaseEngine, MinimumDataError
from src.pipeline.registry import EngineRegistry, get_registry
from src.pipeline.steps import ERROR, run_engine, run_engines
from src.records import PORTFOLIO, AnalysisResult

ALL_ENGINES = {
    "dcf", "dividend", "technical", "factor", "earnings_quality",
    "competitive", "esg", "capital", "attribution",
}


class EchoEngine(BaseEngine):
    model_id = "echo"

    def run(self, ticker, session, **options):
        return AnalysisResult(model_id=self.model_id, ticker=ticker, scalar_metrics=dict(options))


class FailingEngine(BaseEngine):
    model_id = "failing"

    def __init__(self, error):
        self.error = error

    def run(self, ticker, session, **options):
        raise self.error


class BookEngine(BaseEngine):
    model_id = "book"
    portfolio_level = True

    def run(self, ticker, session, **options):
        return AnalysisResult(model_id=self.model_id, ticker=PORTFOLIO,
                              scalar_metrics={"ticker_arg": ticker})


@pytest.fixture
def registry():
    reg = EngineRegistry()
    reg.register(EchoEngine())
    reg.register(BookEngine())
    return reg


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestRegistry:

    def setup_method(self):
        self.reg = EngineRegistry()

    def test_auto_discover_from_settings(self):
        self.reg.auto_discover()
        assert set(self.reg.names()) == ALL_ENGINES
        for name, engine in self.reg.items():
            assert engine.model_id == name

    def test_singleton(self):
        assert get_registry() is get_registry()
        assert "dcf" in get_registry()

    def test_disabled_engine_skipped(self):
        self.reg.auto_discover({
            "dcf": {"module": "src.analysis.dcf", "class": "DCFEngine", "enabled": False},
            "esg": {"module": "src.analysis.esg", "class": "ESGEngine"},
        })
        assert self.reg.names() == ["esg"]

    def test_bad_module_logged_and_skipped(self, caplog):
        with caplog.at_level(logging.ERROR, logger="registry"):
            self.reg.auto_discover({
                "ghost": {"module": "src.analysis.no_such_engine", "class": "Ghost"},
                "capital": {"module": "src.analysis.capital_allocation", "class": "CapitalAllocationEngine"},
            })
        assert self.reg.names() == ["capital"]
        assert "Failed to load engine ghost" in caplog.text


# ---------------------------------------------------------------------------
# run_engine
# ---------------------------------------------------------------------------

class TestRunEngine:

    def test_result_stored_in_session(self, session, registry):
        r = run_engine(session, "echo", "AAA", registry=registry, horizon=5)
        assert r.metric("horizon") == 5
        assert session.last_result("echo", "AAA") is r

    def test_unknown_engine(self, session, registry):
        with pytest.raises(KeyError, match="Unknown engine"):
            run_engine(session, "nope", "AAA", registry=registry)

    def test_single_ticker_engine_needs_ticker(self, session, registry):
        with pytest.raises(ValueError, match="needs a ticker"):
            run_engine(session, "echo", None, registry=registry)

    def test_portfolio_engine_ignores_ticker(self, session, registry):
        r = run_engine(session, "book", "AAA", registry=registry)
        assert r.ticker == PORTFOLIO
        assert r.metric("ticker_arg") is None

    def test_analysis_error_becomes_error_result(self, session, registry):
        registry.register(FailingEngine(MinimumDataError("failing", 5, 2, ["EEE"])))
        r = run_engine(session, "failing", "AAA", registry=registry)
        assert r.verdict == ERROR
        assert not r.applicable
        assert r.details["error_type"] == "MinimumDataError"
        assert "EEE" in r.warnings[0]
        assert session.errors == [{"model_id": "failing", "ticker": "AAA", "error": r.warnings[0]}]
        assert session.last_result("failing", "AAA") is r

    def test_unexpected_error_becomes_error_result(self, session, registry):
        registry.register(FailingEngine(ZeroDivisionError("division by zero")))
        r = run_engine(session, "failing", "AAA", registry=registry)
        assert r.verdict == ERROR
        assert r.details["error_type"] == "ZeroDivisionError"

    def test_raise_errors(self, session, registry):
        registry.register(FailingEngine(MinimumDataError("failing", 5, 2)))
        with pytest.raises(MinimumDataError):
            run_engine(session, "failing", "AAA", registry=registry, raise_errors=True)
        assert session.errors == []

    def test_portfolio_mode_engine_with_default_registry(self, session):
        r = run_engine(session, "esg", None)
        assert r.ticker == PORTFOLIO
        assert session.last_result("esg", PORTFOLIO) is r


# ---------------------------------------------------------------------------
# run_engines
# ---------------------------------------------------------------------------

class TestRunEngines:

    def test_keys_per_ticker_and_portfolio(self, session, registry):
        results = run_engines(session, ["AAA", "BBB"], registry=registry)
        assert set(results) == {("echo", "AAA"), ("echo", "BBB"), ("book", PORTFOLIO)}

    def test_failure_does_not_abort(self, session, registry):
        registry.register(FailingEngine(RuntimeError("boom")))
        results = run_engines(session, ["AAA"], ["failing", "echo", "missing"], registry=registry)
        assert results[("failing", "AAA")].verdict == ERROR
        assert results[("echo", "AAA")].applicable
        assert len(results) == 2
