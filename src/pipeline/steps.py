"""Orchestration helpers: run registered engines against a session.

Each helper stores its results in the session so later steps (export,
comparison) can read them back.  One failing engine never aborts a
multi-engine run unless ``raise_errors`` is set.
"""

from __future__ import annotations

from typing import Iterable

from src.analysis.base import AnalysisError
from src.pipeline.context import AnalysisSession
from src.pipeline.registry import EngineRegistry, get_registry
from src.records import PORTFOLIO, AnalysisResult
from src.utils.logger import setup_logger

logger = setup_logger("steps")

ERROR = "ERROR"


def error_result(model_id: str, ticker: str, error: Exception) -> AnalysisResult:
    return AnalysisResult(
        model_id=model_id,
        ticker=ticker,
        verdict=ERROR,
        warnings=(str(error),),
        applicable=False,
        details={"error_type": type(error).__name__},
    )


def run_engine(
    session: AnalysisSession,
    model_id: str,
    ticker: str | None = None,
    raise_errors: bool = False,
    registry: EngineRegistry | None = None,
    **options,
) -> AnalysisResult:
    """Run one engine and store its result in *session*.

    Failures are logged and stored as an ``ERROR`` result unless
    *raise_errors* is set.
    """
    registry = registry or get_registry()
    engine = registry.get(model_id)
    if engine is None:
        raise KeyError(f"Unknown engine: {model_id} (available: {', '.join(registry.names())})")

    if engine.portfolio_level or ticker in (None, "", PORTFOLIO):
        if not (engine.portfolio_level or engine.portfolio_mode):
            raise ValueError(f"Engine {model_id} needs a ticker")
        ticker = None
    target = ticker or PORTFOLIO

    logger.info("Running %s for %s", model_id, target)
    try:
        result = engine.run(ticker, session, **options)
    except AnalysisError as e:
        if raise_errors:
            raise
        session.record_error(model_id, target, e)
        result = error_result(model_id, target, e)
    except Exception as e:
        if raise_errors:
            raise
        logger.exception("Unexpected failure in %s", model_id)
        session.record_error(model_id, target, e)
        result = error_result(model_id, target, e)

    session.store_result(result)
    return result


def run_engines(
    session: AnalysisSession,
    tickers: Iterable[str],
    model_ids: Iterable[str] | None = None,
    registry: EngineRegistry | None = None,
    **options,
) -> dict[tuple[str, str], AnalysisResult]:
    """Run every named engine (all registered by default) for every ticker.

    Portfolio-level engines run once regardless of the ticker list.
    """
    registry = registry or get_registry()
    names = list(model_ids) if model_ids is not None else registry.names()
    tickers = list(tickers)

    results = {}
    for name in names:
        engine = registry.get(name)
        if engine is None:
            logger.warning("Engine not found: %s", name)
            continue
        if engine.portfolio_level:
            r = run_engine(session, name, None, registry=registry, **options)
            results[(r.model_id, r.ticker)] = r
            continue
        for ticker in tickers:
            r = run_engine(session, name, ticker, registry=registry, **options)
            results[(r.model_id, r.ticker)] = r
    return results
