"""Base class and error types for all valuation engines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from src.pipeline.context import AnalysisSession
    from src.records import AnalysisResult


class AnalysisError(Exception):
    """Base class for engine failures."""


class MinimumDataError(AnalysisError):
    """Too few symbols produced usable data for the engine to run."""

    def __init__(
        self,
        model_id: str,
        required: int,
        available: int,
        missing_symbols: Iterable[str] = (),
        detail: str = "",
    ):
        self.model_id = model_id
        self.required = required
        self.available = available
        self.missing_symbols = list(missing_symbols)
        msg = f"{model_id}: need at least {required} symbols with usable data, got {available}"
        if self.missing_symbols:
            msg += f" (missing: {', '.join(self.missing_symbols)})"
        if detail:
            msg += f". {detail}"
        super().__init__(msg)


class BaseEngine(ABC):
    """Interface every engine implements.

    Each engine module exposes a pure ``compute_*`` function over normalized
    records.  The engine class is the thin orchestration layer: it gathers
    records from the session and hands them to the compute function.

    To add an engine:
    1. Create a module in src/analysis/ with a ``compute_*`` function
    2. Subclass BaseEngine, set ``model_id`` and implement ``run()``
    3. Register it in configs/settings.yaml under analysis.registry
    """

    #: Unique id used as key in the registry and on every AnalysisResult
    model_id: str = ""
    #: Portfolio-wide engines ignore the ticker argument
    portfolio_level: bool = False
    #: Single-ticker engines that also run portfolio-wide when ticker is None
    portfolio_mode: bool = False

    @abstractmethod
    def run(self, ticker: str | None, session: AnalysisSession, **options) -> AnalysisResult:
        """Fetch records through *session* and return the engine's result."""
        ...
