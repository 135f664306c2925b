"""Typed records exchanged between the data layer and the analysis engines.

Every record is built once by the normalizer (or a test fixture) and treated
as immutable afterwards.  The only derived quantity that changes over time is
a holding's portfolio weight, which :class:`HoldingSet` recomputes from
quantity x price on every access instead of storing it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

PORTFOLIO = "PORTFOLIO"
NOT_APPLICABLE = "NOT APPLICABLE"
ANNUAL = "annual"


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, date) else value


# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FundamentalPeriod:
    """One reporting period of income, cash-flow and balance-sheet data."""

    symbol: str
    fiscal_period: str          # Q1..Q4 or "annual"
    fiscal_year: int | None
    period_start: date | None = None
    period_end: date | None = None
    revenue: float | None = None
    gross_profit: float | None = None
    operating_income: float | None = None
    net_income: float | None = None
    operating_cash_flow: float | None = None
    investing_cash_flow: float | None = None
    assets: float | None = None
    liabilities: float | None = None
    equity: float | None = None
    long_term_debt: float | None = None
    diluted_eps: float | None = None
    current_assets: float | None = None
    noncurrent_liabilities: float | None = None
    dividends_paid: float | None = None
    filing_date: date | None = None

    @property
    def is_annual(self) -> bool:
        return self.fiscal_period == ANNUAL

    @property
    def key(self) -> tuple:
        return (self.fiscal_year, self.fiscal_period)

    @property
    def sort_date(self) -> date:
        if self.period_end is not None:
            return self.period_end
        if self.period_start is not None:
            return self.period_start
        quarter = {"Q1": 3, "Q2": 6, "Q3": 9, "Q4": 12}.get(self.fiscal_period, 12)
        return date(self.fiscal_year or 1900, quarter, 28)

    @property
    def label(self) -> str:
        return f"{self.fiscal_period} {self.fiscal_year or ''}".strip()

    def to_dict(self) -> dict:
        return {k: _iso(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class PriceBar:
    symbol: str
    date: date
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> dict:
        return {k: _iso(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class DividendEvent:
    symbol: str
    pay_date: date | None
    ex_date: date | None
    cash_amount: float
    payments_per_year: int = 4

    def __post_init__(self) -> None:
        if self.cash_amount is None or self.cash_amount < 0:
            raise ValueError(f"{self.symbol}: dividend amount must be >= 0, got {self.cash_amount}")
        if self.payments_per_year <= 0:
            object.__setattr__(self, "payments_per_year", 4)

    def to_dict(self) -> dict:
        return {k: _iso(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class CompanyProfile:
    symbol: str
    name: str | None = None
    sic_code: int | None = None
    sic_description: str | None = None
    market_cap: float | None = None
    shares_outstanding: float | None = None
    employee_count: int | None = None
    beta: float | None = None
    price: float | None = None
    sector: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.symbol

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Holdings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Holding:
    symbol: str
    quantity: float
    last_price: float
    sector: str = "Other"

    @property
    def market_value(self) -> float:
        return float(self.quantity or 0) * float(self.last_price or 0)


class HoldingSet:
    """An immutable set of holdings with weights derived on demand.

    Weight = market value / total market value, or 1/N when the portfolio
    has no market value.  Mutating operations return a new set.
    """

    def __init__(self, holdings: Iterable[Holding] = ()):
        seen: dict[str, Holding] = {}
        for h in holdings:
            seen[h.symbol] = h
        self._holdings = tuple(seen.values())

    def __iter__(self) -> Iterator[Holding]:
        return iter(self._holdings)

    def __len__(self) -> int:
        return len(self._holdings)

    def __contains__(self, symbol: object) -> bool:
        return any(h.symbol == symbol for h in self._holdings)

    @property
    def symbols(self) -> list[str]:
        return [h.symbol for h in self._holdings]

    @property
    def total_value(self) -> float:
        return sum(h.market_value for h in self._holdings)

    def get(self, symbol: str) -> Holding | None:
        for h in self._holdings:
            if h.symbol == symbol:
                return h
        return None

    def sector_of(self, symbol: str) -> str | None:
        h = self.get(symbol)
        return h.sector if h else None

    def weight(self, symbol: str) -> float:
        h = self.get(symbol)
        if h is None:
            return 0.0
        total = self.total_value
        if total > 0:
            return h.market_value / total
        return 1.0 / len(self._holdings)

    def weights(self) -> dict[str, float]:
        return {h.symbol: self.weight(h.symbol) for h in self._holdings}

    def with_holding(self, holding: Holding) -> HoldingSet:
        others = [h for h in self._holdings if h.symbol != holding.symbol]
        return HoldingSet([*others, holding])

    def without(self, symbol: str) -> HoldingSet:
        return HoldingSet(h for h in self._holdings if h.symbol != symbol)

    def to_records(self) -> list[dict]:
        return [{**asdict(h), "weight": self.weight(h.symbol)} for h in self._holdings]


# ---------------------------------------------------------------------------
# Output record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnalysisResult:
    """Output contract of every engine.

    ``scalar_metrics`` holds named scalars, ``derived_series`` named
    time-ordered sequences, ``details`` any nested tables (per-company rows,
    SWOT lists, ...).  Top-level mappings are read-only views.
    """

    model_id: str
    ticker: str
    scalar_metrics: Mapping[str, Any] = field(default_factory=dict)
    derived_series: Mapping[str, list] = field(default_factory=dict)
    verdict: str | None = None
    warnings: tuple[str, ...] = ()
    applicable: bool = True
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "scalar_metrics", MappingProxyType(dict(self.scalar_metrics)))
        object.__setattr__(
            self, "derived_series",
            MappingProxyType({k: list(v) for k, v in self.derived_series.items()}),
        )
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))
        object.__setattr__(self, "warnings", tuple(self.warnings))

    @classmethod
    def not_applicable(
        cls,
        model_id: str,
        ticker: str,
        reason: str,
        verdict: str = NOT_APPLICABLE,
        **scalar_metrics: Any,
    ) -> AnalysisResult:
        return cls(
            model_id=model_id,
            ticker=ticker,
            scalar_metrics=scalar_metrics,
            verdict=verdict,
            warnings=(reason,),
            applicable=False,
        )

    @property
    def is_portfolio(self) -> bool:
        return self.ticker == PORTFOLIO

    def metric(self, name: str, default: Any = None) -> Any:
        return self.scalar_metrics.get(name, default)

    def to_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "ticker": self.ticker,
            "scalar_metrics": dict(self.scalar_metrics),
            "derived_series": {k: list(v) for k, v in self.derived_series.items()},
            "verdict": self.verdict,
            "warnings": list(self.warnings),
            "applicable": self.applicable,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict) -> AnalysisResult:
        return cls(
            model_id=data["model_id"],
            ticker=data["ticker"],
            scalar_metrics=data.get("scalar_metrics") or {},
            derived_series=data.get("derived_series") or {},
            verdict=data.get("verdict"),
            warnings=tuple(data.get("warnings") or ()),
            applicable=data.get("applicable", True),
            details=data.get("details") or {},
        )
