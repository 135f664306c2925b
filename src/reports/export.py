"""Export AnalysisResults as JSON or a sectioned CSV, and read them back.

CSV layout::

    Model,DCF Valuation
    Style,
    Date,2026-01-02 10:00
    Ticker,AAPL

    === Key Metrics ===
    Metric,Value,Formula / Source
    fair_value,187.52,
    ...

Sections are separated by a blank line.  Cells containing a comma, quote
or newline are quoted with inner quotes doubled.
"""

from __future__ import annotations

import csv
import io
import json
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

from src.records import AnalysisResult
from src.utils.logger import setup_logger

logger = setup_logger("export")

MODEL_NAMES = {
    "dcf": "DCF Valuation",
    "dividend": "Dividend Model",
    "technical": "Technical Analysis",
    "factor": "Factor Analysis",
    "earnings_quality": "Earnings Quality",
    "competitive": "Competitive Analysis",
    "esg": "ESG Analysis",
    "capital": "Capital Allocation",
    "attribution": "Sector Attribution",
}

METRICS_SECTION = "Key Metrics"
SERIES_SECTION = "Derived Series"
WARNINGS_SECTION = "Warnings"
SUMMARY_SECTION = "Summary"
_METRIC_HEADERS = ["Metric", "Value", "Formula / Source"]
_SUFFIXES = {"K": 1e3, "M": 1e6, "B": 1e9, "T": 1e12}


# ---------------------------------------------------------------------------
# Number formatting
# ---------------------------------------------------------------------------

def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and not math.isfinite(value))


def fmt_num(value: Optional[float], decimals: int = 2) -> str:
    """``1234.5`` -> ``"1,234.50"``; None/NaN -> ``"N/A"``."""
    if _missing(value):
        return "N/A"
    return f"{value:,.{decimals}f}"


def fmt_pct(value: Optional[float], decimals: int = 1, is_decimal: bool = True) -> str:
    """``0.1234`` -> ``"12.3%"``; pass ``is_decimal=False`` for values already in percent."""
    if _missing(value):
        return "N/A"
    return f"{value * 100 if is_decimal else value:.{decimals}f}%"


def fmt_ratio(value: Optional[float], decimals: int = 2) -> str:
    """``1.5`` -> ``"1.50x"``."""
    if _missing(value):
        return "N/A"
    return f"{value:.{decimals}f}x"


_FORMATTERS = {"num": fmt_num, "pct": fmt_pct, "ratio": fmt_ratio}


def parse_value(text: str) -> Any:
    """Inverse of the formatters: ``"12.3%"`` -> 0.123, ``"1.50x"`` -> 1.5,
    ``"$1.2B"`` -> 1.2e9, ``"N/A"``/empty -> None.  Non-numeric text is
    returned unchanged."""
    s = text.strip()
    if s in ("", "N/A", "None"):
        return None
    if s in ("True", "False"):
        return s == "True"
    scale = 1.0
    body = s.replace(",", "").replace("$", "")
    if body.endswith("%"):
        body, scale = body[:-1], 0.01
    elif body.endswith("x"):
        body = body[:-1]
    elif body[-1:] in _SUFFIXES:
        body, scale = body[:-1], _SUFFIXES[body[-1]]
    try:
        return float(body) * scale
    except ValueError:
        return s


def _cell(value: Any) -> Any:
    if _missing(value):
        return ""
    if isinstance(value, float):
        return repr(value)
    return value


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def to_json(result: AnalysisResult, indent: int = 2) -> str:
    return json.dumps(result.to_dict(), indent=indent, default=str)


def from_json(text: str) -> AnalysisResult:
    return AnalysisResult.from_dict(json.loads(text))


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

def to_csv(
    result: AnalysisResult,
    style: str = "",
    run_date: Optional[datetime] = None,
    formats: Optional[Mapping[str, str]] = None,
    formulas: Optional[Mapping[str, str]] = None,
) -> str:
    """Render *result* as a sectioned CSV string.

    Parameters
    ----------
    formats : mapping, optional
        Metric name -> ``"num"``, ``"pct"`` or ``"ratio"``; listed metrics are
        written formatted, the rest verbatim (floats at full precision).
    formulas : mapping, optional
        Metric name -> text for the ``Formula / Source`` column.
    """
    formats = formats or {}
    formulas = formulas or {}
    run_date = run_date or datetime.now()

    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(["Model", MODEL_NAMES.get(result.model_id, result.model_id)])
    w.writerow(["Style", style])
    w.writerow(["Date", run_date.strftime("%Y-%m-%d %H:%M")])
    w.writerow(["Ticker", result.ticker])
    w.writerow([])

    w.writerow([f"=== {SUMMARY_SECTION} ==="])
    w.writerow(["Verdict", result.verdict or ""])
    w.writerow(["Applicable", str(result.applicable)])
    w.writerow([])

    w.writerow([f"=== {METRICS_SECTION} ==="])
    w.writerow(_METRIC_HEADERS)
    for name, value in result.scalar_metrics.items():
        kind = formats.get(name)
        if kind and isinstance(value, (int, float)) and not isinstance(value, bool):
            shown = _FORMATTERS[kind](value)
        else:
            shown = _cell(value)
        w.writerow([name, shown, formulas.get(name, "")])

    if result.derived_series:
        w.writerow([])
        w.writerow([f"=== {SERIES_SECTION} ==="])
        names = list(result.derived_series)
        w.writerow(names)
        length = max(len(v) for v in result.derived_series.values())
        for i in range(length):
            w.writerow([
                _cell(result.derived_series[n][i]) if i < len(result.derived_series[n]) else ""
                for n in names
            ])

    if result.warnings:
        w.writerow([])
        w.writerow([f"=== {WARNINGS_SECTION} ==="])
        for warning in result.warnings:
            w.writerow([warning])

    return buf.getvalue()


def _sections(text: str) -> dict[str, list[list[str]]]:
    out: dict[str, list[list[str]]] = {}
    current = None
    for row in csv.reader(io.StringIO(text)):
        if not row or not any(row):
            current = None
            continue
        head = row[0]
        if head.startswith("=== ") and head.endswith(" ==="):
            current = head[4:-4]
            out[current] = []
        elif current is not None:
            out[current].append(row)
    return out


def parse_csv_metrics(text: str) -> dict[str, Any]:
    """Read the Key Metrics section back into a name -> value dict."""
    rows = _sections(text).get(METRICS_SECTION, [])
    if rows and rows[0] == _METRIC_HEADERS:
        rows = rows[1:]
    return {row[0]: parse_value(row[1] if len(row) > 1 else "") for row in rows}


def parse_csv_series(text: str) -> dict[str, list]:
    """Read the Derived Series section back into name -> list (trailing blanks dropped)."""
    rows = _sections(text).get(SERIES_SECTION, [])
    if not rows:
        return {}
    names, body = rows[0], rows[1:]
    series: dict[str, list] = {}
    for i, name in enumerate(names):
        col = [parse_value(r[i]) if i < len(r) else None for r in body]
        while col and col[-1] is None:
            col.pop()
        series[name] = col
    return series


def write_csv(result: AnalysisResult, path: str | Path, **kwargs) -> Path:
    """Write :func:`to_csv` output with a UTF-8 BOM so spreadsheets detect the encoding."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(to_csv(result, **kwargs), encoding="utf-8-sig")
    logger.info("CSV saved: %s", path)
    return path


def write_json(result: AnalysisResult, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(to_json(result))
    logger.info("JSON saved: %s", path)
    return path
