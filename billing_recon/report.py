"""Reconciliation pass reports

Each pass can be written out as a JSON report (the latest pass only) and
appended as one row to a CSV history, which makes it easy to see how often
the computed figure drifts from the server summary over time.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

import pandas as pd

from billing_recon.models import ReconciliationReport

# Logging
LOGGER = logging.getLogger(__name__)

HISTORY_COLUMNS = [
    "generated_at",
    "sequence",
    "window_start",
    "window_end",
    "computed_total",
    "server_total",
    "display_total",
    "found_any_in_window",
    "discrepancy_flagged",
    "difference",
    "threshold",
    "truncated",
    "pages_fetched",
    "transactions_scanned",
    "skipped_unparseable",
    "error",
]


def _fmt(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def build_pass_report(report: ReconciliationReport, generated_at: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Flatten a :class:`ReconciliationReport` into a JSON-friendly dictionary.

    Decimals are rendered as strings so no precision is lost.
    """
    computed = report.computed
    window = computed.window
    generated_at = generated_at or datetime.now(timezone.utc)
    return {
        "generated_at": generated_at.isoformat(),
        "sequence": report.sequence,
        "window_start": window.start.isoformat() if window else None,
        "window_end": window.end.isoformat() if window else None,
        "computed_total": _fmt(computed.total),
        "server_total": _fmt(report.server_total),
        "display_total": _fmt(report.display_total),
        "found_any_in_window": computed.found_any_in_window,
        "discrepancy_flagged": report.discrepancy_flagged,
        "difference": _fmt(report.outcome.difference),
        "threshold": _fmt(report.outcome.threshold),
        "truncated": computed.truncated,
        "pages_fetched": computed.pages_fetched,
        "transactions_scanned": computed.transactions_scanned,
        "skipped_unparseable": computed.skipped_unparseable,
        "error": computed.error,
    }


def export_pass_report(
    metrics: Dict[str, Any],
    output_path: str | Path,
) -> Path:
    """
    Export a pass report to a JSON file.

    Parameters
    metrics : Dict[str, Any]
        The dictionary from build_pass_report
    output_path : str | Path
        Path where to save the JSON file

    Returns
    Path
        The path of the exported file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(metrics, f, indent=2, default=str)

    LOGGER.info("📊 Reconciliation report exported to %s", output_path)
    return output_path


def append_pass_history(
    metrics: Dict[str, Any],
    history_path: str | Path,
) -> pd.DataFrame:
    """
    Append one pass to the CSV history and return the full history.

    Parameters
    metrics : Dict[str, Any]
        The dictionary from build_pass_report
    history_path : str | Path
        CSV file; created with a header on first use

    Returns
    pandas.DataFrame
        Every recorded pass, oldest first
    """
    history_path = Path(history_path)
    history_path.parent.mkdir(parents=True, exist_ok=True)

    values = {col: metrics.get(col) for col in HISTORY_COLUMNS}
    row = pd.DataFrame(
        [{col: "" if value is None else str(value) for col, value in values.items()}],
        columns=HISTORY_COLUMNS,
    )

    if history_path.exists() and history_path.stat().st_size > 0:
        history = pd.read_csv(history_path, dtype=str, keep_default_na=False)
        history = pd.concat([history, row], ignore_index=True)
    else:
        history = row

    history.to_csv(history_path, index=False)
    LOGGER.info("Reconciliation history now has %d pass(es) at %s", len(history), history_path)
    return history


def load_pass_history(history_path: str | Path) -> pd.DataFrame:
    """Read the pass history back with typed numeric and boolean columns."""
    history = pd.read_csv(history_path)
    for col in ("computed_total", "server_total", "display_total", "difference", "threshold"):
        history[col] = pd.to_numeric(history[col], errors="coerce")
    return history
