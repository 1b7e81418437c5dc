"""Top-level orchestrator for the monthly spend reconciliation

Fetches the server summary, recomputes the month's spend from the ledger,
compares the two, raises alerts and writes the pass report.  The result is
always something the billing page can show: the computed total, or the
server figure when the ledger could not be read.

Usage::

    python -m billing_recon.pipeline --config config/recon_config.yaml
    python -m billing_recon.pipeline --now 2024-02-20T12:00:00 --no-summary
"""

from __future__ import annotations

import argparse
import itertools
import logging
import sys
import threading
from datetime import datetime, tzinfo
from decimal import Decimal
from typing import Callable, Optional

from pydantic import ValidationError

from billing_recon import configure_logging
from billing_recon.aggregate import (
    DEFAULT_MAX_PAGES,
    DEFAULT_PAGE_SIZE,
    MonthlySpendAggregator,
    PassSuperseded,
)
from billing_recon.alerting import AlertConfig, AlertManager
from billing_recon.config import load_config_validated, resolve_timezone
from billing_recon.config_schema import ReconConfig
from billing_recon.ledger_client import LedgerClient, LedgerClientError
from billing_recon.models import ReconciliationReport
from billing_recon.reconcile import (
    DEFAULT_ABSOLUTE_TOLERANCE,
    DEFAULT_RELATIVE_TOLERANCE,
    compare_monthly_totals,
)
from billing_recon.report import append_pass_history, build_pass_report, export_pass_report

# Logging
LOGGER = logging.getLogger(__name__)


def reconcile_monthly_spend(
    fetcher,
    now: Optional[datetime] = None,
    server_total: Optional[Decimal] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_pages: Optional[int] = DEFAULT_MAX_PAGES,
    tz: Optional[tzinfo] = None,
    absolute_tolerance: Decimal = DEFAULT_ABSOLUTE_TOLERANCE,
    relative_tolerance: Decimal = DEFAULT_RELATIVE_TOLERANCE,
) -> ReconciliationReport:
    """
    Recompute this month's spend and compare it with ``server_total``

    Parameters
    fetcher : object
        Anything with ``fetch(page_size, offset) -> LedgerPage``
    now : datetime, optional
        Reference instant; the real current time when omitted
    server_total : Decimal, optional
        ``totalSpentThisMonth`` from the billing summary, if available

    Returns
    ReconciliationReport
        The computed result and the discrepancy flag
    """
    aggregator = MonthlySpendAggregator(fetcher, page_size=page_size, max_pages=max_pages, tz=tz)
    computed = aggregator.compute(now)
    outcome = compare_monthly_totals(
        computed.total, server_total, absolute_tolerance, relative_tolerance
    )
    return ReconciliationReport(computed=computed, outcome=outcome, server_total=server_total)


class MonthlySpendReconciler:
    """Config-driven reconciliation bound to one ledger client."""

    def __init__(
        self,
        client: LedgerClient,
        config: ReconConfig,
        alert_manager: Optional[AlertManager] = None,
    ) -> None:
        self.client = client
        self.config = config
        self.alert_manager = alert_manager
        self.aggregator = MonthlySpendAggregator.from_config(
            client, config, tz=resolve_timezone(config)
        )

    def fetch_server_total(self) -> Optional[Decimal]:
        """Server ``totalSpentThisMonth``; ``None`` when it cannot be fetched."""
        if not self.config.reconciliation.fetch_server_summary:
            return None
        try:
            summary = self.client.fetch_summary()
        except LedgerClientError as exc:
            LOGGER.warning("Billing summary unavailable, skipping comparison: %s", exc)
            return None
        return summary.total_spent_this_month

    def reconcile(
        self,
        now: Optional[datetime] = None,
        should_continue: Optional[Callable[[], bool]] = None,
        sequence: Optional[int] = None,
    ) -> ReconciliationReport:
        """Run one full pass: summary, aggregation, comparison, alerts."""
        server_total = self.fetch_server_total()
        computed = self.aggregator.compute(now, should_continue=should_continue)

        settings = self.config.reconciliation
        outcome = compare_monthly_totals(
            computed.total,
            server_total,
            settings.absolute_tolerance,
            settings.relative_tolerance,
        )
        report = ReconciliationReport(
            computed=computed,
            outcome=outcome,
            server_total=server_total,
            sequence=sequence,
        )
        self._raise_alerts(report)
        return report

    def _raise_alerts(self, report: ReconciliationReport) -> None:
        if self.alert_manager is None:
            return
        self.alert_manager.notify(
            report, include_discrepancy=self.config.reconciliation.alert_on_discrepancy
        )


class ReconciliationRunner:
    """Keeps only the newest pass when reconciliations overlap.

    Every call to :meth:`run` takes the next sequence number.  A pass that
    has been overtaken stops at its next page boundary and its report is
    never published as :attr:`latest`.
    """

    def __init__(self, reconciler: MonthlySpendReconciler) -> None:
        self.reconciler = reconciler
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._newest = 0
        self.latest: Optional[ReconciliationReport] = None

    def next_sequence(self) -> int:
        with self._lock:
            self._newest = next(self._counter)
            return self._newest

    def is_current(self, sequence: int) -> bool:
        with self._lock:
            return sequence == self._newest

    def run(self, now: Optional[datetime] = None) -> Optional[ReconciliationReport]:
        """Run a pass; ``None`` when a newer pass superseded this one."""
        sequence = self.next_sequence()
        try:
            report = self.reconciler.reconcile(
                now,
                should_continue=lambda: self.is_current(sequence),
                sequence=sequence,
            )
        except PassSuperseded as exc:
            LOGGER.info("Reconciliation pass %d discarded: %s", sequence, exc)
            return None

        with self._lock:
            if sequence != self._newest:
                LOGGER.info("Reconciliation pass %d finished after a newer pass started; discarded", sequence)
                return None
            self.latest = report
        return report


def run_reconciliation(
    config_path: str = "config/recon_config.yaml",
    now: Optional[datetime] = None,
    fetch_summary: bool = True,
    report_path: Optional[str] = None,
    client: Optional[LedgerClient] = None,
) -> ReconciliationReport:
    """
    Execute one configured reconciliation pass and write its outputs

    Raises
    FileNotFoundError
        If the config file does not exist
    ValidationError
        If the configuration is invalid
    """
    config = load_config_validated(config_path)
    LOGGER.info("Loaded and validated configuration from %s", config_path)
    if not fetch_summary:
        config.reconciliation.fetch_server_summary = False

    client = client or LedgerClient.from_config(config.ledger_api)
    alert_manager = AlertManager(AlertConfig.from_channel_config(config.alerting))
    reconciler = MonthlySpendReconciler(client, config, alert_manager)

    report = reconciler.reconcile(now)

    metrics = build_pass_report(report)
    output = report_path or config.reporting.report_path
    if output:
        export_pass_report(metrics, output)
    if config.reporting.history_path:
        append_pass_history(metrics, config.reporting.history_path)
    return report


def _parse_now(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO timestamp: {value!r}") from exc


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile this month's wallet spend")
    parser.add_argument(
        "--config",
        default="config/recon_config.yaml",
        help="Config file path (default: config/recon_config.yaml)",
    )
    parser.add_argument(
        "--now",
        type=_parse_now,
        help="Reference time as ISO-8601 (default: current time)",
    )
    parser.add_argument(
        "--no-summary",
        action="store_true",
        help="Do not fetch the server summary; only compute the total",
    )
    parser.add_argument(
        "--report",
        help="Override the JSON report path",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        report = run_reconciliation(
            args.config,
            now=args.now,
            fetch_summary=not args.no_summary,
            report_path=args.report,
        )
    except (FileNotFoundError, ValidationError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    except Exception:
        LOGGER.exception("Unexpected error")
        return 1

    computed = report.computed
    LOGGER.info("=" * 60)
    LOGGER.info("Monthly Spend Reconciliation Complete")
    LOGGER.info("=" * 60)
    LOGGER.info("Computed total: %s", computed.total)
    LOGGER.info("Server total: %s", report.server_total)
    LOGGER.info("Display total: %s", report.display_total)
    LOGGER.info("Discrepancy flagged: %s", report.discrepancy_flagged)
    if computed.error:
        LOGGER.info("Note: %s", computed.error)
    if computed.truncated:
        LOGGER.info("Scan truncated after %d pages", computed.pages_fetched)

    return 1 if computed.failed else 0


if __name__ == "__main__":
    sys.exit(main())
