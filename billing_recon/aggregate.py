"""Recompute the current month's spend from the paginated wallet ledger

The aggregator walks ledger pages newest first, keeps the transactions whose
``createdAt`` falls inside the current calendar month and sums the magnitude
of the debits.  The month window is computed once per pass, so every page of
a pass is filtered against the same bounds even if the clock crosses
midnight while pages are being fetched.

The scan stops when a page is empty, when the ledger reports no more data,
or when ``max_pages`` pages have been read.  Hitting the cap is an accepted
approximation: it is reported through ``MonthlySpendResult.truncated`` and
a log warning, never as an error.
"""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from billing_recon.classify import is_debit
from billing_recon.dates import month_window, parse_created_at
from billing_recon.ledger_client import LedgerClientError
from billing_recon.models import DEBIT, MonthlySpendResult

# Logging
LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 20

NO_CURRENT_MONTH_ERROR = "no current-month transactions found"
COMPUTATION_FAILED_ERROR = "failed to calculate monthly spend"

CENT = Decimal("0.01")


class PassSuperseded(Exception):
    """Raised when a newer reconciliation pass has replaced the running one."""
    pass


class MonthlySpendAggregator:
    """Sum this month's debits from a ledger page fetcher.

    ``fetcher`` is anything with a ``fetch(page_size, offset) -> LedgerPage``
    method, normally a :class:`billing_recon.ledger_client.LedgerClient`.
    """

    def __init__(
        self,
        fetcher,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: Optional[int] = DEFAULT_MAX_PAGES,
        tz: Optional[tzinfo] = None,
        debit_marker: str = DEBIT,
        sign_fallback_untyped_only: bool = False,
        stop_before_window: bool = False,
    ) -> None:
        if page_size <= 0:
            raise ValueError(f"page_size must be positive, got {page_size}")
        if max_pages is not None and max_pages <= 0:
            raise ValueError(f"max_pages must be positive or None, got {max_pages}")
        self.fetcher = fetcher
        self.page_size = page_size
        self.max_pages = max_pages
        self.tz = tz
        self.debit_marker = debit_marker
        self.sign_fallback_untyped_only = sign_fallback_untyped_only
        self.stop_before_window = stop_before_window

    @classmethod
    def from_config(cls, fetcher, config, tz: Optional[tzinfo] = None) -> "MonthlySpendAggregator":
        """Build an aggregator from a validated ``ReconConfig``."""
        return cls(
            fetcher,
            page_size=config.aggregation.page_size,
            max_pages=config.aggregation.max_pages,
            tz=tz,
            debit_marker=config.classification.debit_marker,
            sign_fallback_untyped_only=config.classification.sign_fallback_untyped_only,
            stop_before_window=config.aggregation.stop_before_window,
        )

    def compute(
        self,
        now: Optional[datetime] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> MonthlySpendResult:
        """
        Run one aggregation pass

        Parameters
        now : datetime, optional
            Reference instant; defaults to the current time
        should_continue : callable, optional
            Checked before every page fetch; returning ``False`` aborts the
            pass with :class:`PassSuperseded`

        Returns
        MonthlySpendResult
            ``total`` rounded to cents, or ``None`` after a fetch failure
        """
        window = month_window(now, self.tz)

        offset = 0
        monthly_total = Decimal("0")
        found_any = False
        pages_fetched = 0
        scanned = 0
        skipped = 0
        truncated = False

        try:
            while True:
                if should_continue is not None and not should_continue():
                    raise PassSuperseded(
                        f"Pass superseded after {pages_fetched} page(s)"
                    )

                page = self.fetcher.fetch(self.page_size, offset)
                if page.is_empty:
                    break

                oldest = None
                for txn in page.transactions:
                    scanned += 1
                    created = parse_created_at(txn.created_at, self.tz)
                    if created is None:
                        skipped += 1
                        continue
                    if oldest is None or created < oldest:
                        oldest = created
                    if not window.contains(created):
                        continue
                    found_any = True
                    if is_debit(txn, self.debit_marker, self.sign_fallback_untyped_only):
                        monthly_total += abs(txn.amount)

                offset += self.page_size
                pages_fetched += 1

                if not page.has_more:
                    break
                if self.stop_before_window and oldest is not None and oldest < window.start:
                    LOGGER.debug("Page %d reached before %s; stopping early", pages_fetched, window.start)
                    break
                if self.max_pages is not None and pages_fetched >= self.max_pages:
                    truncated = True
                    LOGGER.warning(
                        "Stopped after the %d-page cap (%d transactions); monthly total may be incomplete",
                        self.max_pages, scanned,
                    )
                    break
        except LedgerClientError as exc:
            LOGGER.error("Monthly spend calculation failed after %d page(s): %s", pages_fetched, exc)
            return MonthlySpendResult(
                total=None,
                found_any_in_window=found_any,
                error=COMPUTATION_FAILED_ERROR,
                pages_fetched=pages_fetched,
                transactions_scanned=scanned,
                skipped_unparseable=skipped,
                window=window,
            )

        if skipped:
            LOGGER.info("Skipped %d transaction(s) with unparseable createdAt", skipped)

        error = None
        if not found_any:
            error = NO_CURRENT_MONTH_ERROR
            LOGGER.info("No transactions inside %s – %s", window.start.date(), window.end.date())

        total = monthly_total.quantize(CENT, rounding=ROUND_HALF_UP)
        LOGGER.info(
            "Monthly spend computed – total=%s pages=%d scanned=%d truncated=%s",
            total, pages_fetched, scanned, truncated,
        )
        return MonthlySpendResult(
            total=total,
            found_any_in_window=found_any,
            error=error,
            truncated=truncated,
            pages_fetched=pages_fetched,
            transactions_scanned=scanned,
            skipped_unparseable=skipped,
            window=window,
        )


def compute_monthly_spend(
    fetcher,
    now: Optional[datetime] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_pages: Optional[int] = DEFAULT_MAX_PAGES,
    tz: Optional[tzinfo] = None,
) -> MonthlySpendResult:
    """Functional shortcut for a single pass with default classification."""
    aggregator = MonthlySpendAggregator(fetcher, page_size=page_size, max_pages=max_pages, tz=tz)
    return aggregator.compute(now)
