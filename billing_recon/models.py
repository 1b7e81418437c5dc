"""Value types shared by the ledger client, the aggregator and the comparator.

Everything here is a frozen dataclass: a transaction fetched from the ledger
is never mutated, and a finished pass result can be compared for equality
(two passes over the same ledger with the same ``now`` are equal).
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

DEBIT = "debit"


@dataclass(frozen=True)
class Transaction:
    """Single wallet ledger entry as normalized by the ledger client."""

    id: str
    type: Optional[str]
    amount: Decimal
    created_at: str
    balance_after: Optional[Decimal] = None
    balance_before: Optional[Decimal] = None
    currency: str = "USD"
    description: str = "Unknown transaction"
    payment_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerPage:
    """One slice of the ledger, in server order (newest first)."""

    transactions: Tuple[Transaction, ...] = ()
    has_more: bool = False

    @property
    def is_empty(self) -> bool:
        return len(self.transactions) == 0


@dataclass(frozen=True)
class MonthWindow:
    """Inclusive bounds of a calendar month in a specific time zone."""

    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


@dataclass(frozen=True)
class MonthlySpendResult:
    """Outcome of one aggregation pass.

    ``total`` is ``None`` only after a hard failure.  ``error`` carries a
    soft or hard reason; ``truncated`` is set when the page cap stopped the
    scan while the ledger still reported more data.
    """

    total: Optional[Decimal]
    found_any_in_window: bool
    error: Optional[str] = None
    truncated: bool = False
    pages_fetched: int = 0
    transactions_scanned: int = 0
    skipped_unparseable: int = 0
    window: Optional[MonthWindow] = None

    @property
    def failed(self) -> bool:
        return self.total is None


@dataclass(frozen=True)
class ReconciliationOutcome:
    discrepancy_flagged: bool
    difference: Optional[Decimal] = None
    threshold: Optional[Decimal] = None


@dataclass(frozen=True)
class BillingSummary:
    """Server-side monthly aggregate; only ``total_spent_this_month`` is compared."""

    total_spent_this_month: Optional[Decimal] = None
    total_spent_all_time: Optional[Decimal] = None
    monthly_estimate: Optional[Decimal] = None


@dataclass(frozen=True)
class ReconciliationReport:
    """What the billing page consumes after a full reconciliation."""

    computed: MonthlySpendResult
    outcome: ReconciliationOutcome
    server_total: Optional[Decimal] = None
    sequence: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def discrepancy_flagged(self) -> bool:
        return self.outcome.discrepancy_flagged

    @property
    def display_total(self) -> Optional[Decimal]:
        """Computed total, or the server figure when computation hard-failed."""
        if self.computed.total is not None:
            return self.computed.total
        return self.server_total

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["discrepancy_flagged"] = self.discrepancy_flagged
        data["display_total"] = self.display_total
        return data
