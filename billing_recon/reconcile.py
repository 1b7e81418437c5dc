# billing_recon/reconcile.py
import logging
from decimal import Decimal
from typing import Optional, Union

from billing_recon.models import ReconciliationOutcome

LOG = logging.getLogger(__name__)

DEFAULT_ABSOLUTE_TOLERANCE = Decimal("0.01")
DEFAULT_RELATIVE_TOLERANCE = Decimal("0.005")

Number = Union[Decimal, int, float, str]


def _as_decimal(value: Optional[Number]) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def discrepancy_threshold(
    server_total: Number,
    absolute_tolerance: Number = DEFAULT_ABSOLUTE_TOLERANCE,
    relative_tolerance: Number = DEFAULT_RELATIVE_TOLERANCE,
) -> Decimal:
    """Allowed difference: one cent or half a percent of the server figure, whichever is larger."""
    server = _as_decimal(server_total)
    return max(_as_decimal(absolute_tolerance), server * _as_decimal(relative_tolerance))


def compare_monthly_totals(
    computed_total: Optional[Number],
    server_total: Optional[Number],
    absolute_tolerance: Number = DEFAULT_ABSOLUTE_TOLERANCE,
    relative_tolerance: Number = DEFAULT_RELATIVE_TOLERANCE,
) -> ReconciliationOutcome:
    """
    Compare the recomputed monthly spend against the server summary.

    A discrepancy is flagged when ``|server - computed|`` is strictly greater
    than :func:`discrepancy_threshold`.  A missing value on either side is
    not evidence of disagreement, so nothing is flagged.  The comparison
    has no side effects; the caller decides what to surface.
    """
    computed = _as_decimal(computed_total)
    server = _as_decimal(server_total)
    if computed is None or server is None:
        LOG.debug("Reconciliation skipped – computed=%s server=%s", computed, server)
        return ReconciliationOutcome(discrepancy_flagged=False)

    diff = abs(server - computed)
    threshold = discrepancy_threshold(server, absolute_tolerance, relative_tolerance)
    flagged = diff > threshold

    if flagged:
        LOG.warning(
            "Monthly spend mismatch – computed=%s server=%s diff=%s threshold=%s",
            computed, server, diff, threshold,
        )
    else:
        LOG.info(
            "Monthly spend reconciled – diff=%s within threshold=%s", diff, threshold,
        )
    return ReconciliationOutcome(discrepancy_flagged=flagged, difference=diff, threshold=threshold)


def is_discrepancy(
    computed_total: Optional[Number],
    server_total: Optional[Number],
    absolute_tolerance: Number = DEFAULT_ABSOLUTE_TOLERANCE,
    relative_tolerance: Number = DEFAULT_RELATIVE_TOLERANCE,
) -> bool:
    return compare_monthly_totals(
        computed_total, server_total, absolute_tolerance, relative_tolerance
    ).discrepancy_flagged
