"""Debit/credit classification for wallet transactions"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from billing_recon.models import DEBIT, Transaction


def is_debit(
    txn: Transaction,
    debit_marker: str = DEBIT,
    sign_fallback_untyped_only: bool = False,
) -> bool:
    """Return ``True`` when ``txn`` represents spend

    * ``type`` equal to ``debit_marker`` → debit
    * otherwise a negative ``amount`` → debit (older records were written
      without a populated ``type``)
    * anything else → credit

    With ``sign_fallback_untyped_only`` the sign is only consulted when
    ``type`` is missing, so an explicit ``"credit"`` always wins.
    """
    if txn.type == debit_marker:
        return True
    if sign_fallback_untyped_only and txn.type:
        return False
    try:
        return Decimal(txn.amount) < 0
    except (InvalidOperation, TypeError, ValueError):
        return False
