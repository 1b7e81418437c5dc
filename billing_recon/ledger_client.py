"""Fetch wallet transactions and the monthly billing summary over HTTP

:class:`LedgerClient` wraps a ``requests.Session`` around the platform API.
Each call returns clean model objects; any transport or authorization
problem raises a dedicated :class:`LedgerClientError` subclass so that the
caller can decide what to do.  Nothing is retried here.

The ledger is expected to be served newest first.  The aggregator relies on
that ordering for its page cap to be a good approximation, but the client
cannot verify it.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import requests

from billing_recon.models import BillingSummary, LedgerPage, Transaction

# Logging
LOGGER = logging.getLogger(__name__)

DEFAULT_TRANSACTIONS_PATH = "/payments/wallet/transactions"
DEFAULT_SUMMARY_PATH = "/payments/billing/summary"


class LedgerClientError(Exception):
    """Base class for every failure raised by the ledger client."""
    pass


class NetworkError(LedgerClientError):
    """Transport failure or unexpected HTTP status."""
    pass


class AuthError(LedgerClientError):
    """Missing credentials or a 401/403 from the API."""
    pass


class LedgerSchemaError(LedgerClientError, ValueError):
    """Raised when a response body does not have the expected shape"""
    pass


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def to_decimal(value: object) -> Optional[Decimal]:
    """Coerce a JSON number or numeric string to ``Decimal``; ``None`` if not finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def normalize_transaction(record: Mapping[str, Any]) -> Transaction:
    """
    Build a :class:`Transaction` from one raw ledger record

    Accepts both camelCase and snake_case keys.  Unreadable amounts become
    ``0``.  ``type`` is kept as sent (a non-string becomes ``None``) so a
    configured debit marker can match it; the classifier also consults the
    amount sign.  Integer timestamps are kept as digit
    strings for :func:`billing_recon.dates.parse_created_at`.
    """
    amount = to_decimal(record.get("amount"))
    if amount is None:
        amount = Decimal("0")

    raw_type = record.get("type")
    txn_type = raw_type.strip() if isinstance(raw_type, str) and raw_type.strip() else None

    created_raw = _first(record, "createdAt", "created_at")
    if isinstance(created_raw, str):
        created_at = created_raw
    elif isinstance(created_raw, int) and not isinstance(created_raw, bool):
        created_at = str(created_raw)
    else:
        created_at = ""

    balance_after = to_decimal(_first(record, "balanceAfter", "balance_after"))
    balance_before = to_decimal(_first(record, "balanceBefore", "balance_before"))
    if balance_before is None and balance_after is not None:
        balance_before = (balance_after - amount).quantize(Decimal("0.01"))

    description = record.get("description")
    payment_id = _first(record, "paymentId", "payment_id")
    currency = record.get("currency")

    return Transaction(
        id=str(record.get("id") if record.get("id") is not None else ""),
        type=txn_type,
        amount=amount,
        created_at=created_at,
        balance_after=balance_after,
        balance_before=balance_before,
        currency=currency if isinstance(currency, str) else "USD",
        description=description if isinstance(description, str) else "Unknown transaction",
        payment_id=payment_id if isinstance(payment_id, str) else None,
    )


def parse_ledger_page(payload: Any) -> LedgerPage:
    """Turn a decoded ``/wallet/transactions`` body into a :class:`LedgerPage`."""
    if not isinstance(payload, dict):
        raise LedgerSchemaError(
            f"Ledger response must be a JSON object, got {type(payload).__name__}"
        )

    records = payload.get("transactions")
    if not isinstance(records, list):
        LOGGER.warning("Ledger response has no transactions array; treating page as empty")
        records = []

    has_more = payload.get("hasMore")
    if has_more is None:
        pagination = payload.get("pagination")
        has_more = pagination.get("hasMore") if isinstance(pagination, dict) else False

    transactions = tuple(
        normalize_transaction(record) for record in records if isinstance(record, dict)
    )
    if len(transactions) != len(records):
        LOGGER.warning("Dropped %d non-object ledger records", len(records) - len(transactions))

    return LedgerPage(transactions=transactions, has_more=bool(has_more))


def parse_billing_summary(payload: Any) -> BillingSummary:
    """Read the summary either from the top level or from a ``summary`` object."""
    if not isinstance(payload, dict):
        raise LedgerSchemaError(
            f"Summary response must be a JSON object, got {type(payload).__name__}"
        )
    summary = payload.get("summary") if isinstance(payload.get("summary"), dict) else payload
    return BillingSummary(
        total_spent_this_month=to_decimal(summary.get("totalSpentThisMonth")),
        total_spent_all_time=to_decimal(summary.get("totalSpentAllTime")),
        monthly_estimate=to_decimal(summary.get("monthlyEstimate")),
    )


class LedgerClient:
    """HTTP client for the wallet ledger and billing summary endpoints."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        transactions_path: str = DEFAULT_TRANSACTIONS_PATH,
        summary_path: str = DEFAULT_SUMMARY_PATH,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.transactions_path = transactions_path
        self.summary_path = summary_path
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, api_config, session: Optional[requests.Session] = None) -> "LedgerClient":
        """Build a client from a ``LedgerApiConfig`` section."""
        return cls(
            base_url=api_config.base_url,
            token=api_config.token,
            transactions_path=api_config.transactions_path,
            summary_path=api_config.summary_path,
            timeout=api_config.timeout_seconds,
            session=session,
        )

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            raise AuthError("No API token configured for the ledger API")
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.token}",
        }

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = self._headers()
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"GET {path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthError(f"GET {path} was rejected ({response.status_code})")
        if not 200 <= response.status_code < 300:
            raise NetworkError(
                f"GET {path} failed ({response.status_code}): {response.text[:280]}"
            )

        try:
            return response.json()
        except ValueError as exc:
            raise LedgerSchemaError(f"GET {path} returned a non-JSON body") from exc

    def fetch(self, page_size: int, offset: int) -> LedgerPage:
        """
        Fetch one page of wallet transactions

        Parameters
        page_size : int
            Maximum number of transactions (``limit``)
        offset : int
            Number of transactions to skip

        Returns
        LedgerPage
            Empty with ``has_more=False`` once the ledger is exhausted

        Raises
        AuthError
            No token, or the API answered 401/403
        NetworkError
            Connection problem, timeout or any other non-2xx status
        LedgerSchemaError
            The body is not a JSON object
        """
        payload = self._get(self.transactions_path, {"limit": page_size, "offset": offset})
        page = parse_ledger_page(payload)
        LOGGER.debug(
            "Fetched %d transactions at offset %d (has_more=%s)",
            len(page.transactions), offset, page.has_more,
        )
        return page

    def fetch_summary(self) -> BillingSummary:
        """Fetch the server's precomputed monthly billing summary."""
        return parse_billing_summary(self._get(self.summary_path))
