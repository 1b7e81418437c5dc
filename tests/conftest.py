"""Shared fixtures: in-memory ledgers and a fake HTTP session."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from billing_recon.models import LedgerPage, Transaction


def make_txn(
    txn_id: str,
    amount: str,
    created_at: str,
    txn_type: Optional[str] = "debit",
) -> Transaction:
    return Transaction(id=txn_id, type=txn_type, amount=Decimal(amount), created_at=created_at)


class ListLedger:
    """Serves a fixed list of transactions page by page, newest first."""

    def __init__(self, transactions: List[Transaction]) -> None:
        self.transactions = list(transactions)
        self.calls: List[tuple] = []

    def fetch(self, page_size: int, offset: int) -> LedgerPage:
        self.calls.append((page_size, offset))
        chunk = self.transactions[offset:offset + page_size]
        return LedgerPage(
            transactions=tuple(chunk),
            has_more=offset + page_size < len(self.transactions),
        )


class EndlessLedger:
    """Every page is full and claims more data exists."""

    def __init__(self, created_at: str, amount: str = "1.00") -> None:
        self.created_at = created_at
        self.amount = amount
        self.calls = 0

    def fetch(self, page_size: int, offset: int) -> LedgerPage:
        self.calls += 1
        chunk = tuple(
            make_txn(f"t{offset + i}", self.amount, self.created_at) for i in range(page_size)
        )
        return LedgerPage(transactions=chunk, has_more=True)


class FailingLedger:
    """Returns ``pages`` then raises ``error`` on the next fetch."""

    def __init__(self, pages: List[LedgerPage], error: Exception) -> None:
        self.pages = list(pages)
        self.error = error

    def fetch(self, page_size: int, offset: int) -> LedgerPage:
        if self.pages:
            return self.pages.pop(0)
        raise self.error


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Records GET calls and answers from a queue of responses or exceptions."""

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def march_now() -> datetime:
    """20 March 2024, noon UTC."""
    return datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def berlin_local_time(monkeypatch):
    """Run the test with the process local zone set to Europe/Berlin."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    monkeypatch.setenv("TZ", "Europe/Berlin")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()
