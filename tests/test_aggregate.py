"""Aggregator behaviour: window filtering, paging termination, failures."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billing_recon.aggregate import (
    COMPUTATION_FAILED_ERROR,
    NO_CURRENT_MONTH_ERROR,
    MonthlySpendAggregator,
    PassSuperseded,
    compute_monthly_spend,
)
from billing_recon.config_schema import validate_config
from billing_recon.ledger_client import AuthError, NetworkError, parse_ledger_page
from billing_recon.models import LedgerPage

from conftest import EndlessLedger, FailingLedger, ListLedger, make_txn

UTC = timezone.utc


def _aggregator(fetcher, **kwargs) -> MonthlySpendAggregator:
    kwargs.setdefault("tz", UTC)
    return MonthlySpendAggregator(fetcher, **kwargs)


def test_debit_counted_credit_ignored(march_now: datetime) -> None:
    ledger = ListLedger([
        make_txn("t2", "50.00", "2024-03-06T09:00:00Z", "credit"),
        make_txn("t1", "12.34", "2024-03-05T09:00:00Z", "debit"),
    ])
    result = _aggregator(ledger).compute(march_now)

    assert result.total == Decimal("12.34")
    assert result.found_any_in_window is True
    assert result.error is None
    assert result.truncated is False


def test_empty_ledger_reports_soft_error(march_now: datetime) -> None:
    ledger = ListLedger([])
    result = _aggregator(ledger).compute(march_now)

    assert result.total == Decimal("0.00")
    assert result.found_any_in_window is False
    assert result.error == NO_CURRENT_MONTH_ERROR
    assert ledger.calls == [(100, 0)]


def test_only_old_transactions_reports_soft_error(march_now: datetime) -> None:
    ledger = ListLedger([make_txn("old", "9.99", "2024-02-29T23:59:59Z")])
    result = _aggregator(ledger).compute(march_now)

    assert result.total == Decimal("0.00")
    assert result.error == NO_CURRENT_MONTH_ERROR


def test_window_edges_are_inclusive(march_now: datetime) -> None:
    ledger = ListLedger([
        make_txn("after", "100.00", "2024-04-01T00:00:00Z"),
        make_txn("last", "1.00", "2024-03-31T23:59:59.999Z"),
        make_txn("first", "2.00", "2024-03-01T00:00:00Z"),
        make_txn("before", "100.00", "2024-02-29T23:59:59.999Z"),
    ])
    assert _aggregator(ledger).compute(march_now).total == Decimal("3.00")


def test_negative_amount_adds_magnitude(march_now: datetime) -> None:
    ledger = ListLedger([
        make_txn("legacy", "-7.25", "2024-03-10T00:00:00Z", None),
        make_txn("typed", "-2.75", "2024-03-11T00:00:00Z", "debit"),
    ])
    assert _aggregator(ledger).compute(march_now).total == Decimal("10.00")


def test_unix_second_timestamps_are_accepted(march_now: datetime) -> None:
    # 1710000000 is 2024-03-09T16:00:00Z
    ledger = ListLedger([make_txn("unix", "5.00", "1710000000")])
    assert _aggregator(ledger).compute(march_now).total == Decimal("5.00")


def test_unparseable_dates_are_skipped_without_marking_found(march_now: datetime) -> None:
    ledger = ListLedger([
        make_txn("bad", "10.00", "garbage"),
        make_txn("blank", "10.00", ""),
    ])
    result = _aggregator(ledger).compute(march_now)

    assert result.total == Decimal("0.00")
    assert result.found_any_in_window is False
    assert result.skipped_unparseable == 2
    assert result.error == NO_CURRENT_MONTH_ERROR


def test_rounding_happens_once_at_the_end(march_now: datetime) -> None:
    ledger = ListLedger([
        make_txn(f"t{i}", "0.004", "2024-03-05T00:00:00Z") for i in range(3)
    ])
    # per-record rounding would give 0.00; cumulative 0.012 rounds to 0.01
    assert _aggregator(ledger).compute(march_now).total == Decimal("0.01")


def test_walks_all_pages_until_has_more_false(march_now: datetime) -> None:
    txns = [make_txn(f"t{i}", "1.00", "2024-03-05T00:00:00Z") for i in range(250)]
    ledger = ListLedger(txns)
    result = _aggregator(ledger).compute(march_now)

    assert result.total == Decimal("250.00")
    assert result.pages_fetched == 3
    assert [offset for _, offset in ledger.calls] == [0, 100, 200]
    assert result.truncated is False


def test_page_cap_bounds_work_and_marks_truncated(march_now: datetime) -> None:
    ledger = EndlessLedger("2024-03-05T00:00:00Z", amount="1.00")
    result = _aggregator(ledger).compute(march_now)

    assert ledger.calls == 20
    assert result.pages_fetched == 20
    assert result.transactions_scanned == 2000
    assert result.total == Decimal("2000.00")
    assert result.truncated is True
    assert result.error is None


def test_cap_not_reported_when_ledger_ends_on_last_page(march_now: datetime) -> None:
    txns = [make_txn(f"t{i}", "1.00", "2024-03-05T00:00:00Z") for i in range(200)]
    result = _aggregator(ListLedger(txns), max_pages=2).compute(march_now)

    assert result.pages_fetched == 2
    assert result.truncated is False


def test_unbounded_scan_reads_to_exhaustion(march_now: datetime) -> None:
    txns = [make_txn(f"t{i}", "1.00", "2024-03-05T00:00:00Z") for i in range(2500)]
    result = _aggregator(ListLedger(txns), max_pages=None).compute(march_now)

    assert result.total == Decimal("2500.00")
    assert result.pages_fetched == 25


def test_stop_before_window_exits_after_older_page(march_now: datetime) -> None:
    txns = [make_txn("new", "3.00", "2024-03-05T00:00:00Z")]
    txns += [make_txn(f"old{i}", "1.00", "2024-01-05T00:00:00Z") for i in range(300)]
    ledger = ListLedger(txns)
    result = _aggregator(ledger, stop_before_window=True).compute(march_now)

    assert result.total == Decimal("3.00")
    assert len(ledger.calls) == 1


def test_idempotent_for_fixed_now(march_now: datetime) -> None:
    txns = [make_txn(f"t{i}", "1.10", f"2024-03-{(i % 28) + 1:02d}T00:00:00Z") for i in range(150)]
    ledger = ListLedger(txns)
    aggregator = _aggregator(ledger)

    assert aggregator.compute(march_now) == aggregator.compute(march_now)


@pytest.mark.parametrize("error", [NetworkError("down"), AuthError("expired")])
def test_fetch_failure_reports_no_partial_total(march_now: datetime, error: Exception) -> None:
    first = LedgerPage(
        transactions=(make_txn("t1", "5.00", "2024-03-05T00:00:00Z"),),
        has_more=True,
    )
    result = _aggregator(FailingLedger([first], error)).compute(march_now)

    assert result.total is None
    assert result.failed is True
    assert result.error == COMPUTATION_FAILED_ERROR
    assert result.pages_fetched == 1


def test_should_continue_aborts_pass(march_now: datetime) -> None:
    ledger = EndlessLedger("2024-03-05T00:00:00Z")
    checks = iter([True, True, False])

    with pytest.raises(PassSuperseded):
        _aggregator(ledger).compute(march_now, should_continue=lambda: next(checks))
    assert ledger.calls == 2


def test_window_fixed_for_the_whole_pass() -> None:
    """Filtering uses the window derived from ``now`` at call time only."""
    now = datetime(2024, 1, 31, 23, 59, 59, tzinfo=UTC)
    ledger = ListLedger([make_txn("feb", "4.00", "2024-02-01T00:00:01Z"),
                         make_txn("jan", "6.00", "2024-01-31T23:00:00Z")])
    result = _aggregator(ledger).compute(now)

    assert result.total == Decimal("6.00")
    assert result.window.end == datetime(2024, 1, 31, 23, 59, 59, 999000, tzinfo=UTC)


def test_invalid_page_settings_rejected() -> None:
    with pytest.raises(ValueError):
        MonthlySpendAggregator(ListLedger([]), page_size=0)
    with pytest.raises(ValueError):
        MonthlySpendAggregator(ListLedger([]), max_pages=0)


def test_compute_monthly_spend_shortcut(march_now: datetime) -> None:
    ledger = ListLedger([make_txn("t1", "12.34", "2024-03-05T00:00:00Z")])
    result = compute_monthly_spend(ledger, march_now, tz=UTC)
    assert result.total == Decimal("12.34")


# ---------------------------  configured classification  ---------------
def test_configured_debit_marker_matches_ledger_records(march_now: datetime) -> None:
    page = parse_ledger_page({
        "transactions": [
            {"id": "c1", "type": "charge", "amount": "9.99", "createdAt": "2024-03-05T10:00:00Z"},
            {"id": "c0", "type": "topup", "amount": "50.00", "createdAt": "2024-03-04T10:00:00Z"},
        ],
        "hasMore": False,
    })
    config = validate_config({
        "ledger_api": {"base_url": "https://console.example.com/api", "token": "t"},
        "classification": {"debit_marker": "charge"},
    })

    result = MonthlySpendAggregator.from_config(ListLedger(page.transactions), config, tz=UTC).compute(march_now)

    assert result.total == Decimal("9.99")


def test_local_zone_counts_spend_on_first_day_after_dst_change(berlin_local_time) -> None:
    """00:30 on 1 October Berlin time belongs to October."""
    ledger = ListLedger([make_txn("t1", "5.00", "2024-09-30T22:30:00Z")])

    result = MonthlySpendAggregator(ledger, tz=None).compute(datetime(2024, 10, 30, 12))

    assert result.total == Decimal("5.00")
    assert result.found_any_in_window is True
