"""Тесты сверки кассы."""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from pos_terminal.services.reconciliation import (
    ReconciliationCalculator,
    classify_variance,
    tender_breakdown,
)

from conftest import NOW

SHIFT_START = NOW - timedelta(hours=8)


def _sale(sale_id, total, payments=None, **extra):
    record = {"id": sale_id, "total": total, "created_at": (NOW - timedelta(hours=1)).isoformat()}
    if payments is not None:
        record["payments"] = payments
    record.update(extra)
    return record


def _mixed_day(backend):
    backend.put("sales", _sale("s1", "6000", [{"mode": "cash", "amount": 4000}, {"mode": "pos", "amount": 2000}], shift_id="sh1"))
    backend.put("sales", _sale("s2", "4000", [{"mode": "transfer", "amount": 1000}, {"mode": "cash", "amount": 2000}, {"mode": "card", "amount": 1000}], shift_id="sh1"))


def test_shortage_within_threshold_has_no_alert(reconciliation, backend):
    _mixed_day(backend)

    result = reconciliation.reconcile("sh1", "staff-1", SHIFT_START, 5500)

    assert result.expected_sales_total == Decimal("10000")
    assert result.expected_cash_total == Decimal("6000")
    assert result.expected_pos_total == Decimal("3000")
    assert result.expected_transfer_total == Decimal("1000")
    assert result.variance == Decimal("-500")
    assert result.alert is None
    assert result.sales_count == 2


def test_surplus_over_threshold_raises_medium_alert(reconciliation, backend):
    _mixed_day(backend)

    result = reconciliation.reconcile("sh1", "staff-1", SHIFT_START, 8200)

    assert result.variance == Decimal("2200")
    assert result.alert.severity == "medium"
    assert result.alert.expected == Decimal("6000")
    assert result.alert.shift_id == "sh1"


def test_large_shortage_is_high(reconciliation, backend):
    _mixed_day(backend)

    result = reconciliation.reconcile("sh1", "staff-1", SHIFT_START, 0)

    assert result.variance == Decimal("-6000")
    assert result.alert.severity == "high"


def test_classify_variance_boundaries():
    assert classify_variance(Decimal("1000")) is None
    assert classify_variance(Decimal("-1000")) is None
    assert classify_variance(Decimal("1000.01")) == "medium"
    assert classify_variance(Decimal("5000")) == "medium"
    assert classify_variance(Decimal("-5001")) == "high"


def test_sale_without_breakdown_counts_as_cash():
    assert tender_breakdown({"id": "s1", "total": "750"})["cash"] == Decimal("750")
    assert tender_breakdown({"id": "s2", "total": "750", "payment_method": "bank"})["transfer"] == Decimal("750")


def test_unknown_tender_counts_as_cash():
    buckets = tender_breakdown({"id": "s1", "total": "300", "payments": [{"mode": "voucher", "amount": "300"}]})
    assert buckets["cash"] == Decimal("300")


def test_no_sales_means_zero_expected(reconciliation):
    result = reconciliation.reconcile("sh1", "staff-1", SHIFT_START, 0)
    assert result.expected_cash_total == Decimal("0")
    assert result.variance == Decimal("0")
    assert result.alert is None


def test_legacy_sales_matched_by_cashier_window(reconciliation, backend):
    backend.put("sales", _sale("s1", "2500", cashier_id="staff-1"))
    backend.put("sales", _sale("s2", "900", cashier_id="staff-2"))
    old = _sale("s3", "400", cashier_id="staff-1")
    old["created_at"] = (SHIFT_START - timedelta(hours=1)).isoformat()
    backend.put("sales", old)

    result = reconciliation.reconcile("sh1", "staff-1", SHIFT_START, 2500)

    assert result.used_legacy_fallback is True
    assert result.sales_count == 1
    assert result.expected_cash_total == Decimal("2500")


def test_linked_sales_win_over_legacy_window(reconciliation, backend):
    backend.put("sales", _sale("s1", "1000", shift_id="sh1", cashier_id="staff-1"))
    backend.put("sales", _sale("s2", "900", cashier_id="staff-1"))

    result = reconciliation.reconcile("sh1", "staff-1", SHIFT_START, 1000)

    assert result.used_legacy_fallback is False
    assert result.expected_cash_total == Decimal("1000")


def test_legacy_fallback_disabled_for_newer_shifts(backend, clock):
    calculator = ReconciliationCalculator(
        backend,
        legacy_fallback_until=datetime(2026, 1, 1, tzinfo=timezone.utc),
        clock=clock,
    )
    backend.put("sales", _sale("s1", "2500", cashier_id="staff-1"))

    result = calculator.reconcile("sh1", "staff-1", SHIFT_START, 0)

    assert result.sales_count == 0
    assert result.used_legacy_fallback is False


def test_custom_thresholds(backend, clock):
    calculator = ReconciliationCalculator(backend, threshold=Decimal("100"), high_threshold=Decimal("200"), clock=clock)

    result = calculator.calculate("sh1", "staff-1", [_sale("s1", "500")], 250)

    assert result.alert.severity == "high"


def test_unknown_payment_method_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="pos_terminal.services.reconciliation"):
        buckets = tender_breakdown({"id": "s1", "total": "300", "payment_method": "voucher"})

    assert buckets["cash"] == Decimal("300")
    assert "unknown tender 'voucher'" in caplog.text


def test_payments_not_matching_total_logged(caplog):
    sale = _sale("s1", "1000", [{"mode": "cash", "amount": 600}, {"mode": "pos", "amount": 300}])

    with caplog.at_level(logging.WARNING, logger="pos_terminal.services.reconciliation"):
        buckets = tender_breakdown(sale)

    assert buckets["cash"] + buckets["pos"] == Decimal("900")
    assert "payments add up to 900, total is 1000" in caplog.text


def test_matching_payments_not_logged(caplog):
    sale = _sale("s1", "900", [{"mode": "cash", "amount": 600}, {"mode": "pos", "amount": 300}])

    with caplog.at_level(logging.WARNING, logger="pos_terminal.services.reconciliation"):
        tender_breakdown(sale)

    assert caplog.text == ""
