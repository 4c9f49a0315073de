"""Сверка кассы при закрытии смены."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, DecimalException
from typing import Callable
import logging

from pos_terminal.utils.timezones import parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

SALES_RESOURCE = "sales"
VARIANCE_ALERT_THRESHOLD = Decimal("1000")
VARIANCE_HIGH_THRESHOLD = Decimal("5000")

CASH = "cash"
POS = "pos"
TRANSFER = "transfer"
TENDERS = (CASH, POS, TRANSFER)
TENDER_ALIASES = {
    "cash": CASH,
    "pos": POS,
    "card": POS,
    "transfer": TRANSFER,
    "bank": TRANSFER,
    "bank_transfer": TRANSFER,
}


@dataclass(frozen=True)
class VarianceAlert:
    expected: Decimal
    actual: Decimal
    variance: Decimal
    staff_id: str
    shift_id: str
    severity: str


@dataclass(frozen=True)
class ReconciliationResult:
    expected_sales_total: Decimal
    expected_cash_total: Decimal
    expected_pos_total: Decimal
    expected_transfer_total: Decimal
    actual_cash_counted: Decimal
    variance: Decimal
    sales_count: int
    used_legacy_fallback: bool = False
    alert: VarianceAlert | None = None


def _money(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (DecimalException, ValueError):
        logger.warning("unreadable amount %r treated as 0", value)
        return Decimal("0")


def tender_breakdown(sale: dict) -> dict[str, Decimal]:
    """Раскладывает сумму продажи по видам оплаты.

    Берёт payments [{mode, amount}], затем одиночный payment_method;
    продажа без разбивки целиком считается наличной.
    """
    buckets = {tender: Decimal("0") for tender in TENDERS}
    total = _money(sale.get("total"))
    payments = sale.get("payments") or []
    if payments:
        for payment in payments:
            mode = str(payment.get("mode") or "").strip().lower()
            tender = TENDER_ALIASES.get(mode)
            if tender is None:
                logger.warning("sale %s: unknown tender %r counted as cash", sale.get("id"), mode)
                tender = CASH
            buckets[tender] += _money(payment.get("amount"))
        paid = sum(buckets.values())
        if sale.get("total") not in (None, "") and paid != total:
            logger.warning(
                "sale %s: payments add up to %s, total is %s",
                sale.get("id"),
                paid,
                total,
            )
        return buckets

    mode = str(sale.get("payment_method") or "").strip().lower()
    method = TENDER_ALIASES.get(mode)
    if method is None:
        if mode:
            logger.warning("sale %s: unknown tender %r counted as cash", sale.get("id"), mode)
        method = CASH
    buckets[method] += total
    return buckets


def classify_variance(
    variance: Decimal,
    threshold: Decimal = VARIANCE_ALERT_THRESHOLD,
    high_threshold: Decimal = VARIANCE_HIGH_THRESHOLD,
) -> str | None:
    """Уровень оповещения по модулю расхождения; None, если оповещать не нужно."""
    magnitude = abs(variance)
    if magnitude <= threshold:
        return None
    return "high" if magnitude > high_threshold else "medium"


class ReconciliationCalculator:
    """Считает ожидаемые суммы смены по подтверждённым продажам.

    Читает только то, что уже есть на сервере, а не очередь терминала.
    """

    def __init__(
        self,
        backend,
        *,
        threshold: Decimal = VARIANCE_ALERT_THRESHOLD,
        high_threshold: Decimal = VARIANCE_HIGH_THRESHOLD,
        legacy_fallback_until: datetime | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._threshold = Decimal(threshold)
        self._high_threshold = Decimal(high_threshold)
        self._legacy_fallback_until = (
            parse_timestamp(legacy_fallback_until) if legacy_fallback_until else None
        )
        self._clock = clock

    def fetch_shift_sales(self, shift_id: str, staff_id: str, start_time) -> tuple[list[dict], bool]:
        """Продажи смены: по shift_id, иначе по кассиру за окно смены.

        :return: (продажи, использован ли запасной поиск по времени)
        """
        sales = self._backend.select(SALES_RESOURCE, eq={"shift_id": shift_id})
        if sales:
            return sales, False

        started = parse_timestamp(start_time)
        if started is None:
            return [], False
        if self._legacy_fallback_until is not None and started >= self._legacy_fallback_until:
            logger.info("shift %s: no linked sales, legacy window fallback disabled", shift_id)
            return [], False

        now = self._clock()
        legacy = self._backend.select(
            SALES_RESOURCE,
            eq={"cashier_id": staff_id},
            gte={"created_at": to_iso(started)},
            lte={"created_at": to_iso(now)},
        )
        if legacy:
            logger.warning(
                "shift %s: %s sales matched by cashier/time window instead of shift link",
                shift_id,
                len(legacy),
            )
        return legacy, True

    def reconcile(
        self,
        shift_id: str,
        staff_id: str,
        start_time,
        actual_cash,
    ) -> ReconciliationResult:
        """Ожидаемые суммы по видам оплаты и расхождение по наличным.

        :raises BackendError: если продажи не удалось получить
        """
        sales, used_fallback = self.fetch_shift_sales(shift_id, staff_id, start_time)
        return self.calculate(shift_id, staff_id, sales, actual_cash, used_legacy_fallback=used_fallback)

    def calculate(
        self,
        shift_id: str,
        staff_id: str,
        sales: list[dict],
        actual_cash,
        *,
        used_legacy_fallback: bool = False,
    ) -> ReconciliationResult:
        actual = _money(actual_cash)
        sales_total = Decimal("0")
        buckets = {tender: Decimal("0") for tender in TENDERS}
        for sale in sales:
            sales_total += _money(sale.get("total"))
            for tender, amount in tender_breakdown(sale).items():
                buckets[tender] += amount

        variance = actual - buckets[CASH]
        severity = classify_variance(variance, self._threshold, self._high_threshold)
        alert = None
        if severity:
            alert = VarianceAlert(
                expected=buckets[CASH],
                actual=actual,
                variance=variance,
                staff_id=str(staff_id),
                shift_id=str(shift_id),
                severity=severity,
            )
            logger.warning("shift %s variance %s (%s)", shift_id, variance, severity)

        return ReconciliationResult(
            expected_sales_total=sales_total,
            expected_cash_total=buckets[CASH],
            expected_pos_total=buckets[POS],
            expected_transfer_total=buckets[TRANSFER],
            actual_cash_counted=actual,
            variance=variance,
            sales_count=len(sales),
            used_legacy_fallback=used_legacy_fallback,
            alert=alert,
        )


__all__ = [
    "ReconciliationCalculator",
    "ReconciliationResult",
    "VarianceAlert",
    "classify_variance",
    "tender_breakdown",
]
