"""Сервис смен сотрудников: открытие, пауза, закрытие со сверкой кассы."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
from decimal import Decimal
from typing import Callable
from uuid import uuid4
from zoneinfo import ZoneInfo
import enum
import logging

from pos_terminal.clients.backend import BackendError
from pos_terminal.core.models import OperationType
from pos_terminal.services.connectivity import ConnectivityMonitor
from pos_terminal.services.notices import INFO, Notifier
from pos_terminal.services.queue import PendingOperationQueue, QueuedOperation
from pos_terminal.services.reconciliation import ReconciliationCalculator, ReconciliationResult
from pos_terminal.services.state import TerminalState
from pos_terminal.utils import texts
from pos_terminal.utils.formatting import money_to_str
from pos_terminal.utils.timezones import parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

SHIFTS_RESOURCE = "staff_shifts"


class ShiftServiceError(Exception):
    """Базовая ошибка смен."""


class NoActiveShift(ShiftServiceError):
    """У сотрудника нет активной смены."""


class ValidationError(ShiftServiceError):
    """Входные данные некорректны."""


class InvalidTransition(ShiftServiceError):
    """Переход недопустим из текущего статуса смены."""


class OfflineError(ShiftServiceError):
    """Действие доступно только при наличии связи."""


class ShiftStatus(str, enum.Enum):
    """Статус смены."""

    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


OPEN_STATUSES = (ShiftStatus.ACTIVE, ShiftStatus.PAUSED)


def _as_decimal(value: float | int | str | Decimal) -> Decimal:
    """Преобразует входное значение к Decimal.

    :param value: число/строка
    :return: Decimal
    :raises ValidationError: если преобразовать нельзя
    """
    try:
        return Decimal(str(value))
    except Exception as exc:  # noqa: BLE001
        raise ValidationError("Сумма должна быть числом.") from exc


def _optional_decimal(value) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def shift_type_for(moment: datetime, tz: tzinfo | None = None) -> str:
    """Тип смены по времени начала.

    Morning 07:00–15:00, Afternoon 15:01–21:00, Night в остальное время.
    """
    local = moment.astimezone(tz) if tz is not None else moment
    value = local.hour + local.minute / 60
    if 7 <= value <= 15:
        return "Morning"
    if 15 < value <= 21:
        return "Afternoon"
    return "Night"


@dataclass(frozen=True)
class Staff:
    id: str
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class StaffShift:
    id: str
    staff_id: str
    shift_type: str
    status: ShiftStatus
    start_time: datetime
    opening_cash: Decimal
    staff_name: str | None = None
    end_time: datetime | None = None
    actual_cash_counted: Decimal | None = None
    expected_cash_total: Decimal | None = None
    expected_pos_total: Decimal | None = None
    expected_transfer_total: Decimal | None = None
    expected_sales_total: Decimal | None = None
    variance: Decimal | None = None
    notes: str | None = None
    variance_reason: str | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_record(self, drop_empty: bool = False) -> dict:
        """Запись в формате удалённой таблицы staff_shifts."""
        record = {
            "id": self.id,
            "staff_id": self.staff_id,
            "staff_name": self.staff_name,
            "shift_type": self.shift_type,
            "status": self.status.value,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "opening_cash": money_to_str(self.opening_cash),
            "actual_cash_counted": money_to_str(self.actual_cash_counted),
            "expected_cash_total": money_to_str(self.expected_cash_total),
            "expected_pos_total": money_to_str(self.expected_pos_total),
            "expected_transfer_total": money_to_str(self.expected_transfer_total),
            "expected_sales_total": money_to_str(self.expected_sales_total),
            "variance": money_to_str(self.variance),
            "notes": self.notes,
            "variance_reason": self.variance_reason,
            "updated_at": to_iso(self.updated_at),
        }
        if drop_empty:
            return {key: value for key, value in record.items() if value is not None}
        return record

    @classmethod
    def from_record(cls, record: dict) -> "StaffShift":
        return cls(
            id=str(record["id"]),
            staff_id=str(record["staff_id"]),
            staff_name=record.get("staff_name"),
            shift_type=record.get("shift_type") or "",
            status=ShiftStatus(record.get("status") or ShiftStatus.ACTIVE.value),
            start_time=parse_timestamp(record.get("start_time")),
            end_time=parse_timestamp(record.get("end_time")),
            opening_cash=_optional_decimal(record.get("opening_cash")) or Decimal("0"),
            actual_cash_counted=_optional_decimal(record.get("actual_cash_counted")),
            expected_cash_total=_optional_decimal(record.get("expected_cash_total")),
            expected_pos_total=_optional_decimal(record.get("expected_pos_total")),
            expected_transfer_total=_optional_decimal(record.get("expected_transfer_total")),
            expected_sales_total=_optional_decimal(record.get("expected_sales_total")),
            variance=_optional_decimal(record.get("variance")),
            notes=record.get("notes"),
            variance_reason=record.get("variance_reason"),
            updated_at=parse_timestamp(record.get("updated_at")),
        )


@dataclass(frozen=True)
class ShiftCloseResult:
    shift: StaffShift
    reconciliation: ReconciliationResult | None
    queued: bool


class ShiftManager:
    """Жизненный цикл смены: none → active ↔ paused → closed.

    Онлайн переход пишется напрямую; офлайн (или при ошибке сервера)
    собирается итоговая запись и ставится в очередь синхронизации.
    """

    def __init__(
        self,
        backend,
        queue: PendingOperationQueue,
        monitor: ConnectivityMonitor,
        state: TerminalState,
        reconciliation: ReconciliationCalculator,
        notifier: Notifier,
        *,
        alerts=None,
        tz: tzinfo | str = "Africa/Lagos",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._queue = queue
        self._monitor = monitor
        self._state = state
        self._reconciliation = reconciliation
        self._notifier = notifier
        self._alerts = alerts
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self._clock = clock

    def get_active_shift(self, staff_id: str) -> StaffShift | None:
        """Активная или приостановленная смена из локального снимка."""
        record = self._state.get_active_shift(staff_id)
        return StaffShift.from_record(record) if record else None

    def refresh_active_shift(self, staff_id: str) -> StaffShift | None:
        """Обновляет локальный снимок по серверу (если есть связь).

        Смена с неотправленными изменениями остаётся локальной.
        """
        local = self.get_active_shift(staff_id)
        if not self._monitor.is_online:
            return local
        if local is not None and self._has_pending_for(local.id):
            return local
        try:
            rows = self._backend.select(
                SHIFTS_RESOURCE,
                eq={"staff_id": staff_id},
                in_={"status": [status.value for status in OPEN_STATUSES]},
            )
        except BackendError as exc:
            logger.warning("could not refresh shift of %s: %s", staff_id, exc)
            return local
        record = rows[0] if rows else None
        self._state.set_active_shift(staff_id, record)
        return StaffShift.from_record(record) if record else None

    def list_active_shifts(self) -> list[StaffShift]:
        """Все открытые смены точки (для администратора)."""
        self._require_online()
        rows = self._backend.select(
            SHIFTS_RESOURCE,
            in_={"status": [status.value for status in OPEN_STATUSES]},
            order="start_time.asc",
        )
        return [StaffShift.from_record(row) for row in rows]

    def start_shift(self, staff: Staff, opening_cash: float | int | str | Decimal) -> StaffShift:
        """Открывает смену.

        :param staff: сотрудник
        :param opening_cash: размен в кассе на начало смены
        :return: созданная StaffShift
        :raises ValidationError: если сумма некорректна или смена уже открыта
        """
        cash = _as_decimal(opening_cash)
        if cash < 0:
            raise ValidationError("Сумма должна быть неотрицательной.")

        existing = self.get_active_shift(staff.id)
        if existing is None and self._monitor.is_online:
            existing = self.refresh_active_shift(staff.id)
        if existing is not None:
            raise ValidationError("У вас уже есть открытая смена.")

        now = self._clock()
        shift = StaffShift(
            id=str(uuid4()),
            staff_id=str(staff.id),
            staff_name=staff.name or staff.email,
            shift_type=shift_type_for(now, self._tz),
            status=ShiftStatus.ACTIVE,
            start_time=now,
            opening_cash=cash,
        )
        saved, _ = self._write(OperationType.CREATE, shift.id, shift.to_record(drop_empty=True))
        if saved:
            shift = StaffShift.from_record({**shift.to_record(), **saved})
        self._state.set_active_shift(shift.staff_id, shift.to_record())
        self._notifier.notify(texts.SHIFT_STARTED, INFO)
        return shift

    def pause_shift(self, staff_id: str) -> StaffShift:
        shift = self._require_open(staff_id)
        return self._pause(shift)

    def resume_shift(self, staff_id: str) -> StaffShift:
        shift = self._require_open(staff_id)
        return self._resume(shift)

    def end_shift(
        self,
        staff_id: str,
        actual_cash: float | int | str | Decimal,
        notes: str | None = None,
        variance_reason: str | None = None,
    ) -> ShiftCloseResult:
        """Закрывает смену сотрудника со сверкой наличных.

        :raises NoActiveShift: если открытой смены нет (в т.ч. повторное закрытие)
        """
        shift = self._require_open(staff_id)
        return self._close(shift, actual_cash, notes, variance_reason)

    def admin_pause_shift(self, shift_id: str) -> StaffShift:
        return self._pause(self._fetch_shift(shift_id))

    def admin_resume_shift(self, shift_id: str) -> StaffShift:
        return self._resume(self._fetch_shift(shift_id))

    def admin_end_shift(
        self,
        shift_id: str,
        actual_cash: float | int | str | Decimal,
        notes: str | None = None,
        variance_reason: str | None = None,
    ) -> ShiftCloseResult:
        shift = self._fetch_shift(shift_id)
        if not shift.is_open:
            raise InvalidTransition("Смена уже закрыта.")
        return self._close(shift, actual_cash, notes, variance_reason)

    def _pause(self, shift: StaffShift) -> StaffShift:
        if shift.status is not ShiftStatus.ACTIVE:
            raise InvalidTransition("Приостановить можно только активную смену.")
        updated, _ = self._transition(shift, {"status": ShiftStatus.PAUSED.value})
        self._notifier.notify(texts.SHIFT_PAUSED, INFO)
        return updated

    def _resume(self, shift: StaffShift) -> StaffShift:
        if shift.status is not ShiftStatus.PAUSED:
            raise InvalidTransition("Возобновить можно только приостановленную смену.")
        updated, _ = self._transition(shift, {"status": ShiftStatus.ACTIVE.value})
        self._notifier.notify(texts.SHIFT_RESUMED, INFO)
        return updated

    def _close(
        self,
        shift: StaffShift,
        actual_cash,
        notes: str | None,
        variance_reason: str | None,
    ) -> ShiftCloseResult:
        actual = _as_decimal(actual_cash)
        if actual < 0:
            raise ValidationError("Сумма должна быть неотрицательной.")

        result = None
        if self._monitor.is_online and not self._has_pending_for(shift.id):
            try:
                result = self._reconciliation.reconcile(shift.id, shift.staff_id, shift.start_time, actual)
            except BackendError as exc:
                logger.warning("reconciliation of shift %s deferred: %s", shift.id, exc)

        patch = {
            "status": ShiftStatus.CLOSED.value,
            "end_time": to_iso(self._clock()),
            "actual_cash_counted": money_to_str(actual),
            "notes": notes,
            "variance_reason": variance_reason,
        }
        if result is not None:
            patch.update(
                {
                    "expected_sales_total": money_to_str(result.expected_sales_total),
                    "expected_cash_total": money_to_str(result.expected_cash_total),
                    "expected_pos_total": money_to_str(result.expected_pos_total),
                    "expected_transfer_total": money_to_str(result.expected_transfer_total),
                    "variance": money_to_str(result.variance),
                }
            )
        else:
            # настоящая сверка произойдёт на сервере при обработке закрытия
            patch["expected_sales_total"] = "0"

        closed, queued = self._transition(shift, patch)

        if result is not None and result.alert is not None:
            self._send_alert(result)

        if result is not None:
            self._notifier.notify(
                texts.shift_closed_text(result.expected_cash_total, actual, result.variance),
                INFO,
            )
        else:
            self._notifier.notify(texts.SHIFT_CLOSED, INFO)
        return ShiftCloseResult(shift=closed, reconciliation=result, queued=queued)

    def _transition(self, shift: StaffShift, patch: dict) -> tuple[StaffShift, bool]:
        """Применяет изменение статуса и обновляет локальный снимок.

        Снимок трогаем, только если он уже был (смена этого терминала).
        """
        snapshot = shift.to_record()
        saved, queued = self._write(OperationType.UPDATE, shift.id, patch, snapshot=snapshot)
        updated = StaffShift.from_record({**snapshot, **patch, **(saved or {})})
        local = self._state.get_active_shift(updated.staff_id)
        if local is not None and str(local.get("id")) == updated.id:
            self._state.set_active_shift(updated.staff_id, updated.to_record() if updated.is_open else None)
        return updated, queued

    def _write(
        self,
        op_type: OperationType,
        record_id: str,
        data: dict,
        snapshot: dict | None = None,
    ) -> tuple[dict | None, bool]:
        """Прямая запись при наличии связи, иначе очередь.

        Если по записи уже есть неотправленные операции, новая тоже
        идёт в очередь, чтобы сохранить порядок, и без снимка: конфликт
        проверяет первая операция цепочки, а свои же отправленные правки
        конфликтом не считаются.
        :return: (запись сервера или None, поставлено ли в очередь)
        """
        pending = self._has_pending_for(record_id)
        if pending:
            snapshot = None
        if self._monitor.is_online and not pending:
            try:
                if op_type is OperationType.CREATE:
                    return self._backend.insert(SHIFTS_RESOURCE, data), False
                return self._backend.update(SHIFTS_RESOURCE, record_id, data), False
            except BackendError as exc:
                logger.warning("direct %s of shift %s failed, queueing: %s", op_type.value, record_id, exc)

        self._queue.enqueue(
            QueuedOperation.new(
                op_type,
                SHIFTS_RESOURCE,
                data,
                target_record_id=record_id,
                snapshot=snapshot,
                now=self._clock(),
            )
        )
        self._notifier.notify(texts.SHIFT_SAVED_OFFLINE, INFO)
        return None, True

    def _has_pending_for(self, record_id: str) -> bool:
        return any(
            op.resource == SHIFTS_RESOURCE and op.target_record_id == record_id
            for op in self._queue.all()
        )

    def _require_open(self, staff_id: str) -> StaffShift:
        shift = self.get_active_shift(staff_id)
        if shift is None or not shift.is_open:
            raise NoActiveShift("Нет активной смены.")
        return shift

    def _require_online(self) -> None:
        if not self._monitor.is_online:
            raise OfflineError("Нет связи с сервером.")

    def _fetch_shift(self, shift_id: str) -> StaffShift:
        self._require_online()
        record = self._backend.fetch(SHIFTS_RESOURCE, shift_id)
        if not record:
            raise NoActiveShift("Смена не найдена.")
        return StaffShift.from_record(record)

    def _send_alert(self, result: ReconciliationResult) -> None:
        if self._alerts is None:
            logger.warning("variance alert without delivery channel: %s", result.alert)
            return
        self._alerts.send_variance_alert(result.alert)


__all__ = [
    "InvalidTransition",
    "NoActiveShift",
    "OfflineError",
    "SHIFTS_RESOURCE",
    "ShiftCloseResult",
    "ShiftManager",
    "ShiftServiceError",
    "ShiftStatus",
    "Staff",
    "StaffShift",
    "ValidationError",
    "shift_type_for",
]
