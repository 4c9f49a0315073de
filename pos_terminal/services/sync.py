"""Движок синхронизации очереди с удалённой системой учёта."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
import enum
import json
import logging
import threading
import time

from pos_terminal.clients.backend import AuthError, BackendError
from pos_terminal.core.models import OperationType
from pos_terminal.services.conflicts import ConflictStore, Resolution, SyncConflict
from pos_terminal.services.connectivity import ConnectivityMonitor
from pos_terminal.services.notices import ERROR, INFO, WARNING, Notifier
from pos_terminal.services.queue import (
    FailureLedger,
    PendingOperationQueue,
    QueuedOperation,
)
from pos_terminal.utils import texts
from pos_terminal.utils.timezones import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

MAX_SYNC_ATTEMPTS = 5
ATTEMPTS_PER_CYCLE = 3
RETRY_DELAY_SECONDS = 1.0
# журнал продаж только дополняется, конфликтов версий там не бывает
SALES_RESOURCE = "sales"


class SyncServiceError(Exception):
    """Базовая ошибка синхронизации."""


class ValidationError(SyncServiceError):
    """Некорректный запрос на разрешение конфликта."""


class RetriesExhausted(SyncServiceError):
    """Все попытки цикла исчерпаны."""

    def __init__(self, last_error: Exception | None) -> None:
        super().__init__(str(last_error) if last_error else "retries exhausted")
        self.last_error = last_error


class Outcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CONFLICT = "conflict"
    AUTH_PAUSED = "auth_paused"


@dataclass
class SyncReport:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    quarantined: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    auth_paused: bool = False
    skipped: str | None = None

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


def detect_conflict(snapshot: dict | None, server_version: dict | None) -> bool:
    """Конфликт есть, только если серверная запись изменена позже снимка.

    Без снимка или без отметок времени сравнивать нечего: конфликта нет.
    """
    if not snapshot or not server_version:
        return False
    local_ts = parse_timestamp(snapshot.get("updated_at"))
    remote_ts = parse_timestamp(server_version.get("updated_at"))
    if local_ts is None or remote_ts is None:
        return False
    return remote_ts > local_ts


class SyncEngine:
    """Разбирает очередь по порядку, по одной операции за раз.

    Каждая операция проверяется на конфликт, отправляется с повторами и
    либо подтверждается, либо остаётся в очереди, либо снимается после
    MAX_SYNC_ATTEMPTS неудачных циклов подряд.
    """

    def __init__(
        self,
        backend,
        sessions,
        queue: PendingOperationQueue,
        ledger: FailureLedger,
        conflicts: ConflictStore,
        monitor: ConnectivityMonitor,
        notifier: Notifier,
        *,
        alerts=None,
        sleep: Callable[[float], None] = time.sleep,
        retry_delay: float = RETRY_DELAY_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._sessions = sessions
        self._queue = queue
        self._ledger = ledger
        self._conflicts = conflicts
        self._monitor = monitor
        self._notifier = notifier
        self._alerts = alerts
        self._sleep = sleep
        self._retry_delay = retry_delay
        self._clock = clock
        self._lock = threading.Lock()
        self._auth_paused = threading.Event()
        self._needs_login = False
        self._refresh_thread: threading.Thread | None = None
        monitor.on_reconnect(self.sync)

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def is_auth_paused(self) -> bool:
        return self._auth_paused.is_set()

    @property
    def needs_login(self) -> bool:
        return self._needs_login

    @property
    def conflicts(self) -> list[SyncConflict]:
        return self._conflicts.all()

    def sync(self, wait: bool = False) -> SyncReport:
        """Один цикл разбора очереди.

        Ничего не делает офлайн, во время другого цикла и на паузе после
        ошибки аутентификации.
        :param wait: ждать окончания текущего цикла вместо пропуска
        """
        if not self._monitor.is_online:
            return SyncReport(skipped="offline")
        if self._auth_paused.is_set():
            return SyncReport(skipped="auth_paused", auth_paused=True)
        if not self._lock.acquire(blocking=wait):
            logger.debug("sync already running, skipped")
            return SyncReport(skipped="busy")
        try:
            if self._auth_paused.is_set():
                return SyncReport(skipped="auth_paused", auth_paused=True)
            return self._drain()
        finally:
            self._lock.release()

    def _drain(self) -> SyncReport:
        snapshot = self._queue.all()
        report = SyncReport()
        if not snapshot:
            return report

        snapshot_ids = {op.queue_entry_id for op in snapshot}
        counts = {key: value for key, value in self._ledger.load().items() if key in snapshot_ids}
        errors: dict[str, str] = {}
        blocked_records = {conflict.id for conflict in self._conflicts.all()}
        # updated_at записей, уже подтверждённых сервером в этом цикле
        confirmed_versions: dict[str, str] = {}
        logger.info("sync started: %s queued operations", len(snapshot))

        for op in snapshot:
            if op.target_record_id in blocked_records:
                report.held.append(op.queue_entry_id)
                continue

            outcome, error, saved = self._process(op, confirmed_versions.get(op.target_record_id))
            if outcome is Outcome.AUTH_PAUSED:
                report.auth_paused = True
                break
            if outcome is Outcome.CONFLICT:
                blocked_records.add(op.target_record_id)
                report.conflicts.append(op.queue_entry_id)
                continue
            if outcome is Outcome.SUCCEEDED:
                counts.pop(op.queue_entry_id, None)
                report.succeeded.append(op.queue_entry_id)
                if isinstance(saved, dict) and saved.get("updated_at"):
                    confirmed_versions[op.target_record_id] = saved["updated_at"]
                continue

            # следующие операции по записи ждут, пока эта не пройдёт
            blocked_records.add(op.target_record_id)
            attempts = counts.get(op.queue_entry_id, 0) + 1
            if attempts >= MAX_SYNC_ATTEMPTS:
                counts.pop(op.queue_entry_id, None)
                report.quarantined.append(op.queue_entry_id)
                self._quarantine(op, attempts, error)
            else:
                counts[op.queue_entry_id] = attempts
                errors[op.queue_entry_id] = error or ""
                report.failed.append(op.queue_entry_id)

        self._ledger.save(counts, errors)
        self._queue.dequeue_confirmed(report.succeeded + report.quarantined)
        logger.info(
            "sync finished: succeeded=%s failed=%s quarantined=%s conflicts=%s held=%s paused=%s",
            report.succeeded_count,
            report.failed_count,
            len(report.quarantined),
            len(report.conflicts),
            len(report.held),
            report.auth_paused,
        )
        self._notify_summary(report)
        return report

    def _process(
        self,
        op: QueuedOperation,
        confirmed_version: str | None = None,
    ) -> tuple[Outcome, str | None, Any]:
        """Проверка конфликта и отправка одной операции.

        :param confirmed_version: updated_at, который сервер вернул на
            предыдущую операцию этого цикла по той же записи; заменяет
            устаревшую отметку снимка
        :return: (исход, текст ошибки, ответ сервера)
        """
        try:
            if self._needs_conflict_check(op):
                server_version = self._with_retry(
                    lambda: self._backend.fetch(op.resource, op.target_record_id),
                    op,
                )
                snapshot = op.snapshot
                if confirmed_version:
                    snapshot = {**snapshot, "updated_at": confirmed_version}
                if detect_conflict(snapshot, server_version):
                    self._register_conflict(op, server_version)
                    return Outcome.CONFLICT, None, None
            saved = self._with_retry(lambda: self._apply(op, op.data), op)
        except AuthError as exc:
            self._pause_for_auth(exc)
            return Outcome.AUTH_PAUSED, str(exc), None
        except RetriesExhausted as exc:
            return Outcome.FAILED, str(exc), None
        return Outcome.SUCCEEDED, None, saved

    @staticmethod
    def _needs_conflict_check(op: QueuedOperation) -> bool:
        return (
            op.type is OperationType.UPDATE
            and op.resource != SALES_RESOURCE
            and bool(op.snapshot)
        )

    def _with_retry(self, action: Callable[[], Any], op: QueuedOperation) -> Any:
        last_error: Exception | None = None
        for attempt in range(1, ATTEMPTS_PER_CYCLE + 1):
            try:
                return action()
            except AuthError:
                raise
            except BackendError as exc:
                last_error = exc
                logger.warning(
                    "%s %s #%s attempt %s/%s failed: %s",
                    op.type.value,
                    op.resource,
                    op.target_record_id,
                    attempt,
                    ATTEMPTS_PER_CYCLE,
                    exc,
                )
                if attempt < ATTEMPTS_PER_CYCLE:
                    self._sleep(attempt * self._retry_delay)
        raise RetriesExhausted(last_error)

    def _apply(self, op: QueuedOperation, data: dict) -> Any:
        if op.type is OperationType.CREATE:
            if op.resource == SALES_RESOURCE:
                return self._backend.complete_sale(data)
            try:
                return self._backend.insert(op.resource, data)
            except AuthError:
                raise
            except BackendError as exc:
                # запись с этим id уже создана прошлой попыткой, ответ потерялся
                if exc.status_code == 409:
                    logger.info("%s #%s already exists, treating as confirmed", op.resource, op.target_record_id)
                    return None
                raise
        if op.type is OperationType.UPDATE:
            return self._backend.update(op.resource, op.target_record_id, data)
        return self._backend.delete(op.resource, op.target_record_id)

    def _register_conflict(self, op: QueuedOperation, server_version: dict) -> None:
        conflict = SyncConflict(
            id=op.target_record_id,
            queue_entry_id=op.queue_entry_id,
            operation=op,
            server_version=dict(server_version or {}),
            timestamp=self._clock(),
        )
        self._conflicts.add(conflict)
        logger.warning("conflict on %s #%s", op.resource, op.target_record_id)
        self._notifier.notify(texts.conflict_text(op.resource, op.target_record_id), WARNING)

    def _quarantine(self, op: QueuedOperation, attempts: int, error: str | None) -> None:
        logger.error(
            "quarantined %s %s #%s after %s cycles (%s); payload=%s",
            op.type.value,
            op.resource,
            op.target_record_id,
            attempts,
            error,
            json.dumps(op.data, default=str, ensure_ascii=False),
        )
        message = texts.quarantine_text(op.resource, op.target_record_id, attempts)
        self._notifier.notify(message, ERROR)
        if self._alerts is not None:
            self._alerts.send_text(message)

    def _notify_summary(self, report: SyncReport) -> None:
        if report.failed:
            self._notifier.notify(
                texts.sync_partial_text(report.succeeded_count, report.failed_count),
                WARNING,
            )
        elif report.succeeded and not report.auth_paused:
            self._notifier.notify(texts.SYNC_COMPLETE, INFO)

    def _pause_for_auth(self, exc: Exception) -> None:
        if self._auth_paused.is_set():
            return
        logger.warning("auth failure, sync paused: %s", exc)
        self._auth_paused.set()
        self._refresh_thread = threading.Thread(
            target=self._refresh_session,
            name="session-refresh",
            daemon=True,
        )
        self._refresh_thread.start()

    def _refresh_session(self) -> None:
        try:
            self._sessions.refresh_session()
        except BackendError as exc:
            logger.error("session refresh failed: %s", exc)
            self._needs_login = True
            self._notifier.notify(texts.SESSION_EXPIRED, ERROR)
            return
        self._needs_login = False
        self._auth_paused.clear()
        self._notifier.notify(texts.SESSION_RESTORED, INFO)
        self.sync(wait=True)

    def wait_for_refresh(self, timeout: float | None = None) -> None:
        """Дожидается фонового обновления сессии (если оно идёт)."""
        thread = self._refresh_thread
        if thread is not None:
            thread.join(timeout)

    def resume_after_login(self) -> SyncReport:
        """Снимает паузу после повторного входа пользователя и запускает цикл."""
        self._needs_login = False
        self._auth_paused.clear()
        return self.sync(wait=True)

    def resolve_conflict(
        self,
        conflict_id: str,
        resolution: Resolution | str,
        merged_data: dict | None = None,
    ) -> None:
        """Применяет решение человека по конфликту.

        server: локальная операция отбрасывается; local: исходные данные
        перезаписывают сервер; merge: записываются merged_data.
        :raises ValidationError: неизвестный конфликт/решение или merge без данных
        :raises BackendError: запись не удалась, конфликт остаётся
        """
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise ValidationError(f"Конфликт {conflict_id} не найден.")
        try:
            choice = Resolution(getattr(resolution, "value", resolution))
        except ValueError as exc:
            raise ValidationError(f"Неизвестное решение: {resolution}") from exc

        op = conflict.operation
        if choice is Resolution.MERGE and not merged_data:
            raise ValidationError("Для merge нужны объединённые данные.")

        # идущий цикл сохраняет журнал неудач целиком, ждём его окончания
        with self._lock:
            if self._conflicts.get(conflict_id) is not conflict:
                raise ValidationError(f"Конфликт {conflict_id} уже разрешён.")
            if choice is not Resolution.SERVER:
                data = op.data if choice is Resolution.LOCAL else dict(merged_data)
                try:
                    self._apply(op, data)
                except AuthError as exc:
                    self._pause_for_auth(exc)
                    raise
                except BackendError:
                    logger.warning("conflict %s: %s write failed, kept for retry", conflict_id, choice.value)
                    raise

            self._queue.dequeue_confirmed([op.queue_entry_id])
            self._ledger.clear(op.queue_entry_id)
            self._conflicts.remove(conflict_id)
        logger.info("conflict %s resolved: %s", conflict_id, choice.value)


__all__ = [
    "ATTEMPTS_PER_CYCLE",
    "MAX_SYNC_ATTEMPTS",
    "Outcome",
    "RetriesExhausted",
    "SALES_RESOURCE",
    "SyncEngine",
    "SyncReport",
    "SyncServiceError",
    "ValidationError",
    "detect_conflict",
]
