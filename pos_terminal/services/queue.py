"""Очередь отложенных операций и журнал неудачных попыток."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable
from uuid import uuid4
import logging

from sqlalchemy.orm import sessionmaker

from pos_terminal.core.db import db_session
from pos_terminal.core.models import OperationType, PendingOperation, SyncFailure
from pos_terminal.services.state import SYNC_PENDING_KEY, TerminalState
from pos_terminal.utils.timezones import adapt_datetime_for_db, as_utc, utc_now

logger = logging.getLogger(__name__)


class QueueServiceError(Exception):
    """Базовая ошибка очереди."""


class ValidationError(QueueServiceError):
    """Операция некорректна и в очередь не попадает."""


@dataclass(frozen=True)
class QueuedOperation:
    queue_entry_id: str
    target_record_id: str
    type: OperationType
    resource: str
    data: dict = field(default_factory=dict)
    timestamp: datetime | None = None
    snapshot: dict | None = None

    @classmethod
    def new(
        cls,
        op_type: OperationType | str,
        resource: str,
        data: dict | None = None,
        *,
        target_record_id: str | None = None,
        snapshot: dict | None = None,
        now: datetime | None = None,
    ) -> "QueuedOperation":
        """Собирает новую операцию с собственным идентификатором записи очереди.

        Для create без target_record_id берётся data["id"], а если его нет,
        генерируется новый UUID.
        """
        try:
            kind = OperationType(getattr(op_type, "value", op_type))
        except ValueError as exc:
            raise ValidationError(f"Неизвестный тип операции: {op_type}") from exc
        payload = dict(data or {})
        if kind is OperationType.CREATE and not target_record_id:
            target_record_id = str(payload.get("id") or uuid4())
        return cls(
            queue_entry_id=str(uuid4()),
            target_record_id=str(target_record_id) if target_record_id else "",
            type=kind,
            resource=(resource or "").strip(),
            data=payload,
            timestamp=now or utc_now(),
            snapshot=dict(snapshot) if snapshot else None,
        )


def _validate(op: QueuedOperation) -> None:
    if not op.resource:
        raise ValidationError("Не указан ресурс операции.")
    if not op.queue_entry_id:
        raise ValidationError("Не указан идентификатор записи очереди.")
    if not op.target_record_id:
        raise ValidationError("Не указан идентификатор целевой записи.")
    if op.type is OperationType.CREATE and not op.data:
        raise ValidationError("Для создания нужны данные записи.")
    if op.type is OperationType.UPDATE and not op.data:
        raise ValidationError("Для обновления нужен набор изменений.")


def _to_dto(row: PendingOperation) -> QueuedOperation:
    return QueuedOperation(
        queue_entry_id=row.queue_entry_id,
        target_record_id=row.target_record_id,
        type=row.op_type,
        resource=row.resource,
        data=dict(row.data or {}),
        timestamp=as_utc(row.created_at) if row.created_at else None,
        snapshot=dict(row.snapshot) if row.snapshot else None,
    )


class PendingOperationQueue:
    """Упорядоченная очередь неподтверждённых мутаций в локальной БД.

    Строки очереди и флаг ``sync_pending`` всегда пишутся в одной транзакции,
    поэтому после перезапуска состояние восстанавливается точно.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        state: TerminalState | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._state = state or TerminalState(session_factory)

    def enqueue(self, op: QueuedOperation) -> QueuedOperation:
        """Добавляет операцию в конец очереди.

        :raises ValidationError: если операция некорректна
        """
        _validate(op)
        with db_session(self._session_factory) as local:
            created_at = adapt_datetime_for_db(op.timestamp or utc_now(), local.bind)
            local.add(
                PendingOperation(
                    queue_entry_id=op.queue_entry_id,
                    target_record_id=op.target_record_id,
                    op_type=op.type,
                    resource=op.resource,
                    data=op.data,
                    snapshot=op.snapshot,
                    created_at=created_at,
                )
            )
            local.flush()
            self._state.set(SYNC_PENDING_KEY, True, session=local)
        logger.info(
            "queued %s %s #%s (entry %s)",
            op.type.value,
            op.resource,
            op.target_record_id,
            op.queue_entry_id,
        )
        return op

    def dequeue_confirmed(self, ids: Iterable[str]) -> int:
        """Удаляет операции по идентификаторам записей очереди.

        Операции, добавленные после снимка очереди, не затрагиваются.
        :return: количество удалённых строк
        """
        wanted = {str(item) for item in ids}
        if not wanted:
            return 0
        with db_session(self._session_factory) as local:
            removed = (
                local.query(PendingOperation)
                .filter(PendingOperation.queue_entry_id.in_(wanted))
                .delete(synchronize_session=False)
            )
            remaining = local.query(PendingOperation).count()
            self._state.set(SYNC_PENDING_KEY, remaining > 0, session=local)
        logger.debug("dequeued %s operations, %s remaining", removed, remaining)
        return removed

    def all(self) -> list[QueuedOperation]:
        """Текущая очередь в порядке добавления."""
        with db_session(self._session_factory) as local:
            rows = local.query(PendingOperation).order_by(PendingOperation.seq).all()
            return [_to_dto(row) for row in rows]

    def get(self, queue_entry_id: str) -> QueuedOperation | None:
        with db_session(self._session_factory) as local:
            row = (
                local.query(PendingOperation)
                .filter(PendingOperation.queue_entry_id == queue_entry_id)
                .one_or_none()
            )
            return _to_dto(row) if row else None

    def count(self) -> int:
        with db_session(self._session_factory) as local:
            return local.query(PendingOperation).count()

    def clear(self) -> None:
        with db_session(self._session_factory) as local:
            local.query(PendingOperation).delete(synchronize_session=False)
            self._state.set(SYNC_PENDING_KEY, False, session=local)

    @property
    def has_pending(self) -> bool:
        return self._state.sync_pending


class FailureLedger:
    """Журнал подряд неудачных циклов по каждой операции.

    Живёт отдельно от очереди: запись удаляется только при успехе
    или при снятии операции с очереди.
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory

    def load(self) -> dict[str, int]:
        with db_session(self._session_factory) as local:
            return {row.queue_entry_id: row.attempts for row in local.query(SyncFailure).all()}

    def get(self, queue_entry_id: str) -> int:
        with db_session(self._session_factory) as local:
            row = local.get(SyncFailure, queue_entry_id)
            return row.attempts if row else 0

    def save(self, counts: dict[str, int], errors: dict[str, str] | None = None) -> None:
        """Записывает журнал целиком: отсутствующие в counts записи удаляются."""
        errors = errors or {}
        with db_session(self._session_factory) as local:
            existing = {row.queue_entry_id: row for row in local.query(SyncFailure).all()}
            for entry_id, row in existing.items():
                if entry_id not in counts:
                    local.delete(row)
            for entry_id, attempts in counts.items():
                row = existing.get(entry_id)
                if row is None:
                    row = SyncFailure(queue_entry_id=entry_id)
                    local.add(row)
                row.attempts = attempts
                if entry_id in errors:
                    row.last_error = errors[entry_id][:1000]
            local.flush()

    def clear(self, queue_entry_id: str) -> None:
        with db_session(self._session_factory) as local:
            row = local.get(SyncFailure, queue_entry_id)
            if row is not None:
                local.delete(row)


__all__ = [
    "FailureLedger",
    "PendingOperationQueue",
    "QueueServiceError",
    "QueuedOperation",
    "ValidationError",
]
