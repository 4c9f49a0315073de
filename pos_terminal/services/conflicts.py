"""Хранилище конфликтов синхронизации, ожидающих решения человека."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import enum
import threading

from pos_terminal.services.queue import QueuedOperation


class Resolution(str, enum.Enum):
    """Решение по конфликту."""

    SERVER = "server"
    LOCAL = "local"
    MERGE = "merge"


@dataclass(frozen=True)
class SyncConflict:
    id: str
    queue_entry_id: str
    operation: QueuedOperation
    server_version: dict
    timestamp: datetime


class ConflictStore:
    """Конфликты живут только в памяти процесса.

    Ключом служит идентификатор спорной записи, на одну запись не больше
    одного открытого конфликта.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, SyncConflict] = {}

    def add(self, conflict: SyncConflict) -> None:
        with self._lock:
            self._items[conflict.id] = conflict

    def get(self, conflict_id: str) -> SyncConflict | None:
        with self._lock:
            return self._items.get(conflict_id)

    def remove(self, conflict_id: str) -> SyncConflict | None:
        with self._lock:
            return self._items.pop(conflict_id, None)

    def all(self) -> list[SyncConflict]:
        with self._lock:
            return sorted(self._items.values(), key=lambda item: item.timestamp)

    def holds_entry(self, queue_entry_id: str) -> bool:
        with self._lock:
            return any(item.queue_entry_id == queue_entry_id for item in self._items.values())

    def __contains__(self, conflict_id: object) -> bool:
        with self._lock:
            return conflict_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def changed_fields(conflict: SyncConflict) -> dict[str, tuple[object, object]]:
    """Поля локального изменения, расходящиеся с серверной версией.

    :return: {поле: (локальное, серверное)} без служебных id/updated_at
    """
    local = conflict.operation.data or {}
    server = conflict.server_version or {}
    diff = {}
    for key in sorted(local):
        if key in ("id", "updated_at"):
            continue
        if local.get(key) != server.get(key):
            diff[key] = (local.get(key), server.get(key))
    return diff


__all__ = ["ConflictStore", "Resolution", "SyncConflict", "changed_fields"]
