"""Хранилище состояния терминала (ключ/значение в локальной БД)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from pos_terminal.core.db import db_session
from pos_terminal.core.models import TerminalStateEntry
from pos_terminal.utils.timezones import parse_timestamp, to_iso

SYNC_PENDING_KEY = "sync_pending"
LAST_ONLINE_KEY = "last_online_at"
ACTIVE_SHIFT_PREFIX = "active_shift:"


class TerminalState:
    """Переживающее перезапуск состояние терминала.

    Каждое значение читается и пишется независимо; для записи в одной
    транзакции с очередью можно передать внешнюю сессию.
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory

    def get(self, key: str, default: Any = None, session: Session | None = None) -> Any:
        with db_session(self._session_factory, session=session) as local:
            entry = local.get(TerminalStateEntry, key)
            if entry is None:
                return default
            return entry.value

    def set(self, key: str, value: Any, session: Session | None = None) -> None:
        with db_session(self._session_factory, session=session) as local:
            entry = local.get(TerminalStateEntry, key)
            if entry is None:
                local.add(TerminalStateEntry(key=key, value=value))
            else:
                entry.value = value
            local.flush()

    def delete(self, key: str, session: Session | None = None) -> None:
        with db_session(self._session_factory, session=session) as local:
            entry = local.get(TerminalStateEntry, key)
            if entry is not None:
                local.delete(entry)
                local.flush()

    @property
    def sync_pending(self) -> bool:
        return bool(self.get(SYNC_PENDING_KEY, False))

    def get_last_online(self) -> datetime | None:
        return parse_timestamp(self.get(LAST_ONLINE_KEY))

    def set_last_online(self, moment: datetime) -> None:
        self.set(LAST_ONLINE_KEY, to_iso(moment))

    def get_active_shift(self, staff_id: str) -> dict | None:
        """Снимок активной/приостановленной смены для мгновенной отрисовки UI."""
        return self.get(ACTIVE_SHIFT_PREFIX + str(staff_id))

    def set_active_shift(self, staff_id: str, record: dict | None) -> None:
        if record is None:
            self.delete(ACTIVE_SHIFT_PREFIX + str(staff_id))
        else:
            self.set(ACTIVE_SHIFT_PREFIX + str(staff_id), record)


__all__ = [
    "ACTIVE_SHIFT_PREFIX",
    "LAST_ONLINE_KEY",
    "SYNC_PENDING_KEY",
    "TerminalState",
]
