"""Монитор сетевой доступности терминала."""

from __future__ import annotations

from datetime import datetime
from typing import Callable
import logging
import threading

from pos_terminal.services.notices import INFO, WARNING, Notifier
from pos_terminal.services.queue import PendingOperationQueue
from pos_terminal.services.state import TerminalState
from pos_terminal.utils import texts
from pos_terminal.utils.timezones import utc_now

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Хранит признак онлайн/офлайн и время последнего выхода в сеть.

    При переходе в онлайн с непустой очередью планирует синхронизацию
    с задержкой, чтобы не синхронизироваться на «мигающей» связи.
    """

    def __init__(
        self,
        state: TerminalState,
        queue: PendingOperationQueue,
        notifier: Notifier,
        *,
        debounce_seconds: float = 2.0,
        initially_online: bool = False,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._state = state
        self._queue = queue
        self._notifier = notifier
        self._debounce_seconds = debounce_seconds
        self._timer_factory = timer_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._online = initially_online
        self._last_online_at = state.get_last_online()
        self._listeners: list[Callable[[bool], None]] = []
        self._reconnect_callbacks: list[Callable[[], object]] = []
        self._pending_timer: threading.Timer | None = None
        if initially_online:
            self._mark_seen_online()

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def last_online_at(self) -> datetime | None:
        return self._last_online_at

    def subscribe(self, listener: Callable[[bool], None]) -> None:
        """Подписка на переходы; listener получает новое состояние."""
        self._listeners.append(listener)

    def on_reconnect(self, callback: Callable[[], object]) -> None:
        """Колбэк, вызываемый после задержки при возврате связи и непустой очереди."""
        self._reconnect_callbacks.append(callback)

    def set_online(self, online: bool) -> None:
        """Принимает сигнал окружения о доступности сети."""
        with self._lock:
            changed = online != self._online
            self._online = online
            if online:
                self._mark_seen_online()
        if not changed:
            return

        logger.info("connectivity changed: %s", "online" if online else "offline")
        if online:
            if self._queue.count() > 0:
                self._notifier.notify(texts.CONNECTION_RESTORED_SYNCING, INFO)
                self._schedule_reconnect()
            else:
                self._notifier.notify(texts.CONNECTION_RESTORED, INFO)
        else:
            self.cancel_pending()
            self._notifier.notify(texts.CONNECTION_LOST, WARNING)

        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:  # noqa: BLE001
                logger.exception("connectivity listener failed")

    def check_connection(self, check: Callable[[], bool]) -> bool:
        """Проверяет доступность через check() и применяет результат."""
        try:
            online = bool(check())
        except Exception:  # noqa: BLE001
            logger.debug("connectivity check raised", exc_info=True)
            online = False
        self.set_online(online)
        return online

    def cancel_pending(self) -> None:
        with self._lock:
            timer, self._pending_timer = self._pending_timer, None
        if timer is not None:
            timer.cancel()

    def _mark_seen_online(self) -> None:
        now = self._clock()
        self._last_online_at = now
        self._state.set_last_online(now)

    def _schedule_reconnect(self) -> None:
        self.cancel_pending()
        timer = self._timer_factory(self._debounce_seconds, self._fire_reconnect)
        timer.daemon = True
        with self._lock:
            self._pending_timer = timer
        timer.start()

    def _fire_reconnect(self) -> None:
        with self._lock:
            self._pending_timer = None
            online = self._online
        if not online:
            return
        for callback in list(self._reconnect_callbacks):
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.exception("reconnect callback failed")


__all__ = ["ConnectivityMonitor"]
