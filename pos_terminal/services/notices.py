"""Пользовательские уведомления терминала (тосты) и их подписчики."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable
import logging

logger = logging.getLogger(__name__)

INFO = "info"
WARNING = "warning"
ERROR = "error"

_LOG_LEVELS = {
    INFO: logging.INFO,
    WARNING: logging.WARNING,
    ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class Notice:
    message: str
    level: str = INFO


class Notifier:
    """Рассылает уведомления подписчикам (UI) и пишет их в лог.

    Ошибка одного подписчика не мешает остальным.
    """

    def __init__(self) -> None:
        self._listeners: list[Callable[[Notice], None]] = []

    def subscribe(self, listener: Callable[[Notice], None]) -> None:
        self._listeners.append(listener)

    def notify(self, message: str, level: str = INFO) -> Notice:
        notice = Notice(message=message, level=level)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "notice: %s", message)
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:  # noqa: BLE001
                logger.exception("notice listener failed")
        return notice


__all__ = ["ERROR", "INFO", "Notice", "Notifier", "WARNING"]
