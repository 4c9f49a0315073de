"""Утилиты для работы с часовыми поясами и БД."""

from __future__ import annotations

from datetime import datetime, timezone


def adapt_datetime_for_db(value: datetime, bind) -> datetime:
    """Преобразует datetime к форме, понятной текущему диалекту БД.

    SQLite не понимает tz-aware значения, поэтому приводим к UTC и убираем tzinfo.
    Для остальных диалектов возвращаем как есть.
    """
    if value is None:
        return value
    dialect_name = None
    if bind is not None:
        dialect = getattr(bind, "dialect", None)
        if dialect:
            dialect_name = getattr(dialect, "name", None)
    if dialect_name == "sqlite":
        return as_utc(value).replace(tzinfo=None)
    return value


def as_utc(value: datetime) -> datetime:
    """Наивное время считаем UTC, aware переводим в UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """Разбирает отметку времени из удалённой записи.

    Принимает datetime или ISO-строку (в т.ч. с суффиксом Z).
    :return: aware datetime в UTC или None, если значение пустое/нечитаемое
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def to_iso(value: datetime | None) -> str | None:
    """Сериализует время в ISO-строку UTC для записей и очереди."""
    if value is None:
        return None
    return as_utc(value).isoformat()


__all__ = ["adapt_datetime_for_db", "as_utc", "parse_timestamp", "to_iso", "utc_now"]
