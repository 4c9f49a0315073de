"""Утилиты форматирования сумм для уведомлений терминала."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP


def format_amount(value) -> str:
    """Возвращает число без дробной части с пробелами в качестве разделителей."""
    amount = Decimal(value or 0)
    rounded = amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"{rounded:,.0f}".replace(",", " ")


def format_signed_amount(value) -> str:
    """Как format_amount, но с явным знаком: +2 200 / -500."""
    amount = Decimal(value or 0)
    sign = "+" if amount > 0 else ""
    return sign + format_amount(amount)


def money_to_str(value) -> str | None:
    """Decimal -> строка для JSON-записей (без потери точности)."""
    if value is None:
        return None
    return str(Decimal(value))


__all__ = ["format_amount", "format_signed_amount", "money_to_str"]
