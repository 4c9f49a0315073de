"""Тексты уведомлений терминала, вынесенные отдельно от логики."""

from decimal import Decimal

from pos_terminal.utils.formatting import format_amount, format_signed_amount

CONNECTION_LOST = "Нет связи. Работаем офлайн, изменения отправятся при восстановлении сети."
CONNECTION_RESTORED = "Связь восстановлена."
CONNECTION_RESTORED_SYNCING = "Связь восстановлена. Отправляем офлайн-изменения..."
SYNC_COMPLETE = "Синхронизация завершена."
SESSION_EXPIRED = "Сессия истекла. Войдите в систему заново, чтобы продолжить синхронизацию."
SESSION_RESTORED = "Сессия обновлена, синхронизация продолжается."

SHIFT_STARTED = "Смена открыта. Вы на смене."
SHIFT_PAUSED = "Смена приостановлена."
SHIFT_RESUMED = "Смена возобновлена."
SHIFT_CLOSED = "Смена закрыта."
SHIFT_SAVED_OFFLINE = "Нет связи: изменение смены сохранено и будет отправлено позже."


def sync_partial_text(succeeded: int, failed: int) -> str:
    """Сообщение о частично успешной синхронизации."""
    return (
        f"Синхронизация: отправлено {succeeded}, "
        f"не удалось {failed}. Повторим автоматически."
    )


def quarantine_text(resource: str, record_id: str, attempts: int) -> str:
    """Сообщение о снятой с очереди операции."""
    return (
        f"Изменение {resource} #{record_id} не удалось отправить после {attempts} попыток "
        "и оно удалено из очереди. Проверьте данные вручную."
    )


def conflict_text(resource: str, record_id: str) -> str:
    """Сообщение о конфликте версий."""
    return (
        f"Запись {resource} #{record_id} изменена на сервере, пока вы были офлайн. "
        "Нужно выбрать, какую версию оставить."
    )


def shift_closed_text(expected_cash: Decimal, actual_cash: Decimal, variance: Decimal) -> str:
    """Итог сверки кассы при закрытии смены."""
    return (
        f"{SHIFT_CLOSED}\n"
        f"Наличные: система {format_amount(expected_cash)}, "
        f"факт {format_amount(actual_cash)}, "
        f"разница {format_signed_amount(variance)}."
    )


def variance_alert_text(alert) -> str:
    """Текст оповещения администратора о расхождении кассы."""
    level = "КРИТИЧНО" if alert.severity == "high" else "Внимание"
    return (
        f"⚠️ {level}: расхождение кассы по смене {alert.shift_id}\n"
        f"Сотрудник: {alert.staff_id}\n"
        f"Ожидалось {format_amount(alert.expected)}, "
        f"пересчитано {format_amount(alert.actual)}, "
        f"разница {format_signed_amount(alert.variance)}."
    )
