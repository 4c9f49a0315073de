"""Настройки терминала и загрузка переменных окружения."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
import os
from typing import List

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent
ENV_FILE = ROOT_DIR.parent / ".env"

load_dotenv(ENV_FILE)


def _as_bool(value: str | None) -> bool:
    """Приводит строковые значения окружения к bool."""
    return str(value).lower() in {"1", "true", "yes", "on"}


def _as_list(value: str | None) -> List[str]:
    """Преобразует строку с запятыми в список номеров."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _as_datetime(value: str | None) -> datetime | None:
    """Разбирает ISO-дату из окружения, пустое значение -> None."""
    if not value:
        return None
    return datetime.fromisoformat(value.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str
    remote_url: str
    remote_api_key: str | None
    remote_access_token: str | None
    remote_refresh_token: str | None
    terminal_id: str
    timezone: str
    sync_debounce_seconds: float
    sync_interval_seconds: float
    check_interval_seconds: float
    variance_alert_threshold: Decimal
    variance_high_threshold: Decimal
    legacy_sales_fallback_until: datetime | None
    id_instance: str | None
    api_token: str | None
    green_api_host: str
    admin_phones: list[str]
    terminal_debug: bool


settings = Settings(
    database_url=os.getenv("LOCAL_DATABASE_URL", "sqlite:///pos_terminal.db"),
    remote_url=os.getenv("REMOTE_URL", "http://localhost:54321"),
    remote_api_key=os.getenv("REMOTE_API_KEY"),
    remote_access_token=os.getenv("REMOTE_ACCESS_TOKEN"),
    remote_refresh_token=os.getenv("REMOTE_REFRESH_TOKEN"),
    terminal_id=os.getenv("TERMINAL_ID", "terminal-1"),
    timezone=os.getenv("TERMINAL_TZ", "Africa/Lagos"),
    sync_debounce_seconds=float(os.getenv("SYNC_DEBOUNCE_SECONDS", "2")),
    sync_interval_seconds=float(os.getenv("SYNC_INTERVAL_SECONDS", "30")),
    check_interval_seconds=float(os.getenv("CHECK_INTERVAL_SECONDS", "10")),
    variance_alert_threshold=Decimal(os.getenv("VARIANCE_ALERT_THRESHOLD", "1000")),
    variance_high_threshold=Decimal(os.getenv("VARIANCE_HIGH_THRESHOLD", "5000")),
    legacy_sales_fallback_until=_as_datetime(os.getenv("LEGACY_SALES_FALLBACK_UNTIL")),
    id_instance=os.getenv("ID_INSTANCE"),
    api_token=os.getenv("API_TOKEN"),
    green_api_host=os.getenv("GREEN_API_HOST", "https://api.green-api.com"),
    admin_phones=_as_list(os.getenv("ADMIN_PHONES")) or _as_list(os.getenv("ADMIN_PHONE")),
    terminal_debug=_as_bool(os.getenv("TERMINAL_DEBUG", "False")),
)
