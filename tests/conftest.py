"""Базовые фикстуры для тестов сервисов терминала."""

import os
import sys
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Добавляем корень проекта в PYTHONPATH для pytest внутри контейнера
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from pos_terminal.clients.backend import AuthError, BackendError
from pos_terminal.core.models import Base
from pos_terminal.services.conflicts import ConflictStore
from pos_terminal.services.connectivity import ConnectivityMonitor
from pos_terminal.services.notices import Notifier
from pos_terminal.services.queue import FailureLedger, PendingOperationQueue
from pos_terminal.services.reconciliation import ReconciliationCalculator
from pos_terminal.services.shifts import ShiftManager
from pos_terminal.services.state import TerminalState
from pos_terminal.services.sync import SyncEngine
from pos_terminal.utils.timezones import parse_timestamp, to_iso

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Управляемые часы для тестов."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeBackend:
    """Удалённая система учёта в памяти с программируемыми сбоями."""

    def __init__(self, clock) -> None:
        self.clock = clock
        self.tables: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple] = []
        self.sales_rpc: list[dict] = []
        self._failures: list[dict] = []

    def fail(self, method: str, error: Exception, times: int | None = 1, record_id: str | None = None) -> None:
        """Следующие times вызовов method (для record_id) бросят error; None означает всегда."""
        self._failures.append({"method": method, "error": error, "times": times, "record_id": record_id})

    def heal(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, method: str, record_id: str | None = None) -> None:
        for item in self._failures:
            if item["method"] != method:
                continue
            if item["record_id"] is not None and item["record_id"] != record_id:
                continue
            if item["times"] is not None:
                item["times"] -= 1
                if item["times"] <= 0:
                    self._failures.remove(item)
            raise item["error"]

    def put(self, resource: str, record: dict) -> dict:
        self.tables.setdefault(resource, {})[str(record["id"])] = dict(record)
        return record

    def fetch(self, resource, record_id):
        self.calls.append(("fetch", resource, record_id))
        self._maybe_fail("fetch", record_id)
        record = self.tables.get(resource, {}).get(str(record_id))
        return dict(record) if record else None

    def select(self, resource, *, eq=None, in_=None, gte=None, lte=None, order=None):
        self.calls.append(("select", resource, eq, in_, gte, lte))
        self._maybe_fail("select")
        rows = []
        for record in self.tables.get(resource, {}).values():
            if any(str(record.get(key)) != str(value) for key, value in (eq or {}).items()):
                continue
            if any(str(record.get(key)) not in {str(v) for v in values} for key, values in (in_ or {}).items()):
                continue
            if any(parse_timestamp(record.get(key)) < parse_timestamp(value) for key, value in (gte or {}).items()):
                continue
            if any(parse_timestamp(record.get(key)) > parse_timestamp(value) for key, value in (lte or {}).items()):
                continue
            rows.append(dict(record))
        return rows

    def insert(self, resource, data):
        self.calls.append(("insert", resource, data.get("id")))
        self._maybe_fail("insert", data.get("id"))
        record = {**data, "updated_at": to_iso(self.clock())}
        return dict(self.put(resource, record))

    def update(self, resource, record_id, patch):
        self.calls.append(("update", resource, record_id))
        self._maybe_fail("update", record_id)
        table = self.tables.get(resource, {})
        if str(record_id) not in table:
            return None
        table[str(record_id)].update(patch)
        table[str(record_id)]["updated_at"] = to_iso(self.clock())
        return dict(table[str(record_id)])

    def delete(self, resource, record_id):
        self.calls.append(("delete", resource, record_id))
        self._maybe_fail("delete", record_id)
        self.tables.get(resource, {}).pop(str(record_id), None)

    def complete_sale(self, payload):
        self.calls.append(("complete_sale", payload.get("id")))
        self._maybe_fail("complete_sale", payload.get("id"))
        self.sales_rpc.append(dict(payload))
        return {"ok": True}

    def method_calls(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]


class FakeSessions:
    """Сессии: refresh либо успешен, либо бросает ошибку."""

    def __init__(self) -> None:
        self.refresh_error: Exception | None = None
        self.refresh_calls = 0
        self.on_refresh = None

    def get_session(self):
        return {"access_token": "token"}

    def refresh_session(self):
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        if self.on_refresh is not None:
            self.on_refresh()
        return {"access_token": "fresh"}


class FakeTimer:
    """Подмена threading.Timer: срабатывает только по fire()."""

    created: list["FakeTimer"] = []

    def __init__(self, interval, function) -> None:
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function()


class RecordingAlerts:
    def __init__(self) -> None:
        self.texts: list[str] = []
        self.variance_alerts: list = []

    def send_text(self, message):
        self.texts.append(message)
        return []

    def send_variance_alert(self, alert):
        self.variance_alerts.append(alert)
        return []


@pytest.fixture(scope="function")
def engine():
    """Тестовый SQLite engine (in-memory, общий для всех сессий в тесте)."""
    url = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    eng = create_engine(
        url,
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield eng
    eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    """Фабрика сессий с чистой схемой перед каждым тестом."""
    with engine.begin() as conn:
        Base.metadata.drop_all(bind=conn)
        Base.metadata.create_all(bind=conn)

    factory = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )

    # Подменяем глобальные ссылки на engine/SessionLocal
    import pos_terminal.core.db as db

    db.SessionLocal = factory
    db.engine = engine
    return factory


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def backend(clock):
    return FakeBackend(clock)


@pytest.fixture()
def sessions():
    return FakeSessions()


@pytest.fixture()
def alerts():
    return RecordingAlerts()


@pytest.fixture()
def notifier():
    return Notifier()


@pytest.fixture()
def notices(notifier):
    """Список сообщений, доставленных подписчикам."""
    received = []
    notifier.subscribe(received.append)
    return received


@pytest.fixture()
def state(session_factory):
    return TerminalState(session_factory)


@pytest.fixture()
def queue(session_factory, state):
    return PendingOperationQueue(session_factory, state)


@pytest.fixture()
def ledger(session_factory):
    return FailureLedger(session_factory)


@pytest.fixture()
def conflicts():
    return ConflictStore()


@pytest.fixture()
def timers():
    FakeTimer.created = []
    return FakeTimer.created


@pytest.fixture()
def monitor(state, queue, notifier, clock, timers):
    return ConnectivityMonitor(
        state,
        queue,
        notifier,
        debounce_seconds=2.0,
        initially_online=True,
        timer_factory=FakeTimer,
        clock=clock,
    )


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def sync_engine(backend, sessions, queue, ledger, conflicts, monitor, notifier, alerts, sleeps, clock):
    return SyncEngine(
        backend,
        sessions,
        queue,
        ledger,
        conflicts,
        monitor,
        notifier,
        alerts=alerts,
        sleep=sleeps.append,
        clock=clock,
    )


@pytest.fixture()
def reconciliation(backend, clock):
    return ReconciliationCalculator(backend, clock=clock)


@pytest.fixture()
def shift_manager(backend, queue, monitor, state, reconciliation, notifier, alerts, clock):
    return ShiftManager(
        backend,
        queue,
        monitor,
        state,
        reconciliation,
        notifier,
        alerts=alerts,
        tz="Africa/Lagos",
        clock=clock,
    )


@pytest.fixture()
def network_error():
    return BackendError("connection reset", None)


@pytest.fixture()
def auth_error():
    return AuthError("JWT expired", 401)
