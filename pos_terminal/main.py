import logging
import threading
import time
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from pos_terminal.clients.backend import BackendClient, SessionStore
from pos_terminal.clients.whatsapp import LoggingAlertSender, WhatsAppAlertSender
from pos_terminal.config import Settings, settings
from pos_terminal.core.db import create_schema
from pos_terminal.services.conflicts import ConflictStore
from pos_terminal.services.connectivity import ConnectivityMonitor
from pos_terminal.services.notices import Notifier
from pos_terminal.services.queue import FailureLedger, PendingOperationQueue
from pos_terminal.services.reconciliation import ReconciliationCalculator
from pos_terminal.services.shifts import ShiftManager
from pos_terminal.services.state import TerminalState
from pos_terminal.services.sync import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class Terminal:
    """Сервисы терминала, созданные один раз на процесс."""

    state: TerminalState
    queue: PendingOperationQueue
    ledger: FailureLedger
    conflicts: ConflictStore
    notifier: Notifier
    monitor: ConnectivityMonitor
    sessions: SessionStore
    backend: BackendClient
    engine: SyncEngine
    reconciliation: ReconciliationCalculator
    shifts: ShiftManager


def build_alerts(config: Settings):
    if config.id_instance and config.api_token and config.admin_phones:
        return WhatsAppAlertSender(
            base_url=config.green_api_host,
            api_token=config.api_token,
            id_instance=config.id_instance,
            phones=config.admin_phones,
        )
    logger.info("Green API is not configured, alerts go to the log")
    return LoggingAlertSender()


def build_terminal(config: Settings = settings, session_factory: sessionmaker | None = None) -> Terminal:
    state = TerminalState(session_factory)
    queue = PendingOperationQueue(session_factory, state)
    ledger = FailureLedger(session_factory)
    conflicts = ConflictStore()
    notifier = Notifier()
    alerts = build_alerts(config)
    monitor = ConnectivityMonitor(
        state,
        queue,
        notifier,
        debounce_seconds=config.sync_debounce_seconds,
    )
    sessions = SessionStore(
        config.remote_url,
        config.remote_api_key,
        access_token=config.remote_access_token,
        refresh_token=config.remote_refresh_token,
    )
    backend = BackendClient(config.remote_url, config.remote_api_key, sessions)
    engine = SyncEngine(
        backend,
        sessions,
        queue,
        ledger,
        conflicts,
        monitor,
        notifier,
        alerts=alerts,
    )
    reconciliation = ReconciliationCalculator(
        backend,
        threshold=config.variance_alert_threshold,
        high_threshold=config.variance_high_threshold,
        legacy_fallback_until=config.legacy_sales_fallback_until,
    )
    shifts = ShiftManager(
        backend,
        queue,
        monitor,
        state,
        reconciliation,
        notifier,
        alerts=alerts,
        tz=config.timezone,
    )
    return Terminal(
        state=state,
        queue=queue,
        ledger=ledger,
        conflicts=conflicts,
        notifier=notifier,
        monitor=monitor,
        sessions=sessions,
        backend=backend,
        engine=engine,
        reconciliation=reconciliation,
        shifts=shifts,
    )


def run_forever(terminal: Terminal, config: Settings = settings, stop: threading.Event | None = None) -> None:
    """Пробует связь и периодически запускает синхронизацию."""
    stop = stop or threading.Event()
    next_sync = 0.0
    while not stop.is_set():
        online = terminal.monitor.check_connection(terminal.backend.ping)
        now = time.monotonic()
        if online and now >= next_sync:
            report = terminal.engine.sync()
            if report.skipped:
                logger.debug("periodic sync skipped: %s", report.skipped)
            next_sync = now + config.sync_interval_seconds
        stop.wait(config.check_interval_seconds)


def main() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.terminal_debug else logging.INFO,
        format="%(asctime)s:pos_terminal:%(levelname)s:%(message)s",
    )
    create_schema()
    terminal = build_terminal()
    logger.info(
        "terminal %s started, %s operations pending",
        settings.terminal_id,
        terminal.queue.count(),
    )
    try:
        run_forever(terminal)
    except KeyboardInterrupt:
        logger.info("terminal stopped")
    finally:
        terminal.monitor.cancel_pending()


if __name__ == "__main__":
    main()
