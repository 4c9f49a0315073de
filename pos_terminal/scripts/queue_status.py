"""Печатает очередь неотправленных операций и счётчики неудач."""

from pos_terminal.core.db import create_schema
from pos_terminal.services.queue import FailureLedger, PendingOperationQueue
from pos_terminal.services.state import TerminalState


def main() -> None:
    create_schema()
    state = TerminalState()
    queue = PendingOperationQueue(state=state)
    failures = FailureLedger().load()
    operations = queue.all()

    last_online = state.get_last_online()
    print(f"Флаг синхронизации: {'да' if queue.has_pending else 'нет'}")
    print(f"Последний раз онлайн: {last_online.isoformat() if last_online else '-'}")

    if not operations:
        print("Очередь пуста.")
        return

    print(f"В очереди {len(operations)}:")
    for op in operations:
        attempts = failures.get(op.queue_entry_id, 0)
        stamp = op.timestamp.isoformat() if op.timestamp else "-"
        print(
            f"  {stamp} {op.type.value:<6} {op.resource}#{op.target_record_id} "
            f"(запись {op.queue_entry_id}, неудач {attempts})"
        )


if __name__ == "__main__":
    main()
