"""Тесты очереди отложенных операций и журнала неудач."""

import pytest

from pos_terminal.core.models import OperationType
from pos_terminal.services.queue import (
    FailureLedger,
    PendingOperationQueue,
    QueuedOperation,
    ValidationError,
)
from pos_terminal.services.state import TerminalState

from conftest import NOW


def _update(record_id, **data):
    return QueuedOperation.new(OperationType.UPDATE, "products", data, target_record_id=record_id, now=NOW)


def test_enqueue_sets_flag_and_keeps_order(queue):
    first = queue.enqueue(_update("p1", price="100"))
    second = queue.enqueue(_update("p2", price="200"))
    assert queue.has_pending is True
    assert [op.queue_entry_id for op in queue.all()] == [first.queue_entry_id, second.queue_entry_id]
    assert queue.count() == 2


def test_queue_survives_restart(session_factory, queue):
    op = queue.enqueue(_update("p1", price="100"))

    restarted = PendingOperationQueue(session_factory, TerminalState(session_factory))
    assert restarted.has_pending is True
    stored = restarted.get(op.queue_entry_id)
    assert stored.target_record_id == "p1"
    assert stored.type is OperationType.UPDATE
    assert stored.data == {"price": "100"}
    assert stored.timestamp == NOW


def test_create_gets_own_entry_id_and_record_id():
    op = QueuedOperation.new("create", "sales", {"id": "sale-1", "total": "500"})
    assert op.target_record_id == "sale-1"
    assert op.queue_entry_id != op.target_record_id

    generated = QueuedOperation.new("create", "customers", {"name": "Ada"})
    assert generated.target_record_id


def test_dequeue_removes_only_given_ids(queue):
    first = queue.enqueue(_update("p1", price="100"))
    snapshot = queue.all()
    late = queue.enqueue(_update("p2", price="200"))

    removed = queue.dequeue_confirmed([op.queue_entry_id for op in snapshot])
    assert removed == 1
    assert queue.get(first.queue_entry_id) is None
    assert [op.queue_entry_id for op in queue.all()] == [late.queue_entry_id]
    assert queue.has_pending is True


def test_dequeue_last_clears_flag(queue):
    op = queue.enqueue(_update("p1", price="100"))
    queue.dequeue_confirmed([op.queue_entry_id])
    assert queue.count() == 0
    assert queue.has_pending is False


def test_dequeue_empty_is_noop(queue):
    queue.enqueue(_update("p1", price="100"))
    assert queue.dequeue_confirmed([]) == 0
    assert queue.count() == 1


@pytest.mark.parametrize(
    "op",
    [
        QueuedOperation.new("update", "products", {}, target_record_id="p1"),
        QueuedOperation.new("update", "", {"price": "1"}, target_record_id="p1"),
        QueuedOperation.new("delete", "products", target_record_id=None),
    ],
)
def test_enqueue_rejects_invalid_operations(queue, op):
    with pytest.raises(ValidationError):
        queue.enqueue(op)
    assert queue.count() == 0
    assert queue.has_pending is False


def test_unknown_operation_type_rejected():
    with pytest.raises(ValidationError):
        QueuedOperation.new("upsert", "products", {"price": "1"}, target_record_id="p1")


def test_delete_without_data_is_valid(queue):
    queue.enqueue(QueuedOperation.new("delete", "products", target_record_id="p1"))
    assert queue.all()[0].type is OperationType.DELETE


def test_ledger_save_replaces_counts(session_factory):
    ledger = FailureLedger(session_factory)
    ledger.save({"a": 1, "b": 2}, {"a": "timeout"})
    assert ledger.load() == {"a": 1, "b": 2}

    ledger.save({"b": 3})
    assert ledger.load() == {"b": 3}
    assert ledger.get("a") == 0

    ledger.clear("b")
    assert ledger.load() == {}
