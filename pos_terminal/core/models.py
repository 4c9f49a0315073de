"""ORM-модели локального состояния терминала."""

import enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Базовый класс для ORM."""


class OperationType(str, enum.Enum):
    """Тип отложенной операции."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PendingOperation(Base):
    """Неподтверждённая мутация удалённой записи (очередь FIFO)."""

    __tablename__ = "pending_operations"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    queue_entry_id = Column(String(64), unique=True, nullable=False)
    target_record_id = Column(String(64), nullable=False, index=True)
    op_type = Column(
        Enum(
            OperationType,
            name="operation_type",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        nullable=False,
    )
    resource = Column(String(64), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    snapshot = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False)


class SyncFailure(Base):
    """Счётчик подряд неудачных циклов синхронизации операции."""

    __tablename__ = "sync_failures"

    queue_entry_id = Column(String(64), primary_key=True)
    attempts = Column(Integer, nullable=False, server_default="0")
    last_error = Column(Text)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class TerminalStateEntry(Base):
    """Пара ключ/значение состояния терминала (флаги, снимки смен)."""

    __tablename__ = "terminal_state"

    key = Column(String(128), primary_key=True)
    value = Column(JSON)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
