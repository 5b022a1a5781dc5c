# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Transactional ledger storage.

Every command runs inside one ``LedgerStore.transaction()``. Writes made
through the session become visible together when the block exits normally;
any exception discards all of them.

Backends:
    memory    in-process, serialised by a lock (default, tests)
    postgres  one psycopg2 transaction, ``SELECT ... FOR UPDATE`` on reads
              that precede a write
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from .exceptions import ConfigException, NotFoundError, StateConflictError
from .models import Record, encode_value

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


class LedgerSession(ABC):
    """Unit of work handed out by ``LedgerStore.transaction()``."""

    @abstractmethod
    def get(self, cls: type[R], record_id: str, for_update: bool = False) -> R | None:
        """Load a record by id, or None. ``for_update`` locks the row until commit."""
        ...

    @abstractmethod
    def put(self, record: Record) -> None:
        """Insert or replace a record."""
        ...

    @abstractmethod
    def insert(self, record: Record) -> None:
        """Insert a record whose id must be new.

        Raises:
            StateConflictError: If a record of the same kind and id exists.
        """
        ...

    @abstractmethod
    def find(self, cls: type[R], **filters: Any) -> list[R]:
        """Records of ``cls`` whose fields equal every filter value."""
        ...

    def require(self, cls: type[R], record_id: str, for_update: bool = False) -> R:
        record = self.get(cls, record_id, for_update=for_update)
        if record is None:
            raise NotFoundError(cls.__name__, record_id)
        return record

    def exists(self, cls: type[Record], record_id: str) -> bool:
        return self.get(cls, record_id) is not None


class LedgerStore(ABC):
    """Storage backend for the settlement ledgers."""

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager yielding a LedgerSession."""
        ...

    def load(self, cls: type[R], record_id: str) -> R:
        """Read one record outside any command."""
        with self.transaction() as session:
            return session.require(cls, record_id)

    def find_all(self, cls: type[R], **filters: Any) -> list[R]:
        with self.transaction() as session:
            return session.find(cls, **filters)


def _matches(data: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(data.get(key) == value for key, value in filters.items())


# =============================================================================
# MEMORY BACKEND
# =============================================================================


class _MemorySession(LedgerSession):
    def __init__(self, committed: dict[tuple[str, str], dict[str, Any]]) -> None:
        self._committed = committed
        self._pending: dict[tuple[str, str], dict[str, Any]] = {}

    def _lookup(self, key: tuple[str, str]) -> dict[str, Any] | None:
        if key in self._pending:
            return self._pending[key]
        return self._committed.get(key)

    def get(self, cls: type[R], record_id: str, for_update: bool = False) -> R | None:
        data = self._lookup((cls.record_kind, record_id))
        if data is None:
            return None
        return cls.from_dict(copy.deepcopy(data))

    def put(self, record: Record) -> None:
        self._pending[(record.record_kind, record.id)] = record.to_dict()  # type: ignore[attr-defined]

    def insert(self, record: Record) -> None:
        key = (record.record_kind, record.id)  # type: ignore[attr-defined]
        if self._lookup(key) is not None:
            raise StateConflictError(f"{type(record).__name__} already exists: {key[1]}")
        self.put(record)

    def find(self, cls: type[R], **filters: Any) -> list[R]:
        wanted = {k: encode_value(v) for k, v in filters.items()}
        merged = {k: v for k, v in self._committed.items() if k[0] == cls.record_kind}
        merged.update({k: v for k, v in self._pending.items() if k[0] == cls.record_kind})
        return [cls.from_dict(copy.deepcopy(data)) for data in merged.values() if _matches(data, wanted)]

    def writes(self) -> Iterator[tuple[tuple[str, str], dict[str, Any]]]:
        return iter(self._pending.items())


class MemoryLedgerStore(LedgerStore):
    """In-memory ledger store.

    Suitable for development, tests and single-process deployments.
    Everything is lost on restart.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Generator[LedgerSession, None, None]:
        with self._lock:
            session = _MemorySession(self._records)
            yield session
            self._apply(session)

    def _apply(self, session: _MemorySession) -> None:
        for key, data in session.writes():
            self._records[key] = data

    def count(self, kind: str) -> int:
        with self._lock:
            return sum(1 for k in self._records if k[0] == kind)

    def clear(self) -> None:
        """Drop every record (useful for testing)."""
        with self._lock:
            self._records.clear()


# =============================================================================
# POSTGRES BACKEND
# =============================================================================


class _PostgresSession(LedgerSession):
    def __init__(self, cur: Any) -> None:
        self._cur = cur

    def get(self, cls: type[R], record_id: str, for_update: bool = False) -> R | None:
        sql = "SELECT data FROM ledger_records WHERE kind = %s AND id = %s"
        if for_update:
            sql += " FOR UPDATE"
        self._cur.execute(sql, (cls.record_kind, record_id))
        row = self._cur.fetchone()
        if row is None:
            return None
        return cls.from_dict(row["data"])

    def put(self, record: Record) -> None:
        self._cur.execute(
            """
            INSERT INTO ledger_records (kind, id, data)
            VALUES (%s, %s, %s::jsonb)
            ON CONFLICT (kind, id) DO UPDATE SET data = EXCLUDED.data, updated_at = now()
            """,
            (record.record_kind, record.id, json.dumps(record.to_dict())),  # type: ignore[attr-defined]
        )

    def insert(self, record: Record) -> None:
        self._cur.execute(
            """
            INSERT INTO ledger_records (kind, id, data)
            VALUES (%s, %s, %s::jsonb)
            ON CONFLICT (kind, id) DO NOTHING
            RETURNING id
            """,
            (record.record_kind, record.id, json.dumps(record.to_dict())),  # type: ignore[attr-defined]
        )
        if self._cur.fetchone() is None:
            raise StateConflictError(f"{type(record).__name__} already exists: {record.id}")  # type: ignore[attr-defined]

    def find(self, cls: type[R], **filters: Any) -> list[R]:
        wanted = {k: encode_value(v) for k, v in filters.items()}
        self._cur.execute(
            "SELECT data FROM ledger_records WHERE kind = %s AND data @> %s::jsonb ORDER BY created_at",
            (cls.record_kind, json.dumps(wanted)),
        )
        return [cls.from_dict(row["data"]) for row in self._cur.fetchall()]


class PostgresLedgerStore(LedgerStore):
    """PostgreSQL ledger store.

    Records are JSONB documents keyed by ``(kind, id)``. Each transaction is
    one database transaction from the shared psycopg2 pool.
    """

    def __init__(self, create_schema: bool = True) -> None:
        from . import db

        self._db = db
        if create_schema:
            db.init_schema()

    @contextmanager
    def transaction(self) -> Generator[LedgerSession, None, None]:
        with self._db.get_cursor() as cur:
            yield _PostgresSession(cur)


# =============================================================================
# FACTORY
# =============================================================================


def create_store(backend: str | None = None) -> LedgerStore:
    """Build the configured store ("memory" or "postgres")."""
    from .config import get_config

    name = (backend or get_config().storage_backend).lower()
    if name == "memory":
        logger.info("Using in-memory ledger store")
        return MemoryLedgerStore()
    if name == "postgres":
        logger.info("Using PostgreSQL ledger store")
        return PostgresLedgerStore()
    raise ConfigException(f"Unknown storage backend: {name}", missing_vars=["SCIFLOW_STORAGE_BACKEND"])
