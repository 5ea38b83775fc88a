"""
SQLite implementation of the PlanStore protocol.

One connection per store, guarded by a re-entrant lock so that each
operation (and each ``transaction()`` block) is atomic with respect to
other threads. Records go in and come out as pydantic models; JSON list
columns and booleans are converted at the boundary.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from planloom.core.errors import StorageFailure, ValidationFailure
from planloom.core.plans.models import utcnow
from planloom.core.store.backend import Record, RecordKind
from planloom.core.store.connection import open_connection
from planloom.core.store.schema import JSON_COLUMNS

logger = logging.getLogger(__name__)


class SqlitePlanStore:
    """
    PlanStore backed by a single SQLite database.

    Example:
        >>> store = SqlitePlanStore(":memory:")
        >>> plan = store.insert(RecordKind.PLAN, {"title": "Ship it"})
        >>> store.get(RecordKind.PLAN, plan.id).title
        'Ship it'
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        try:
            self._conn = open_connection(db_path)
        except sqlite3.Error as e:
            raise StorageFailure("open", e) from e

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["SqlitePlanStore"]:
        """
        Run a block of operations as one all-or-nothing batch.

        Nested calls join the outermost transaction; only the outermost
        block commits or rolls back.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._run("BEGIN", (), "begin")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                try:
                    self._conn.execute("ROLLBACK")
                except sqlite3.Error:
                    logger.exception("Rollback failed")
                raise
            else:
                self._depth = 0
                self._run("COMMIT", (), "commit")

    # ------------------------------------------------------------------
    # Record operations
    # ------------------------------------------------------------------

    def get(self, kind: RecordKind, record_id: str) -> Any | None:
        row = self._fetch_one(
            f'SELECT * FROM {kind.table} WHERE "id" = ?', (record_id,), f"get {kind.value}"
        )
        return self._to_record(kind, row) if row is not None else None

    def list(
        self,
        kind: RecordKind,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[Any]:
        sql = f"SELECT * FROM {kind.table}"
        params: list[Any] = []
        if filters:
            clauses = []
            for field, value in filters.items():
                self._check_field(kind, field)
                clauses.append(f'"{field}" = ?')
                params.append(self._to_column(kind, field, value))
            sql += " WHERE " + " AND ".join(clauses)
        if order_by is not None:
            self._check_field(kind, order_by)
            sql += f' ORDER BY "{order_by}", rowid'
        else:
            sql += " ORDER BY rowid"

        rows = self._fetch_all(sql, tuple(params), f"list {kind.value}")
        return [self._to_record(kind, row) for row in rows]

    def insert(self, kind: RecordKind, fields: dict[str, Any]) -> Any:
        try:
            record = kind.model.model_validate(fields)
        except ValidationError as e:
            raise ValidationFailure(f"Invalid {kind.value}: {e}") from e

        data = record.model_dump(mode="json")
        columns = list(data.keys())
        sql = "INSERT INTO {table} ({cols}) VALUES ({marks})".format(
            table=kind.table,
            cols=", ".join(f'"{c}"' for c in columns),
            marks=", ".join("?" for _ in columns),
        )
        values = tuple(self._to_column(kind, c, data[c]) for c in columns)
        self._run(sql, values, f"insert {kind.value}")
        logger.debug("Inserted %s %s", kind.value, record.id)
        return record

    def update(self, kind: RecordKind, record_id: str, fields: dict[str, Any]) -> Any | None:
        for field in fields:
            self._check_field(kind, field)
            if field in ("id", "created_at"):
                raise ValidationFailure(f"Field '{field}' of a {kind.value} is immutable")

        with self._lock:
            current = self.get(kind, record_id)
            if current is None:
                return None

            merged = {**current.model_dump(), **fields, "updated_at": utcnow()}
            try:
                record = kind.model.model_validate(merged)
            except ValidationError as e:
                raise ValidationFailure(f"Invalid {kind.value} update: {e}") from e

            data = record.model_dump(mode="json")
            changed = [*fields.keys(), "updated_at"]
            sql = "UPDATE {table} SET {assignments} WHERE \"id\" = ?".format(
                table=kind.table,
                assignments=", ".join(f'"{c}" = ?' for c in changed),
            )
            values = tuple(self._to_column(kind, c, data[c]) for c in changed)
            self._run(sql, (*values, record_id), f"update {kind.value}")
            return record

    def delete(self, kind: RecordKind, record_id: str) -> bool:
        cursor = self._run(
            f'DELETE FROM {kind.table} WHERE "id" = ?', (record_id,), f"delete {kind.value}"
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run(self, sql: str, params: tuple[Any, ...], operation: str) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as e:
                raise StorageFailure(operation, e) from e

    def _fetch_one(
        self, sql: str, params: tuple[Any, ...], operation: str
    ) -> dict[str, Any] | None:
        with self._lock:
            cursor = self._run(sql, params, operation)
            try:
                return cursor.fetchone()
            except sqlite3.Error as e:
                raise StorageFailure(operation, e) from e

    def _fetch_all(
        self, sql: str, params: tuple[Any, ...], operation: str
    ) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self._run(sql, params, operation)
            try:
                return cursor.fetchall()
            except sqlite3.Error as e:
                raise StorageFailure(operation, e) from e

    @staticmethod
    def _check_field(kind: RecordKind, field: str) -> None:
        if field not in kind.model.model_fields:
            raise ValidationFailure(f"Unknown {kind.value} field: {field}")

    @staticmethod
    def _to_column(kind: RecordKind, field: str, value: Any) -> Any:
        if field in JSON_COLUMNS[kind.table]:
            return json.dumps(value)
        if hasattr(value, "value"):
            # str enums passed as filters
            return value.value
        if isinstance(value, bool):
            return int(value)
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return value

    @staticmethod
    def _to_record(kind: RecordKind, row: dict[str, Any]) -> Record:
        data = dict(row)
        for column in JSON_COLUMNS[kind.table]:
            if data.get(column) is not None:
                data[column] = json.loads(data[column])
        return kind.model.model_validate(data)
