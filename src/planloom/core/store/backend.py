"""
PlanStore protocol.

Defines the keyed storage surface the engine consumes. Every record kind
goes through the same five operations; cascading deletes are the caller's
job (PlanService deletes Iterations -> Tasks -> Phases -> Plan).
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from enum import Enum
from typing import Any, Protocol, Union, runtime_checkable

from planloom.core.plans.models import Iteration, Phase, Plan, Task

Record = Union[Plan, Phase, Task, Iteration]


class RecordKind(str, Enum):
    """Record kinds held by a PlanStore."""

    PLAN = "plan"
    PHASE = "phase"
    TASK = "task"
    ITERATION = "iteration"

    @property
    def table(self) -> str:
        """SQL table backing this kind."""
        return {
            RecordKind.PLAN: "plans",
            RecordKind.PHASE: "phases",
            RecordKind.TASK: "tasks",
            RecordKind.ITERATION: "iterations",
        }[self]

    @property
    def model(self) -> type[Record]:
        """Pydantic model for this kind."""
        return {
            RecordKind.PLAN: Plan,
            RecordKind.PHASE: Phase,
            RecordKind.TASK: Task,
            RecordKind.ITERATION: Iteration,
        }[self]


@runtime_checkable
class PlanStore(Protocol):
    """
    Protocol for plan storage implementations.

    Implementations must provide per-row atomic updates: two updates of the
    same record never lose each other's writes.
    """

    def get(self, kind: RecordKind, record_id: str) -> Any | None:
        """
        Get one record by id.

        Returns:
            The record model, or None if it doesn't exist

        Raises:
            StorageFailure: If the read fails
        """
        ...

    def list(
        self,
        kind: RecordKind,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[Any]:
        """
        List records matching equality filters.

        Args:
            kind: Record kind
            filters: Field -> value equality filters (ANDed)
            order_by: Field to sort by (ascending); ties keep insertion order

        Returns:
            Matching records
        """
        ...

    def insert(self, kind: RecordKind, fields: dict[str, Any]) -> Any:
        """
        Insert a record built from ``fields`` (ids/timestamps default).

        Returns:
            The stored record
        """
        ...

    def update(self, kind: RecordKind, record_id: str, fields: dict[str, Any]) -> Any | None:
        """
        Update fields of a record.

        Returns:
            The updated record, or None if it doesn't exist
        """
        ...

    def delete(self, kind: RecordKind, record_id: str) -> bool:
        """
        Delete one record (no cascade).

        Returns:
            True if a record was deleted
        """
        ...

    def transaction(self) -> AbstractContextManager[Any]:
        """
        All-or-nothing batch. Nested use joins the outer transaction.
        """
        ...

