"""Tests for the SQLite plan store."""

import pytest

from planloom.core.errors import StorageFailure, ValidationFailure
from planloom.core.plans.models import (
    ExecutionMode,
    IterationType,
    PlanStatus,
    TaskStatus,
)
from planloom.core.store import PlanStore, RecordKind, SqlitePlanStore
from planloom.core.store.connection import open_connection
from planloom.core.store.schema import SCHEMA_VERSION, get_schema_version, needs_migration


@pytest.fixture
def plan(store):
    return store.insert(RecordKind.PLAN, {"title": "Ship it"})


@pytest.fixture
def phase(store, plan):
    return store.insert(
        RecordKind.PHASE,
        {"plan_id": plan.id, "title": "Build", "order": 0, "execution_mode": ExecutionMode.PARALLEL},
    )


class TestSchema:
    def test_fresh_database_has_current_schema(self, tmp_path):
        conn = open_connection(tmp_path / "nested" / "plans.db")
        try:
            assert get_schema_version(conn) == SCHEMA_VERSION
            assert needs_migration(conn) is False
        finally:
            conn.close()

    def test_store_satisfies_protocol(self, store):
        assert isinstance(store, PlanStore)


class TestRecordOperations:
    def test_insert_and_get(self, store, plan):
        loaded = store.get(RecordKind.PLAN, plan.id)
        assert loaded == plan
        assert loaded.status == PlanStatus.DRAFT

    def test_get_missing(self, store):
        assert store.get(RecordKind.PLAN, "plan-missing") is None

    def test_json_and_bool_columns_round_trip(self, store, plan, phase):
        first = store.insert(
            RecordKind.TASK,
            {"phase_id": phase.id, "plan_id": plan.id, "title": "A", "order": 0},
        )
        second = store.insert(
            RecordKind.TASK,
            {
                "phase_id": phase.id,
                "plan_id": plan.id,
                "title": "B",
                "order": 1,
                "depends_on": [first.id],
                "can_run_in_parallel": True,
            },
        )
        loaded = store.get(RecordKind.TASK, second.id)
        assert loaded.depends_on == [first.id]
        assert loaded.can_run_in_parallel is True

        iteration = store.insert(
            RecordKind.ITERATION,
            {"plan_id": plan.id, "iteration_type": IterationType.INITIAL, "changes": [{"a": 1}]},
        )
        assert store.get(RecordKind.ITERATION, iteration.id).changes == [{"a": 1}]

    def test_list_filters_and_order(self, store, plan, phase):
        for order, title in [(2, "C"), (0, "A"), (1, "B")]:
            store.insert(
                RecordKind.TASK,
                {"phase_id": phase.id, "plan_id": plan.id, "title": title, "order": order},
            )
        tasks = store.list(RecordKind.TASK, {"phase_id": phase.id}, order_by="order")
        assert [t.title for t in tasks] == ["A", "B", "C"]

        store.update(RecordKind.TASK, tasks[1].id, {"status": TaskStatus.FAILED})
        failed = store.list(RecordKind.TASK, {"status": TaskStatus.FAILED})
        assert [t.title for t in failed] == ["B"]

    def test_update_returns_merged_record(self, store, plan):
        updated = store.update(RecordKind.PLAN, plan.id, {"title": "Renamed"})
        assert updated.title == "Renamed"
        assert updated.updated_at >= plan.updated_at
        assert store.get(RecordKind.PLAN, plan.id).title == "Renamed"

    def test_update_missing_returns_none(self, store):
        assert store.update(RecordKind.PLAN, "plan-missing", {"title": "x"}) is None

    def test_update_rejects_unknown_and_immutable_fields(self, store, plan):
        with pytest.raises(ValidationFailure):
            store.update(RecordKind.PLAN, plan.id, {"colour": "red"})
        with pytest.raises(ValidationFailure):
            store.update(RecordKind.PLAN, plan.id, {"id": "plan-other"})

    def test_update_validates_values(self, store, plan):
        with pytest.raises(ValidationFailure):
            store.update(RecordKind.PLAN, plan.id, {"title": ""})

    def test_insert_invalid_record(self, store):
        with pytest.raises(ValidationFailure):
            store.insert(RecordKind.PLAN, {"title": ""})

    def test_insert_orphan_phase_is_storage_failure(self, store):
        with pytest.raises(StorageFailure):
            store.insert(RecordKind.PHASE, {"plan_id": "plan-missing", "title": "x", "order": 0})

    def test_delete(self, store, plan):
        assert store.delete(RecordKind.PLAN, plan.id) is True
        assert store.delete(RecordKind.PLAN, plan.id) is False
        assert store.get(RecordKind.PLAN, plan.id) is None


class TestTransactions:
    def test_commit(self, store):
        with store.transaction():
            plan = store.insert(RecordKind.PLAN, {"title": "Kept"})
        assert store.get(RecordKind.PLAN, plan.id) is not None

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                plan = store.insert(RecordKind.PLAN, {"title": "Dropped"})
                raise RuntimeError("boom")
        assert store.get(RecordKind.PLAN, plan.id) is None

    def test_nested_transactions_join_outer(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    plan = store.insert(RecordKind.PLAN, {"title": "Inner"})
                raise RuntimeError("outer fails")
        assert store.get(RecordKind.PLAN, plan.id) is None

    def test_file_store_persists(self, tmp_path):
        path = tmp_path / "plans.db"
        first = SqlitePlanStore(path)
        plan = first.insert(RecordKind.PLAN, {"title": "Durable"})
        first.close()

        second = SqlitePlanStore(path)
        try:
            assert second.get(RecordKind.PLAN, plan.id).title == "Durable"
        finally:
            second.close()
