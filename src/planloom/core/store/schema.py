"""
SQLite schema for the plan store.

Four tables mirror the record kinds: plans, phases, tasks and iterations.
List-valued fields (task ``depends_on``, iteration ``changes``) are stored as
JSON text. Foreign keys have no ON DELETE CASCADE: callers delete children
first, so a stray delete of a parent fails loudly instead of silently
removing work.
"""

import sqlite3

SCHEMA_VERSION = 1

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    description TEXT
);

CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL CHECK(status IN ('draft', 'ready', 'running', 'paused',
                                          'completed', 'failed')),
    created_by TEXT NOT NULL DEFAULT 'user',
    status_reason TEXT,
    status_detail TEXT,

    -- Denormalized counters (recomputed from children after every mutation)
    total_phases INTEGER NOT NULL DEFAULT 0,
    completed_phases INTEGER NOT NULL DEFAULT 0,
    total_tasks INTEGER NOT NULL DEFAULT 0,
    completed_tasks INTEGER NOT NULL DEFAULT 0,

    current_phase_id TEXT,
    current_task_id TEXT,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    started_at TIMESTAMP,
    completed_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS phases (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    "order" INTEGER NOT NULL,
    execution_mode TEXT NOT NULL CHECK(execution_mode IN ('sequential', 'parallel', 'manual')),
    pause_after INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL CHECK(status IN ('pending', 'running', 'completed', 'failed', 'paused')),

    total_tasks INTEGER NOT NULL DEFAULT 0,
    completed_tasks INTEGER NOT NULL DEFAULT 0,
    failed_tasks INTEGER NOT NULL DEFAULT 0,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,

    FOREIGN KEY (plan_id) REFERENCES plans(id),
    UNIQUE(plan_id, "order")
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    phase_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    "order" INTEGER NOT NULL,
    depends_on JSON NOT NULL DEFAULT '[]',
    can_run_in_parallel INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL CHECK(status IN ('pending', 'running', 'completed', 'failed', 'skipped')),
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    correlation_id TEXT,
    output TEXT,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,

    FOREIGN KEY (phase_id) REFERENCES phases(id),
    FOREIGN KEY (plan_id) REFERENCES plans(id)
);

CREATE TABLE IF NOT EXISTS iterations (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL,
    iteration_type TEXT NOT NULL,
    prompt TEXT,
    changes JSON NOT NULL DEFAULT '[]',
    changed_by TEXT NOT NULL,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,

    FOREIGN KEY (plan_id) REFERENCES plans(id)
);

CREATE INDEX IF NOT EXISTS idx_plans_status ON plans(status);
CREATE INDEX IF NOT EXISTS idx_phases_plan ON phases(plan_id);
CREATE INDEX IF NOT EXISTS idx_tasks_phase ON tasks(phase_id);
CREATE INDEX IF NOT EXISTS idx_tasks_plan ON tasks(plan_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_iterations_plan ON iterations(plan_id);
"""

# Columns holding JSON-encoded lists, per table
JSON_COLUMNS: dict[str, frozenset[str]] = {
    "plans": frozenset(),
    "phases": frozenset(),
    "tasks": frozenset({"depends_on"}),
    "iterations": frozenset({"changes"}),
}


def create_schema(conn: sqlite3.Connection) -> None:
    """
    Create tables and indexes, then record the schema version.

    Idempotent - safe to call on every open.

    Args:
        conn: SQLite database connection
    """
    conn.executescript(SCHEMA_DDL)
    conn.execute(
        "INSERT OR REPLACE INTO schema_info (version, description) VALUES (?, ?)",
        (SCHEMA_VERSION, "Plans, phases, tasks and iterations"),
    )


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """
    Get the current schema version.

    Returns:
        Schema version, or None if the schema_info table doesn't exist
    """
    try:
        row = conn.execute("SELECT MAX(version) AS version FROM schema_info").fetchone()
    except sqlite3.OperationalError:
        return None
    if row is None:
        return None
    value = row["version"] if isinstance(row, dict) else row[0]
    return value


def needs_migration(conn: sqlite3.Connection) -> bool:
    """Check if the database is missing the current schema."""
    current_version = get_schema_version(conn)
    if current_version is None:
        return True
    return current_version < SCHEMA_VERSION
