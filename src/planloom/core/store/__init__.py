"""
Plan storage.

Exposes the PlanStore protocol and its SQLite implementation.
"""

from .backend import PlanStore, Record, RecordKind
from .sqlite import SqlitePlanStore

__all__ = ["PlanStore", "Record", "RecordKind", "SqlitePlanStore"]
