"""Task scheduling: dependency resolution within a phase."""

from .resolver import PhaseGraph, check_deadlock, resolve_next_batch

__all__ = ["PhaseGraph", "check_deadlock", "resolve_next_batch"]
