"""Core engine modules for planloom."""
