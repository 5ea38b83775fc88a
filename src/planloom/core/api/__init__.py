"""
HTTP API for planloom.

API Endpoints:
- /api/plans - plan CRUD, lifecycle control and the SSE progress stream
- /api/phases - phase edits and task creation
- /api/tasks - task edits, retry and manual trigger
- /api/plans/{id}/refine - streaming refinement and proposal review
"""

from planloom.core.api.app import create_app

__all__ = ["create_app"]
