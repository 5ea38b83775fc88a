"""
FastAPI dependencies.
"""

from fastapi import Request

from planloom.core.engine import Engine


def get_engine(request: Request) -> Engine:
    """The Engine the app was created with (or built at startup)."""
    engine: Engine = request.app.state.engine
    return engine
