"""API Package.

FastAPI server for the vendor bill reconciliation engine.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
