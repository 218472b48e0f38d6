"""API Routes Package."""

from api.routes import aliases, bills, health

__all__ = [
    "aliases",
    "bills",
    "health",
]
