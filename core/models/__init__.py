"""Core data models shared across the engine."""

from core.models.refs import (
    AuditEvent,
    AuditSeverity,
)

__all__ = [
    "AuditEvent",
    "AuditSeverity",
]
