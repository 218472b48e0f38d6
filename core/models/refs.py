"""Audit models for tracking bill lifecycle actions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditEvent(BaseModel):
    """An audit event for tracking bill lifecycle actions.

    One event is written per state transition and per committed user action
    (match, alias creation, bulk accept), so a bill's full history can be
    replayed from the audit trail.
    """
    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Event timestamp")
    event_type: str = Field(..., description="Type of event (BILL_POSTED, LINE_MATCHED, etc.)")
    severity: AuditSeverity = Field(default=AuditSeverity.INFO, description="Event severity")

    # Context
    tenant_id: Optional[str] = Field(None, description="Tenant scope")
    store_id: Optional[str] = Field(None, description="Store scope")
    bill_id: Optional[str] = Field(None, description="Associated vendor bill")
    invoice_no: Optional[str] = Field(None, description="Associated invoice number")
    line_no: Optional[int] = Field(None, description="Associated bill line")

    # Details
    message: str = Field(..., description="Human-readable message")
    reason: Optional[str] = Field(None, description="Free-text reason supplied by the actor")
    details: dict = Field(default_factory=dict, description="Additional event details")

    # Actor
    actor: str = Field(default="system", description="Who/what performed the action")
