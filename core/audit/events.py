"""Audit event logging and persistence.

Provides structured audit logging for every bill lifecycle action, from
ingestion through posting, reopen and void. Supports multiple persistence
backends. Audit writes never block or fail the primary operation.
"""

import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from core.models.refs import AuditEvent, AuditSeverity
from core.observability.logging import get_logger

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    """Standard audit event types."""
    # Bill lifecycle
    BILL_CREATED = "BILL_CREATED"
    BILL_REVIEW_STARTED = "BILL_REVIEW_STARTED"
    BILL_POSTED = "BILL_POSTED"
    POSTING_FAILED = "POSTING_FAILED"
    BILL_REOPENED = "BILL_REOPENED"
    BILL_VOIDED = "BILL_VOIDED"

    # Line matching
    LINE_MATCHED = "LINE_MATCHED"
    LINES_BULK_ACCEPTED = "LINES_BULK_ACCEPTED"

    # Alias learning
    ALIAS_CREATED = "ALIAS_CREATED"

    # Catalog
    PRODUCT_CREATED = "PRODUCT_CREATED"


def create_audit_event(
    event_type: AuditEventType,
    message: str,
    severity: AuditSeverity = AuditSeverity.INFO,
    tenant_id: Optional[str] = None,
    store_id: Optional[str] = None,
    bill_id: Optional[str] = None,
    invoice_no: Optional[str] = None,
    line_no: Optional[int] = None,
    reason: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    actor: str = "system",
) -> AuditEvent:
    """Create a new audit event with auto-generated ID and timestamp.

    Args:
        event_type: Type of event
        message: Human-readable message
        severity: Event severity level
        tenant_id: Tenant scope
        store_id: Store scope
        bill_id: Associated vendor bill ID
        invoice_no: Associated invoice number
        line_no: Associated line number
        reason: Free-text reason (reopen, void)
        details: Additional structured details
        actor: Who/what performed the action

    Returns:
        Configured AuditEvent ready for logging
    """
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        timestamp=datetime.utcnow(),
        event_type=event_type.value,
        severity=severity,
        tenant_id=tenant_id,
        store_id=store_id,
        bill_id=bill_id,
        invoice_no=invoice_no,
        line_no=line_no,
        reason=reason,
        message=message,
        details=details or {},
        actor=actor,
    )


def _matches(
    event: AuditEvent,
    event_type: Optional[str],
    bill_id: Optional[str],
    start_time: Optional[datetime],
    end_time: Optional[datetime],
) -> bool:
    if event_type and event.event_type != event_type:
        return False
    if bill_id and event.bill_id != bill_id:
        return False
    if start_time and event.timestamp < start_time:
        return False
    if end_time and event.timestamp > end_time:
        return False
    return True


class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def log(self, event: AuditEvent) -> None:
        """Persist an audit event."""
        pass

    @abstractmethod
    def query(
        self,
        event_type: Optional[str] = None,
        bill_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events with filters, oldest first."""
        pass


class JSONFileAuditBackend(AuditBackend):
    """Audit backend that stores events in JSON files.

    Stores one file per day in YYYY-MM-DD.json format.
    """

    def __init__(self, base_path: Path):
        """Initialize with base directory for audit files."""
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _get_file_path(self, date: datetime) -> Path:
        """Get file path for a given date."""
        return self.base_path / f"{date.strftime('%Y-%m-%d')}.json"

    def log(self, event: AuditEvent) -> None:
        """Append event to daily file."""
        file_path = self._get_file_path(event.timestamp)

        with self._lock:
            events = []
            if file_path.exists():
                with open(file_path, "r", encoding="utf-8") as f:
                    events = json.load(f)

            events.append(event.model_dump(mode="json"))

            with open(file_path, "w", encoding="utf-8") as f:
                json.dump(events, f, indent=2)

    def query(
        self,
        event_type: Optional[str] = None,
        bill_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from JSON files."""
        results = []

        files = sorted(self.base_path.glob("*.json"))
        if start_time is not None:
            first = self._get_file_path(start_time).name
            files = [f for f in files if f.name >= first]
        if end_time is not None:
            last = self._get_file_path(end_time).name
            files = [f for f in files if f.name <= last]

        for file_path in files:
            with open(file_path, "r", encoding="utf-8") as f:
                events = json.load(f)

            for event_data in events:
                event = AuditEvent.model_validate(event_data)
                if not _matches(event, event_type, bill_id, start_time, end_time):
                    continue
                results.append(event)
                if len(results) >= limit:
                    return results

        return results


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for testing."""

    def __init__(self):
        self._events: List[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        self._events.append(event)

    def query(
        self,
        event_type: Optional[str] = None,
        bill_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        results = []
        for event in self._events:
            if not _matches(event, event_type, bill_id, start_time, end_time):
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        """Clear all events (for testing)."""
        self._events.clear()


class AuditLogger:
    """Main audit logger that supports multiple backends.

    Usage:
        audit = AuditLogger()
        audit.add_backend(JSONFileAuditBackend(Path("./audit")))

        audit.log_info(
            AuditEventType.BILL_POSTED,
            "Bill A-100 posted",
            bill_id="bill-001",
            actor="alice",
        )
    """

    def __init__(self):
        self._backends: List[AuditBackend] = []

    def add_backend(self, backend: AuditBackend) -> None:
        """Add an audit backend."""
        self._backends.append(backend)

    def log(self, event: AuditEvent) -> None:
        """Log event to all backends."""
        for backend in self._backends:
            try:
                backend.log(event)
            except Exception as e:
                # Don't let audit failures break the system
                logger.warning(
                    f"Audit logging failed for backend {type(backend).__name__}: {e}",
                    extra_fields={"event_type": event.event_type, "event_id": event.event_id},
                )

    def log_info(
        self,
        event_type: AuditEventType,
        message: str,
        **kwargs,
    ) -> None:
        """Log an INFO level event."""
        event = create_audit_event(event_type, message, AuditSeverity.INFO, **kwargs)
        self.log(event)

    def log_warning(
        self,
        event_type: AuditEventType,
        message: str,
        **kwargs,
    ) -> None:
        """Log a WARN level event."""
        event = create_audit_event(event_type, message, AuditSeverity.WARN, **kwargs)
        self.log(event)

    def log_error(
        self,
        event_type: AuditEventType,
        message: str,
        **kwargs,
    ) -> None:
        """Log an ERROR level event."""
        event = create_audit_event(event_type, message, AuditSeverity.ERROR, **kwargs)
        self.log(event)

    def query(
        self,
        event_type: Optional[str] = None,
        bill_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from all backends (returns first backend's results)."""
        if not self._backends:
            return []
        return self._backends[0].query(event_type, bill_id, start_time, end_time, limit)
