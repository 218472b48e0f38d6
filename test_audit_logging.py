"""
Observability Validation Test

This test validates the observability stack:
1. Metrics collection works (bill lifecycle, matching, timing)
2. Structured logging with correlation IDs works
3. Audit events persist to every backend and never break the caller
4. Errors serialize to the API shape
"""

import json
import logging
from datetime import datetime, timedelta

import pytest


class TestMetricsCollector:
    """Test the metrics collection system."""

    def test_singleton_instance(self):
        from core.observability.metrics import MetricsCollector
        assert MetricsCollector.instance() is MetricsCollector.instance()

    def test_bill_lifecycle_counts(self):
        from core.observability.metrics import get_metrics
        mc = get_metrics()

        mc.record_bill_ingested()
        mc.record_bill_ingested(duplicate=True)
        mc.record_bill_posted(duration_ms=12)
        mc.record_posting_failed("invalid_state")
        mc.record_posting_failed("invalid_state")
        mc.record_bill_reopened()
        mc.record_bill_voided()

        bills = mc.get_summary()["bills"]
        assert bills["ingested"] == 1
        assert bills["duplicates"] == 1
        assert bills["posted"] == 1
        assert bills["posting_failures"] == {"invalid_state": 2}
        assert bills["reopened"] == 1
        assert bills["voided"] == 1

    def test_matching_counts(self):
        from core.observability.metrics import get_metrics
        mc = get_metrics()

        mc.record_suggestion()
        mc.record_suggestion(degraded=True)
        mc.record_line_matched("exact", 2)
        mc.record_line_matched("manual")
        mc.record_alias_created()

        matching = mc.get_summary()["matching"]
        assert matching["suggestions"] == 2
        assert matching["degraded"] == 1
        assert matching["matched_by_reason"] == {"exact": 2, "manual": 1}
        assert matching["aliases_created"] == 1

    def test_timing_percentile_calculation(self):
        from core.observability.metrics import MetricsCollector
        mc = MetricsCollector.instance()

        for i in range(1, 101):
            mc.record_processing_time("suggest_test", i)

        stats = mc.get_timing_stats("suggest_test")
        assert 49 <= stats["average_ms"] <= 52
        assert 93 <= stats["p95_ms"] <= 97

    def test_reset(self):
        from core.observability.metrics import get_metrics
        mc = get_metrics()
        mc.record_bill_ingested()
        mc.reset()
        assert mc.get_summary()["bills"]["ingested"] == 0


class TestCorrelatedLogging:
    """Test structured logging with correlation IDs."""

    def test_context_is_scoped(self):
        from core.observability.logging import get_correlation_context, with_correlation

        assert get_correlation_context().bill_id is None
        with with_correlation(bill_id="bill-001", actor="alice"):
            with with_correlation(line_no=3):
                inner = get_correlation_context()
                assert inner.bill_id == "bill-001"
                assert inner.line_no == 3
        assert get_correlation_context().bill_id is None

    def test_structured_formatter_json_output(self):
        from core.observability.logging import StructuredFormatter, with_correlation

        formatter = StructuredFormatter()
        with with_correlation(bill_id="bill-001", invoice_no="A-100", operation="post"):
            record = logging.LogRecord(
                name="vendor_bills.posting",
                level=logging.INFO,
                pathname="posting.py",
                lineno=10,
                msg="Bill posted",
                args=(),
                exc_info=None,
            )
            record.extra_fields = {"lines_posted": 2}
            data = json.loads(formatter.format(record))

        assert data["message"] == "Bill posted"
        assert data["bill_id"] == "bill-001"
        assert data["operation"] == "post"
        assert data["lines_posted"] == 2

    def test_human_formatter_includes_line(self):
        from core.observability.logging import HumanReadableFormatter, with_correlation

        formatter = HumanReadableFormatter()
        with with_correlation(bill_id="bill-001", invoice_no="A-100", line_no=2):
            record = logging.LogRecord("x", logging.INFO, "x.py", 1, "Line matched", (), None)
            output = formatter.format(record)

        assert "bill-001/inv:A-100/line:2" in output
        assert output.endswith("Line matched")

    def test_transition_logged(self, caplog):
        from core.observability.logging import log_transition

        with caplog.at_level(logging.INFO, logger="vendor_bills.transitions"):
            log_transition("bill-001", "REVIEW", "POSTED", posting_seq=1)

        record = caplog.records[-1]
        assert record.getMessage() == "Bill bill-001: REVIEW -> POSTED"
        assert record.extra_fields["posting_seq"] == 1

    def test_error_carries_fields_and_exception(self, caplog):
        from core.observability.logging import get_logger
        logger = get_logger("vendor_bills.test_errors")

        with caplog.at_level(logging.INFO, logger="vendor_bills.test_errors"):
            try:
                raise RuntimeError("catalog gone")
            except RuntimeError:
                logger.error("Restore failed", extra_fields={"posting_seq": 2}, exc_info=True)

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.extra_fields == {"posting_seq": 2}
        assert record.exc_info[0] is RuntimeError

    def test_logger_exposes_only_used_levels(self):
        from core.observability.logging import get_logger
        logger = get_logger("vendor_bills.test_levels")
        assert all(hasattr(logger, name) for name in ("info", "warning", "error"))
        assert not any(hasattr(logger, name) for name in ("debug", "exception", "setLevel"))


class TestAuditBackends:
    """Test audit persistence."""

    def test_create_event(self):
        from core.audit import AuditEventType, create_audit_event
        event = create_audit_event(
            AuditEventType.BILL_REOPENED,
            "Bill reopened",
            bill_id="bill-001",
            reason="pricing correction",
            actor="carol",
        )
        assert event.event_type == "BILL_REOPENED"
        assert event.reason == "pricing correction"
        assert event.event_id

    def test_in_memory_query_filters(self):
        from core.audit import AuditEventType, AuditLogger, InMemoryAuditBackend
        backend = InMemoryAuditBackend()
        audit = AuditLogger()
        audit.add_backend(backend)

        audit.log_info(AuditEventType.BILL_CREATED, "created", bill_id="b1")
        audit.log_info(AuditEventType.BILL_CREATED, "created", bill_id="b2")
        audit.log_error(AuditEventType.POSTING_FAILED, "failed", bill_id="b1")

        assert len(audit.query(bill_id="b1")) == 2
        failed = audit.query(event_type="POSTING_FAILED")
        assert len(failed) == 1
        assert failed[0].severity.value == "ERROR"
        assert audit.query(end_time=datetime.utcnow() - timedelta(days=1)) == []

    def test_json_file_backend(self, tmp_path):
        from core.audit import AuditEventType, AuditLogger, JSONFileAuditBackend
        audit = AuditLogger()
        audit.add_backend(JSONFileAuditBackend(tmp_path / "audit"))

        audit.log_info(AuditEventType.BILL_POSTED, "posted", bill_id="b1",
                       details={"receipts": [{"sku": "WIDGET-1", "qty_delta": "2"}]})
        audit.log_info(AuditEventType.BILL_VOIDED, "voided", bill_id="b2")

        files = list((tmp_path / "audit").glob("*.json"))
        assert len(files) == 1
        events = JSONFileAuditBackend(tmp_path / "audit").query(bill_id="b1")
        assert len(events) == 1
        assert events[0].details["receipts"][0]["sku"] == "WIDGET-1"

    def test_failing_backend_does_not_raise(self):
        from core.audit import AuditBackend, AuditEventType, AuditLogger, InMemoryAuditBackend

        class BrokenBackend(AuditBackend):
            def log(self, event):
                raise OSError("disk full")

            def query(self, event_type=None, bill_id=None, start_time=None, end_time=None, limit=100):
                return []

        healthy = InMemoryAuditBackend()
        audit = AuditLogger()
        audit.add_backend(BrokenBackend())
        audit.add_backend(healthy)

        audit.log_info(AuditEventType.BILL_CREATED, "created", bill_id="b1")

        assert len(healthy.query(bill_id="b1")) == 1


class TestErrors:
    """Test the error taxonomy."""

    @pytest.mark.parametrize("cls_name,code,retryable", [
        ("ValidationError", "validation_error", False),
        ("NotFoundError", "not_found", False),
        ("InvalidStateError", "invalid_state", False),
        ("AlreadyPostedError", "already_posted", False),
        ("ConflictError", "conflict", True),
        ("CollaboratorError", "collaborator_error", True),
    ])
    def test_codes(self, cls_name, code, retryable):
        import core.errors as errors
        error = getattr(errors, cls_name)("boom", line_numbers=[3, 1])
        assert error.code == code
        assert error.retryable is retryable
        assert error.to_dict() == {
            "error": code,
            "message": "boom",
            "line_numbers": [1, 3],
            "retryable": retryable,
        }

    def test_already_posted_is_invalid_state(self):
        from core.errors import AlreadyPostedError, InvalidStateError
        assert issubclass(AlreadyPostedError, InvalidStateError)
