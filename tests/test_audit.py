# tests/test_audit.py
"""
Unit tests for payment audit logging.
"""
import json
from unittest.mock import patch

from x402gate.protocol.audit import (
    AuditEventType,
    create_audit_event,
    generate_request_id,
    get_audit_log_path,
    get_audit_stats,
    log_audit_event,
    log_error,
    log_payment_failed,
    log_payment_received,
    log_payment_rejected,
    log_payment_required_sent,
    log_payment_settled,
    log_payment_verified,
    read_audit_log,
)


class TestGenerateRequestId:
    """Test request ID generation."""

    def test_correct_length(self):
        """Request ID has expected length."""
        assert len(generate_request_id()) == 8

    def test_unique_ids(self):
        """Generated IDs are unique."""
        ids = [generate_request_id() for _ in range(100)]
        assert len(set(ids)) == 100


class TestCreateAuditEvent:
    """Test audit event creation."""

    def test_creates_event_structure(self):
        """Creates event with all required fields."""
        event = create_audit_event(
            AuditEventType.PAYMENT_RECEIVED,
            {"amount": 2500},
            client_ip="10.0.0.1",
            wallet_address="C",
            request_id="abcd1234",
        )
        assert event["event_type"] == "payment_received"
        assert event["request_id"] == "abcd1234"
        assert event["client_ip"] == "10.0.0.1"
        assert event["wallet_address"] == "C"
        assert event["data"] == {"amount": 2500}
        assert "timestamp" in event

    def test_generates_request_id(self):
        """A request ID is generated when none is given."""
        event = create_audit_event(AuditEventType.ERROR, {})
        assert len(event["request_id"]) == 8


class TestLogAuditEvent:
    """Test writing events to the JSONL file."""

    def test_writes_jsonl(self, audit_log_path):
        request_id = log_audit_event(AuditEventType.PAYMENT_VERIFIED, {"signature": "5sig"})
        assert get_audit_log_path() == audit_log_path

        lines = audit_log_path.read_text().splitlines()
        assert len(lines) == 1
        event = json.loads(lines[0])
        assert event["request_id"] == request_id
        assert event["data"]["signature"] == "5sig"

    def test_write_failure_returns_none(self):
        with patch("builtins.open", side_effect=PermissionError("read-only")):
            assert log_audit_event(AuditEventType.ERROR, {}) is None

    def test_helpers_record_their_fields(self):
        log_payment_required_sent("1.2.3.4", "2500", "USDC", "solana:x", "M", "/report")
        log_payment_received("1.2.3.4", payer="C", amount=2500, network="solana:x")
        log_payment_settled("1.2.3.4", payer="C", transaction="5sig", network="solana:x", success=True)
        log_payment_verified("5sig", payer="C", recipient="M", amount=2500, asset="USDC")
        log_payment_failed("1.2.3.4", reason="amount_mismatch", stage="inspect")
        log_payment_rejected("5sig", "wrong_recipient", {"payer": "C", "recipient": "X"})
        log_error(None, "RuntimeError", "boom")

        events = read_audit_log()
        assert [e["event_type"] for e in events] == [
            "error",
            "payment_rejected",
            "payment_failed",
            "payment_verified",
            "payment_settled",
            "payment_received",
            "payment_required_sent",
        ]
        rejected = events[1]
        assert rejected["wallet_address"] == "C"
        assert rejected["data"]["facts"]["recipient"] == "X"


class TestReadAuditLog:
    """Test reading and filtering events."""

    def test_missing_log(self):
        assert read_audit_log() == []

    def test_filters(self):
        log_payment_received("1.2.3.4", payer="A", amount=1, network="solana:x")
        log_payment_received("1.2.3.4", payer="B", amount=2, network="solana:x")
        log_error(None, "E", "boom")

        assert len(read_audit_log(event_type=AuditEventType.PAYMENT_RECEIVED)) == 2
        by_wallet = read_audit_log(wallet_address="B")
        assert len(by_wallet) == 1
        assert by_wallet[0]["data"]["amount"] == 2
        assert len(read_audit_log(max_entries=1)) == 1

    def test_skips_corrupt_lines(self, audit_log_path):
        log_error(None, "E", "boom")
        with open(audit_log_path, "a") as f:
            f.write("not json\n\n")
        assert len(read_audit_log()) == 1


class TestAuditStats:
    """Test audit statistics."""

    def test_empty(self):
        stats = get_audit_stats()
        assert stats["total_events"] == 0
        assert stats["log_exists"] is False

    def test_counts_by_type(self):
        log_error(None, "E", "one")
        log_error(None, "E", "two")
        log_payment_failed(None, reason="x", stage="inspect")

        stats = get_audit_stats()
        assert stats["total_events"] == 3
        assert stats["events_by_type"] == {"error": 2, "payment_failed": 1}
        assert stats["first_event"] <= stats["last_event"]
