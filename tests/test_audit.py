"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and integrity
verification of engine state changes.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from microfinance.storage import InMemoryStorage
from microfinance.audit import AuditTrail, AuditEvent, AuditEventType


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test that Decimal, date and datetime metadata is stored as strings"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.PAYMENT_APPLIED,
            entity_type="installment",
            entity_id="L001_1",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={
                "paid_amount": Decimal('12000'),
                "payment_date": date(2024, 2, 15),
                "recorded_at": now
            }
        )

        assert event.metadata["paid_amount"] == "12000"
        assert event.metadata["payment_date"] == "2024-02-15"
        assert event.metadata["recorded_at"] == now.isoformat()

    def test_hash_changes_with_content(self):
        """Test that changing a field changes the hash"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001", created_at=now, updated_at=now,
            event_type=AuditEventType.LOAN_CREATED, entity_type="loan", entity_id="L001",
            sequence=1, previous_hash="", current_hash="", metadata={"principal": "100000"}
        )
        original = event.calculate_hash()

        event.metadata["principal"] = "900000"
        assert event.calculate_hash() != original


class TestAuditTrail:
    """Test the audit chain"""

    def test_log_event_chains_hashes(self, audit_trail):
        """Test that each event links to the previous hash"""
        first = audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L001", {"principal": 100000})
        second = audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "L001", user_id="manager")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2
        assert second.verify_hash()
        assert audit_trail.count_events() == 2

    def test_queries(self, audit_trail):
        """Test lookups by entity and by type"""
        audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L001")
        audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L002")
        audit_trail.log_event(AuditEventType.SCHEDULE_GENERATED, "loan", "L001")

        assert len(audit_trail.get_events_for_entity("loan", "L001")) == 2
        assert len(audit_trail.get_events_by_type(AuditEventType.LOAN_CREATED)) == 2

    def test_integrity_valid(self, audit_trail):
        """Test verification of an untouched chain"""
        for n in range(5):
            audit_trail.log_event(AuditEventType.PAYMENT_APPLIED, "installment", f"L001_{n + 1}")

        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5

    def test_tampered_metadata_detected(self, audit_trail, storage):
        """Test that editing a stored event breaks its hash"""
        event = audit_trail.log_event(AuditEventType.PAYMENT_APPLIED, "installment", "L001_1", {"paid_amount": "12000"})
        audit_trail.log_event(AuditEventType.PAYMENT_APPLIED, "installment", "L001_2", {"paid_amount": "12000"})

        stored = storage.load("audit_events", event.id)
        stored["metadata"]["paid_amount"] = "1"
        storage.save("audit_events", event.id, stored)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_deleted_event_breaks_chain(self, audit_trail, storage):
        """Test that removing an event from the middle is detected"""
        events = [
            audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", f"L00{n}")
            for n in range(1, 4)
        ]
        storage.delete("audit_events", events[1].id)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["chain_breaks"][0]["event_id"] == events[2].id
