"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every schedule, settlement and calendar change made by the engine is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, _to_storable


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan lifecycle events
    LOAN_CREATED = "loan_created"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_COMPLETED = "loan_completed"

    # Schedule events
    SCHEDULE_GENERATED = "schedule_generated"

    # Settlement events
    PAYMENT_APPLIED = "payment_applied"
    BATCH_PROCESSED = "batch_processed"

    # Configuration events
    LEAVE_DAY_ADDED = "leave_day_added"
    LEAVE_DAY_REMOVED = "leave_day_removed"
    PENALTY_SETTINGS_CHANGED = "penalty_settings_changed"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # loan, installment, batch, leave_day, settings
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            events = self._load_events()
            previous_hash = events[-1].current_hash if events else ""

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=len(events) + 1,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        return [
            e for e in self._load_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get all audit events of one type, oldest first"""
        return [e for e in self._load_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': position})
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'event_id': event.id, 'position': position})
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
