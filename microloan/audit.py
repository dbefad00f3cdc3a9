"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every token, schedule, payment, penalty and ledger state change is logged here.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord, to_storable


class AuditEventType(Enum):
    """Types of audit events"""
    # Token and batch events
    TOKEN_ISSUED = "token_issued"
    BATCH_ISSUED = "batch_issued"
    TOKEN_STATUS_CHANGED = "token_status_changed"
    TOKEN_CLOSED = "token_closed"
    TOKEN_CANCELLED = "token_cancelled"
    BATCH_CLOSED = "batch_closed"
    BATCH_CANCELLED = "batch_cancelled"

    # Schedule and payment events
    SCHEDULE_GENERATED = "schedule_generated"
    PAYMENT_RECORDED = "payment_recorded"

    # Penalty events
    PENALTY_APPLIED = "penalty_applied"
    PENALTY_WAIVED = "penalty_waived"
    PENALTY_OVERRIDDEN = "penalty_overridden"
    PENALTY_CONFIG_CREATED = "penalty_config_created"
    PENALTY_CONFIG_UPDATED = "penalty_config_updated"
    PENALTY_CONFIG_ACTIVATED = "penalty_config_activated"
    PENALTY_CONFIG_DELETED = "penalty_config_deleted"
    OVERDUE_SWEEP_COMPLETED = "overdue_sweep_completed"

    # Cash account events
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_CREDITED = "account_credited"
    ACCOUNT_DEBITED = "account_debited"

    # System events
    PROCESSING_ERROR = "processing_error"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event.
        Covers every field except current_hash itself.
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
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
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id')
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None
        self._last_event_id: Optional[str] = None
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event (storage keeps insertion order)"""
        events = self.storage.load_all(self.table_name)
        self._last_hash = events[-1].get('current_hash') if events else None
        self._last_event_id = events[-1].get('id') if events else None

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
            entity_type: Type of entity being audited (token, batch, schedule, ...)
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        # Storage transaction first, so callers already inside atomic() take the locks in the same order
        with self.storage.atomic(), self._lock:
            # A rolled-back transaction may have discarded the cached chain head
            if self._last_event_id and not self.storage.exists(self.table_name, self._last_event_id):
                self._load_last_hash()

            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            self._last_event_id = event.id

            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity in chain order"""
        events_data = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        return [AuditEvent.from_dict(data) for data in events_data]

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        return [AuditEvent.from_dict(data) for data in events_data]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with ``valid``, ``total_events``, ``hash_errors`` and ``chain_breaks``
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
