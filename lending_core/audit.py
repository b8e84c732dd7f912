"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection. Every
lending state change is logged here, inside the same transaction as the
change itself, so a rolled-back operation leaves no audit event behind.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storable


# Row id of the single-row table holding the latest sequence and hash
HEAD_ID = "head"


class AuditEventType(Enum):
    """Types of audit events"""
    LOAN_CREATED = "loan_created"
    LOAN_TERMS_UPDATED = "loan_terms_updated"
    LOAN_COMPLETED = "loan_completed"
    LOAN_RECALCULATED = "loan_recalculated"
    LOAN_SOFT_DELETED = "loan_soft_deleted"

    INSTALLMENT_PAID = "installment_paid"

    EXPENSE_ATTACHED = "expense_attached"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_REMOVED = "expense_removed"


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
    sequence: int = 0

    def __post_init__(self):
        self.metadata = to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'sequence': self.sequence,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
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
            sequence=data.get('sequence', 0)
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled

    def _chain_head(self) -> Tuple[int, str]:
        """
        Sequence and hash of the latest event. Kept in a single row written in
        the same transaction as the event, so a rollback restores it too.
        """
        head = self.storage.load(self.head_table, HEAD_ID)
        if head is None:
            return 0, ""
        return head['sequence'], head['current_hash']

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event chained to the previous one.

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        # Joins the caller's transaction; the storage lock orders the chain
        with self.storage.atomic():
            head_sequence, head_hash = self._chain_head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head_hash,
                current_hash="",
                metadata=metadata or {},
                sequence=head_sequence + 1
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, HEAD_ID, {
                "id": HEAD_ID, "sequence": event.sequence, "current_hash": event.current_hash
            })
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda x: x.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every event hash and the continuity of the chain.

        Returns:
            Dictionary with ``valid``, ``total_events``, ``hash_errors`` and
            ``chain_breaks``
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
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
