"""
Audit Trail Module

Append-only record of every money-moving decision the engine takes: a
payment arriving, being applied, parked or failed, a journal entry posted, a
job dead-lettered. Each record carries the SHA-256 of its predecessor, so an
edited or removed record shows up as a hash mismatch or a chain break.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord, to_storage_value, parse_datetime

GENESIS_HASH = ""


class AuditEventType(Enum):
    # Payments
    PAYMENT_RECEIVED = "payment_received"
    DUPLICATE_DELIVERY = "duplicate_delivery"
    PAYMENT_APPLIED = "payment_applied"
    PAYMENT_SUSPENDED = "payment_suspended"
    PAYMENT_FAILED = "payment_failed"
    SUSPENSE_RESOLVED = "suspense_resolved"

    # Ledger
    JOURNAL_ENTRY_POSTED = "journal_entry_posted"

    # Loan book
    LOAN_BOOKED = "loan_booked"

    # Queue
    JOB_DEAD = "job_dead"
    JOBS_RECOVERED = "jobs_recovered"


def chain_hash(fields: Dict[str, Any]) -> str:
    """SHA-256 over a canonical JSON rendering of ``fields``"""
    canonical = json.dumps(fields, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    sequence: int
    event_type: AuditEventType
    entity_type: str  # payment_event, journal_entry, job, loan, queue
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    tenant_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = to_storage_value(self.metadata)

    def hashed_fields(self) -> Dict[str, Any]:
        # Everything but the event's own hash
        return {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'tenant_id': self.tenant_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata,
        }

    def calculate_hash(self) -> str:
        return chain_hash(self.hashed_fields())

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Writes and verifies the audit chain

    Appends run inside ``storage.atomic()``: an event logged by a transaction
    that later rolls back disappears with it, and the next append links to
    whatever head survived.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _head(self) -> Optional[Dict[str, Any]]:
        events = self.storage.load_all(self.table_name)
        return max(events, key=lambda e: e.get('sequence', 0)) if events else None

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of record it happened to
            entity_id: Id of that record
            metadata: Amounts, codes and references worth keeping
            tenant_id: Owning tenant, None for unattributed payments

        Returns:
            The stored AuditEvent
        """
        # Storage lock before chain lock, the same order as callers inside atomic()
        with self.storage.atomic(), self._lock:
            head = self._head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head['sequence'] + 1 if head else 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'] if head else GENESIS_HASH,
                current_hash="",
                metadata=metadata or {},
                tenant_id=tenant_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.insert(self.table_name, event.id, event.to_dict())
            return event

    def _chain(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        rows = self.storage.find(self.table_name, filters) if filters else self.storage.load_all(self.table_name)
        return sorted((AuditEvent.from_dict(row) for row in rows), key=lambda e: e.sequence)

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """History of one record, oldest first"""
        return self._chain({'entity_type': entity_type, 'entity_id': entity_id})

    def get_events_by_type(self, event_type: AuditEventType,
                           tenant_id: Optional[str] = None) -> List[AuditEvent]:
        filters = {'event_type': event_type.value}
        if tenant_id is not None:
            filters['tenant_id'] = tenant_id
        return self._chain(filters)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain in sequence order

        Returns:
            ``valid`` plus the events whose stored hash no longer matches
            their content (``hash_errors``) and the events whose link to
            the predecessor is wrong (``chain_breaks``)
        """
        events = self._chain()
        hash_errors = []
        chain_breaks = []

        expected_previous = GENESIS_HASH
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': recomputed,
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
