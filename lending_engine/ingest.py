"""
Transaction Ingest Module

Turns inbound payment notifications (M-Pesa C2B confirmations, bank
statement rows, manual entries) into durable, deduplicated payment events.
Delivery is at-least-once: the dedup index row and the event are written in
one transaction before any business logic runs, so a redelivered
transaction id is a no-op. Payments that cannot be attributed to a tenant
go to suspense with their raw payload; nothing is dropped.
"""

import logging
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Any
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency, decimal_from_string
from .errors import DuplicateRecordError
from .jobs import PaymentQueue, PaymentJob, JobType
from .normalize import normalize_reference, parse_gateway_timestamp, canonical_phone
from .storage import StorageInterface, StorageRecord, parse_datetime, to_storage_value
from .tenancy import TenantResolver, TenantResolution

logger = logging.getLogger("lending_engine.ingest")


class PaymentSource(Enum):
    MPESA_C2B = "mpesa_c2b"
    BANK_STATEMENT = "bank_statement"
    MANUAL = "manual"


class PaymentStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPLIED = "applied"
    FAILED = "failed"
    SUSPENSE = "suspense"


class SuspenseReason(Enum):
    UNRESOLVED_TENANT = "unresolved_tenant"
    UNMATCHED_CUSTOMER = "unmatched_customer"
    NO_ELIGIBLE_LOAN = "no_eligible_loan"


class SuspenseStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


@dataclass
class PaymentNotification:
    """Inbound payment as delivered by a channel, before persistence"""
    amount: Decimal
    external_transaction_id: Optional[str] = None
    payer_phone: Optional[str] = None
    payer_name: Optional[str] = None
    routing_key: Optional[str] = None
    bill_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    currency: str = "KES"
    received_at: Optional[datetime] = None
    source: PaymentSource = PaymentSource.MANUAL
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.amount = decimal_from_string(self.amount)
        if self.currency not in Currency.__members__:
            raise ValueError(f"Unsupported currency: {self.currency}")
        if self.received_at is not None and self.received_at.tzinfo is None:
            self.received_at = self.received_at.replace(tzinfo=timezone.utc)

    def validate(self) -> None:
        """
        Raises:
            ValueError: If the notification cannot become a payment event
        """
        if self.amount <= 0:
            raise ValueError(f"Payment amount must be positive, got {self.amount}")

    @classmethod
    def from_mpesa_c2b(cls, payload: Dict[str, Any], currency: str = "KES") -> 'PaymentNotification':
        """Map a Safaricom C2B confirmation body"""
        return cls(
            amount=payload.get('TransAmount'),
            external_transaction_id=payload.get('TransID') or None,
            payer_phone=str(payload['MSISDN']) if payload.get('MSISDN') else None,
            payer_name=payload.get('FirstName') or None,
            routing_key=str(payload['BusinessShortCode']) if payload.get('BusinessShortCode') else None,
            bill_reference=payload.get('BillRefNumber') or None,
            currency=currency,
            received_at=parse_gateway_timestamp(payload.get('TransTime')),
            source=PaymentSource.MPESA_C2B,
            raw_payload=dict(payload)
        )


@dataclass
class PaymentEvent(StorageRecord):
    """Persisted inbound payment and its processing state"""
    amount: Money
    source: PaymentSource
    status: PaymentStatus = PaymentStatus.PENDING
    external_transaction_id: Optional[str] = None
    payer_phone: Optional[str] = None
    payer_name: Optional[str] = None
    routing_key: Optional[str] = None
    bill_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    received_at: Optional[datetime] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    customer_id: Optional[str] = None
    matched_by: Optional[str] = None
    job_id: Optional[str] = None
    applied_amount: Optional[Money] = None
    unapplied_amount: Optional[Money] = None
    journal_entry_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    processed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentEvent':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'received_at', 'processed_at'):
            data[key] = parse_datetime(data.get(key))
        for key in ('amount', 'applied_amount', 'unapplied_amount'):
            if data.get(key) is not None:
                data[key] = Money.from_dict(data[key])
        data['source'] = PaymentSource(data['source'])
        data['status'] = PaymentStatus(data['status'])
        return cls(**data)


@dataclass
class SuspenseEntry(StorageRecord):
    """Payment that could not be attributed; waits for manual re-match"""
    event_id: str
    reason: SuspenseReason
    amount: Money
    status: SuspenseStatus = SuspenseStatus.OPEN
    tenant_id: Optional[str] = None
    payer_phone: Optional[str] = None
    payer_name: Optional[str] = None
    external_transaction_id: Optional[str] = None
    detail: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    resolved_customer_id: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SuspenseEntry':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'resolved_at'):
            data[key] = parse_datetime(data.get(key))
        data['amount'] = Money.from_dict(data['amount'])
        data['reason'] = SuspenseReason(data['reason'])
        data['status'] = SuspenseStatus(data['status'])
        return cls(**data)


@dataclass
class IngestResult:
    event: PaymentEvent
    duplicate: bool = False
    job: Optional[PaymentJob] = None
    suspense: Optional[SuspenseEntry] = None


class PaymentEventStore:
    """Persistence for payment events and their dedup index"""

    TABLE = "payment_events"
    INDEX_TABLE = "payment_event_index"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    @staticmethod
    def dedup_key(external_transaction_id: str) -> str:
        return normalize_reference(external_transaction_id)

    def get(self, event_id: str) -> Optional[PaymentEvent]:
        data = self.storage.load(self.TABLE, event_id)
        return PaymentEvent.from_dict(data) if data else None

    def get_by_external_id(self, external_transaction_id: str) -> Optional[PaymentEvent]:
        link = self.storage.load(self.INDEX_TABLE, self.dedup_key(external_transaction_id))
        return self.get(link['event_id']) if link else None

    def insert(self, event: PaymentEvent) -> None:
        """Insert a new event, reserving its external id first"""
        with self.storage.atomic():
            if event.external_transaction_id:
                self.storage.insert(self.INDEX_TABLE, self.dedup_key(event.external_transaction_id), {
                    'event_id': event.id,
                    'external_transaction_id': event.external_transaction_id
                })
            self.storage.insert(self.TABLE, event.id, event.to_dict())

    def update(self, event_id: str, changes: Dict[str, Any],
               expected_status: Optional[PaymentStatus] = None) -> Optional[PaymentEvent]:
        """
        Apply field changes, optionally only if the event is still in
        ``expected_status``. Returns the updated event or None.
        """
        changes = {k: to_storage_value(v) for k, v in changes.items()}
        changes['updated_at'] = datetime.now(timezone.utc).isoformat()
        expected = {'status': expected_status.value} if expected_status else {}
        data = self.storage.update_where(self.TABLE, event_id, expected, changes)
        return PaymentEvent.from_dict(data) if data else None

    def list_events(self, tenant_id: Optional[str] = None,
                    status: Optional[PaymentStatus] = None) -> List[PaymentEvent]:
        filters = {}
        if tenant_id is not None:
            filters['tenant_id'] = tenant_id
        if status is not None:
            filters['status'] = status.value
        events = [PaymentEvent.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        events.sort(key=lambda e: (e.received_at or e.created_at, e.created_at))
        return events


class SuspenseRegistry:
    """
    Holding area for payments that could not be attributed
    """

    TABLE = "suspense_entries"

    def __init__(self, storage: StorageInterface, events: PaymentEventStore,
                 audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.events = events
        self.audit_trail = audit_trail

    def move_to_suspense(self, event: PaymentEvent, reason: SuspenseReason,
                         detail: Optional[str] = None) -> SuspenseEntry:
        """
        Park an event in suspense. Idempotent per event: a second call
        returns the existing open entry.
        """
        entry_id = f"suspense:{event.id}"
        now = datetime.now(timezone.utc)
        entry = SuspenseEntry(
            id=entry_id,
            created_at=now,
            updated_at=now,
            event_id=event.id,
            reason=reason,
            amount=event.amount,
            tenant_id=event.tenant_id,
            payer_phone=event.payer_phone,
            payer_name=event.payer_name,
            external_transaction_id=event.external_transaction_id,
            detail=detail,
            raw_payload=event.raw_payload
        )

        with self.storage.atomic():
            self.events.update(event.id, {
                'status': PaymentStatus.SUSPENSE,
                'tenant_id': event.tenant_id,
                'customer_id': event.customer_id,
                'failure_code': reason.value,
                'failure_reason': detail or reason.value,
                'processed_at': now
            })
            existing = self.get_entry(entry_id)
            if existing and existing.status == SuspenseStatus.OPEN:
                return existing
            self.storage.save(self.TABLE, entry.id, entry.to_dict())
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_SUSPENDED,
                    entity_type="payment_event",
                    entity_id=event.id,
                    metadata={"reason": reason.value, "detail": detail,
                              "amount": event.amount.to_dict()},
                    tenant_id=event.tenant_id
                )

        logger.warning(f"Payment moved to suspense: {reason.value}",
                       extra={'tenant_id': event.tenant_id,
                              'transaction_id': event.external_transaction_id,
                              'action': 'suspense'})
        return entry

    def get_entry(self, entry_id: str) -> Optional[SuspenseEntry]:
        data = self.storage.load(self.TABLE, entry_id)
        return SuspenseEntry.from_dict(data) if data else None

    def list_entries(self, tenant_id: Optional[str] = None,
                     status: Optional[SuspenseStatus] = None) -> List[SuspenseEntry]:
        filters = {}
        if tenant_id is not None:
            filters['tenant_id'] = tenant_id
        if status is not None:
            filters['status'] = status.value
        entries = [SuspenseEntry.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def mark_resolved(self, entry_id: str, customer_id: str) -> SuspenseEntry:
        now = datetime.now(timezone.utc)
        data = self.storage.update_where(
            self.TABLE, entry_id, {'status': SuspenseStatus.OPEN.value},
            {
                'status': SuspenseStatus.RESOLVED.value,
                'resolved_customer_id': customer_id,
                'resolved_at': now.isoformat(),
                'updated_at': now.isoformat()
            }
        )
        if data is None:
            raise ValueError(f"Suspense entry {entry_id} is not open")

        entry = SuspenseEntry.from_dict(data)
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.SUSPENSE_RESOLVED,
                entity_type="suspense_entry",
                entity_id=entry_id,
                metadata={"event_id": entry.event_id, "customer_id": customer_id},
                tenant_id=entry.tenant_id
            )
        return entry


class TransactionIngest:
    """
    Entry point for every inbound payment
    """

    def __init__(self, storage: StorageInterface, resolver: TenantResolver,
                 queue: PaymentQueue, events: PaymentEventStore,
                 suspense: SuspenseRegistry, audit_trail: Optional[AuditTrail] = None,
                 job_priority: int = 5):
        self.storage = storage
        self.resolver = resolver
        self.queue = queue
        self.events = events
        self.suspense = suspense
        self.audit_trail = audit_trail
        self.job_priority = job_priority

    def _record(self, notification: PaymentNotification,
                tenant_id: Optional[str] = None) -> IngestResult:
        notification.validate()
        now = datetime.now(timezone.utc)
        event = PaymentEvent(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            amount=Money(notification.amount, Currency[notification.currency]),
            source=notification.source,
            external_transaction_id=normalize_reference(notification.external_transaction_id),
            payer_phone=canonical_phone(notification.payer_phone) or notification.payer_phone,
            payer_name=(notification.payer_name or "").strip() or None,
            routing_key=(notification.routing_key or "").strip() or None,
            bill_reference=normalize_reference(notification.bill_reference),
            bank_reference=normalize_reference(notification.bank_reference),
            received_at=notification.received_at or now,
            raw_payload=notification.raw_payload,
            tenant_id=tenant_id
        )

        try:
            with self.storage.atomic():
                self.events.insert(event)
                if self.audit_trail:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.PAYMENT_RECEIVED,
                        entity_type="payment_event",
                        entity_id=event.id,
                        metadata={"source": event.source.value,
                                  "amount": event.amount.to_dict(),
                                  "external_transaction_id": event.external_transaction_id},
                        tenant_id=tenant_id
                    )
        except DuplicateRecordError as e:
            if e.table != PaymentEventStore.INDEX_TABLE:
                raise
            existing = self.events.get_by_external_id(event.external_transaction_id)
            logger.info("Duplicate delivery ignored",
                        extra={'transaction_id': event.external_transaction_id,
                               'tenant_id': existing.tenant_id, 'action': 'ingest'})
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.DUPLICATE_DELIVERY,
                    entity_type="payment_event",
                    entity_id=existing.id,
                    metadata={"source": notification.source.value},
                    tenant_id=existing.tenant_id
                )
            return IngestResult(event=existing, duplicate=True)

        logger.info(f"Payment received: {event.amount.to_string()}",
                    extra={'transaction_id': event.external_transaction_id,
                           'tenant_id': tenant_id, 'action': 'ingest'})
        return IngestResult(event=event)

    def enqueue_event(self, event: PaymentEvent) -> PaymentJob:
        job = self.queue.enqueue(
            tenant_id=event.tenant_id,
            job_type=JobType.PAYMENT_ALLOCATION,
            payload={'event_id': event.id,
                     'transaction_id': event.external_transaction_id},
            priority=self.job_priority,
            dedup_key=f"{JobType.PAYMENT_ALLOCATION.value}:{event.id}"
        )
        self.events.update(event.id, {'job_id': job.id})
        event.job_id = job.id
        return job

    def _route(self, result: IngestResult) -> IngestResult:
        """Resolve the tenant of a fresh event and enqueue it, or park it in suspense"""
        event = result.event
        resolution: Optional[TenantResolution] = self.resolver.resolve(event.routing_key, event.payer_phone)
        if resolution is None:
            result.suspense = self.suspense.move_to_suspense(
                event, SuspenseReason.UNRESOLVED_TENANT,
                "Tenant not resolved from routing key or phone"
            )
            result.event = self.events.get(event.id)
            return result

        result.event = self.events.update(event.id, {
            'tenant_id': resolution.tenant_id,
            'customer_id': resolution.customer_id,
            'matched_by': resolution.matched_by
        })
        result.job = self.enqueue_event(result.event)
        return result

    def ingest_notification(self, notification: PaymentNotification) -> IngestResult:
        """
        Persist a gateway notification, then resolve and enqueue it

        Raises:
            ValueError: If the amount is not positive
        """
        result = self._record(notification)
        if result.duplicate:
            return result
        return self._route(result)

    def ingest_statement_row(self, tenant_id: str, notification: PaymentNotification,
                             enqueue: bool = True) -> IngestResult:
        """
        Persist a bank statement row for a known tenant

        With ``enqueue=False`` the caller processes the event itself.
        """
        notification.source = PaymentSource.BANK_STATEMENT
        result = self._record(notification, tenant_id=tenant_id)
        if result.duplicate or not enqueue:
            return result
        result.job = self.enqueue_event(result.event)
        return result

    def enqueue_pending(self, tenant_id: Optional[str] = None, limit: int = 50) -> List[IngestResult]:
        """
        Route pending events that never got a job (process crashed between
        persisting and enqueueing).
        """
        results = []
        for event in self.events.list_events(tenant_id=tenant_id, status=PaymentStatus.PENDING):
            if len(results) >= limit:
                break
            if event.job_id:
                continue
            if event.tenant_id:
                results.append(IngestResult(event=event, job=self.enqueue_event(event)))
            else:
                results.append(self._route(IngestResult(event=event)))
        return results
