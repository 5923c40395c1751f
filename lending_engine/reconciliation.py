"""
Reconciliation Recorder

Immutable audit rows linking a payment to the installments it paid. One
"reconciled" row per installment receiving money; one "mismatch" row when a
payer was identified but nothing could be applied. Record ids are derived
from the payment and installment, so replaying a payment never duplicates a
row. There is deliberately no update or delete operation.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Any
from enum import Enum

from .allocation import AllocationPlan
from .currency import Money
from .errors import DuplicateRecordError
from .ingest import PaymentEvent
from .storage import StorageInterface, StorageRecord, parse_datetime


class ReconciliationStatus(Enum):
    RECONCILED = "reconciled"
    MISMATCH = "mismatch"


@dataclass
class ReconciliationRecord(StorageRecord):
    tenant_id: str
    payment_id: str
    customer_id: Optional[str]
    loan_id: Optional[str]
    installment_id: Optional[str]
    amount: Money
    status: ReconciliationStatus
    installment_number: Optional[int] = None
    external_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    payer_name: Optional[str] = None
    payer_phone: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconciliationRecord':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['amount'] = Money.from_dict(data['amount'])
        data['status'] = ReconciliationStatus(data['status'])
        return cls(**data)


@dataclass
class BatchRowResult:
    """Outcome of one row in a reconciliation batch"""
    reference: str
    status: str  # success, failed, rejected, duplicate, suspense
    message: str
    event_id: Optional[str] = None
    applied_amount: Optional[Decimal] = None


@dataclass
class ReconciliationBatchResult:
    """Result set of a batch reconciliation run"""
    successful: int = 0
    failed: int = 0
    rejected: int = 0
    details: List[BatchRowResult] = field(default_factory=list)

    def add(self, row: BatchRowResult) -> None:
        self.details.append(row)
        if row.status in ("success", "duplicate"):
            self.successful += 1
        elif row.status == "rejected":
            self.rejected += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'successful': self.successful,
            'failed': self.failed,
            'rejected': self.rejected,
            'details': [
                {
                    'reference': d.reference,
                    'status': d.status,
                    'message': d.message,
                    'event_id': d.event_id,
                    'applied_amount': str(d.applied_amount) if d.applied_amount is not None else None,
                }
                for d in self.details
            ]
        }


class ReconciliationRecorder:
    """Writes and queries reconciliation records"""

    TABLE = "reconciliation_records"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def _insert_once(self, record: ReconciliationRecord) -> ReconciliationRecord:
        try:
            self.storage.insert(self.TABLE, record.id, record.to_dict())
        except DuplicateRecordError:
            return ReconciliationRecord.from_dict(self.storage.load(self.TABLE, record.id))
        return record

    def record_allocation(self, event: PaymentEvent, customer_id: str,
                          plan: AllocationPlan) -> List[ReconciliationRecord]:
        """One reconciled record per installment that received a nonzero amount"""
        now = datetime.now(timezone.utc)
        records = []
        for allocation in plan.installment_allocations:
            if allocation.amount.is_zero():
                continue
            records.append(self._insert_once(ReconciliationRecord(
                id=f"{event.id}:{allocation.installment_id}",
                created_at=now,
                updated_at=now,
                tenant_id=event.tenant_id,
                payment_id=event.id,
                customer_id=customer_id,
                loan_id=allocation.loan_id,
                installment_id=allocation.installment_id,
                installment_number=allocation.installment_number,
                amount=allocation.amount,
                status=ReconciliationStatus.RECONCILED,
                external_reference=event.external_transaction_id,
                bank_reference=event.bank_reference,
                payer_name=event.payer_name,
                payer_phone=event.payer_phone
            )))
        return records

    def record_mismatch(self, event: PaymentEvent, customer_id: Optional[str],
                        reason: str) -> ReconciliationRecord:
        """Payer identified but nothing applied; the full amount stays unapplied"""
        now = datetime.now(timezone.utc)
        return self._insert_once(ReconciliationRecord(
            id=f"{event.id}:mismatch",
            created_at=now,
            updated_at=now,
            tenant_id=event.tenant_id,
            payment_id=event.id,
            customer_id=customer_id,
            loan_id=None,
            installment_id=None,
            amount=event.amount,
            status=ReconciliationStatus.MISMATCH,
            external_reference=event.external_transaction_id,
            bank_reference=event.bank_reference,
            payer_name=event.payer_name,
            payer_phone=event.payer_phone,
            reason=reason
        ))

    def _query(self, filters: Dict[str, Any]) -> List[ReconciliationRecord]:
        records = [ReconciliationRecord.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        records.sort(key=lambda r: (r.created_at, r.installment_number or 0))
        return records

    def get_by_payment(self, payment_id: str) -> List[ReconciliationRecord]:
        return self._query({'payment_id': payment_id})

    def get_by_loan(self, loan_id: str) -> List[ReconciliationRecord]:
        return self._query({'loan_id': loan_id})

    def get_by_tenant(self, tenant_id: str,
                      status: Optional[ReconciliationStatus] = None) -> List[ReconciliationRecord]:
        filters = {'tenant_id': tenant_id}
        if status is not None:
            filters['status'] = status.value
        return self._query(filters)

    def applied_total(self, payment_id: str) -> Decimal:
        """Sum of reconciled amounts for one payment"""
        return sum(
            (r.amount.amount for r in self.get_by_payment(payment_id)
             if r.status == ReconciliationStatus.RECONCILED),
            Decimal('0')
        )
