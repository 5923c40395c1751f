"""
Loan Book Module

Loans and their installment schedules. Loans are booked at disbursement and
afterwards mutated only by the installment allocator (repayments) or by
administrative correction (overdue refresh, status changes). Every loan and
installment carries a ``version`` counter; writes are compare-and-set on that
counter so concurrent allocators can never both apply against the same
outstanding balance.
"""

from decimal import Decimal, ROUND_DOWN
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Any
from enum import Enum
import uuid

from .currency import Money, Currency, amounts_equal
from .errors import ConcurrencyConflictError
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_date
from .audit import AuditTrail, AuditEventType


class LoanStatus(Enum):
    """Loan lifecycle states"""
    BOOKED = "booked"
    REVIEW = "review"
    APPROVED = "approved"
    DISBURSED = "disbursed"
    CLOSED = "closed"
    DEFAULTED = "defaulted"
    REJECTED = "rejected"


class RepaymentState(Enum):
    """Repayment progress, independent of the lifecycle status"""
    ONGOING = "ongoing"
    PARTIAL = "partial"
    COMPLETED = "completed"
    OVERDUE = "overdue"
    DEFAULTED = "defaulted"


class InstallmentStatus(Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class Loan(StorageRecord):
    """Loan with a fixed total payable and an installment schedule"""
    tenant_id: str
    customer_id: str
    total_payable: Money
    status: LoanStatus = LoanStatus.BOOKED
    repayment_state: RepaymentState = RepaymentState.ONGOING
    disbursed_at: Optional[datetime] = None
    version: int = 0

    @property
    def currency(self) -> Currency:
        return self.total_payable.currency

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            tenant_id=data['tenant_id'],
            customer_id=data['customer_id'],
            total_payable=Money.from_dict(data['total_payable']),
            status=LoanStatus(data['status']),
            repayment_state=RepaymentState(data['repayment_state']),
            disbursed_at=parse_datetime(data.get('disbursed_at')),
            version=data.get('version', 0)
        )


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a loan"""
    tenant_id: str
    loan_id: str
    installment_number: int
    due_date: date
    due_amount: Money
    paid_amount: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    version: int = 0

    @property
    def outstanding(self) -> Money:
        return self.due_amount - self.paid_amount

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            tenant_id=data['tenant_id'],
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=parse_date(data['due_date']),
            due_amount=Money.from_dict(data['due_amount']),
            paid_amount=Money.from_dict(data['paid_amount']),
            status=InstallmentStatus(data['status']),
            version=data.get('version', 0)
        )


def build_schedule(total_payable: Money, count: int, first_due: date,
                   interval_days: int = 7) -> List[Tuple[date, Money]]:
    """
    Split a total payable into ``count`` equal installments.

    Rounding residue lands on the last installment so the schedule sums
    exactly to the total.
    """
    if count < 1:
        raise ValueError("Schedule needs at least one installment")

    step = Decimal('1').scaleb(-total_payable.currency.precision)
    share = (total_payable.amount / count).quantize(step, rounding=ROUND_DOWN)
    schedule = []
    for i in range(count):
        amount = share if i < count - 1 else total_payable.amount - share * (count - 1)
        schedule.append((first_due + timedelta(days=interval_days * i),
                         Money(amount, total_payable.currency)))
    return schedule


class LoanBook:
    """
    Loan and installment persistence
    """

    LOAN_TABLE = "loans"
    INSTALLMENT_TABLE = "installments"

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail

    def book_loan(
        self,
        tenant_id: str,
        customer_id: str,
        total_payable: Money,
        schedule: List[Tuple[date, Money]],
        status: LoanStatus = LoanStatus.DISBURSED,
        repayment_state: RepaymentState = RepaymentState.ONGOING,
        disbursed_at: Optional[datetime] = None,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Book a loan with its installment schedule

        Args:
            tenant_id: Owning tenant
            customer_id: Borrower
            total_payable: Principal plus fees and interest
            schedule: (due_date, due_amount) pairs
            status: Initial lifecycle status
            repayment_state: Initial repayment state
            disbursed_at: Disbursement time, defaults to now for disbursed loans
            loan_id: Optional explicit id

        Returns:
            Created Loan

        Raises:
            ValueError: If the schedule does not sum to the total payable
        """
        if not schedule:
            raise ValueError("Loan needs at least one installment")

        scheduled = sum((amount.amount for _, amount in schedule), Decimal('0'))
        if not amounts_equal(scheduled, total_payable):
            raise ValueError(
                f"Installments sum to {scheduled}, expected {total_payable.amount}"
            )
        for _, amount in schedule:
            if amount.currency != total_payable.currency:
                raise ValueError("Installment currency must match loan currency")
            if not amount.is_positive():
                raise ValueError("Installment amounts must be positive")

        now = datetime.now(timezone.utc)
        if disbursed_at is None and status in (LoanStatus.DISBURSED, LoanStatus.DEFAULTED, LoanStatus.CLOSED):
            disbursed_at = now

        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            customer_id=customer_id,
            total_payable=total_payable,
            status=status,
            repayment_state=repayment_state,
            disbursed_at=disbursed_at
        )

        ordered = sorted(schedule, key=lambda item: item[0])
        with self.storage.atomic():
            self.storage.insert(self.LOAN_TABLE, loan.id, loan.to_dict())
            for number, (due_date, amount) in enumerate(ordered, start=1):
                installment = Installment(
                    id=f"{loan.id}:{number}",
                    created_at=now,
                    updated_at=now,
                    tenant_id=tenant_id,
                    loan_id=loan.id,
                    installment_number=number,
                    due_date=due_date,
                    due_amount=amount,
                    paid_amount=Money.zero(amount.currency)
                )
                self.storage.insert(self.INSTALLMENT_TABLE, installment.id, installment.to_dict())

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_BOOKED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "customer_id": customer_id,
                        "total_payable": total_payable.to_dict(),
                        "installments": len(ordered),
                        "status": status.value
                    },
                    tenant_id=tenant_id
                )

        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.LOAN_TABLE, loan_id)
        return Loan.from_dict(data) if data else None

    def get_customer_loans(self, customer_id: str, tenant_id: Optional[str] = None) -> List[Loan]:
        filters = {'customer_id': customer_id}
        if tenant_id is not None:
            filters['tenant_id'] = tenant_id
        loans = [Loan.from_dict(d) for d in self.storage.find(self.LOAN_TABLE, filters)]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by due date, then number"""
        installments = [
            Installment.from_dict(d)
            for d in self.storage.find(self.INSTALLMENT_TABLE, {'loan_id': loan_id})
        ]
        installments.sort(key=lambda i: (i.due_date, i.installment_number))
        return installments

    def _versioned_save(self, table: str, record) -> None:
        expected = record.version
        record.version = expected + 1
        record.updated_at = datetime.now(timezone.utc)
        if self.storage.update_where(table, record.id, {'version': expected}, record.to_dict()) is None:
            record.version = expected
            raise ConcurrencyConflictError(table, record.id)

    def save_installment(self, installment: Installment) -> None:
        """
        Persist an installment read at ``installment.version``

        Raises:
            ConcurrencyConflictError: If another writer got there first
        """
        if (installment.paid_amount - installment.due_amount).is_positive():
            raise ValueError(f"Installment {installment.id} paid amount exceeds due amount")
        self._versioned_save(self.INSTALLMENT_TABLE, installment)

    def save_loan(self, loan: Loan) -> None:
        """Persist a loan read at ``loan.version``"""
        self._versioned_save(self.LOAN_TABLE, loan)

    def update_status(self, loan_id: str, status: LoanStatus) -> Loan:
        """Administrative lifecycle change"""
        loan = self.get_loan(loan_id)
        if not loan:
            raise ValueError(f"Loan {loan_id} not found")
        loan.status = status
        if status == LoanStatus.DISBURSED and loan.disbursed_at is None:
            loan.disbursed_at = datetime.now(timezone.utc)
        self.save_loan(loan)
        return loan

    def refresh_overdue(self, as_of: Optional[date] = None,
                        tenant_id: Optional[str] = None) -> Dict[str, int]:
        """
        Mark unpaid installments past their due date as overdue and flag
        their loans' repayment state.

        Returns:
            Counts of installments and loans changed
        """
        as_of = as_of or datetime.now(timezone.utc).date()
        filters = {'tenant_id': tenant_id} if tenant_id else {}
        results = {'installments': 0, 'loans': 0}

        with self.storage.atomic():
            overdue_loans = set()
            for data in self.storage.find(self.INSTALLMENT_TABLE, filters):
                installment = Installment.from_dict(data)
                if installment.is_paid or installment.due_date >= as_of:
                    continue
                overdue_loans.add(installment.loan_id)
                if installment.status != InstallmentStatus.OVERDUE:
                    installment.status = InstallmentStatus.OVERDUE
                    self.save_installment(installment)
                    results['installments'] += 1

            for loan_id in sorted(overdue_loans):
                loan = self.get_loan(loan_id)
                if loan and loan.repayment_state in (RepaymentState.ONGOING, RepaymentState.PARTIAL):
                    loan.repayment_state = RepaymentState.OVERDUE
                    self.save_loan(loan)
                    results['loans'] += 1

        return results
