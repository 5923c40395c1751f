"""
Installment Allocator

Distributes a payment across outstanding installments with a deterministic
waterfall: oldest due date first, each installment filled up to its due
amount before the next receives anything. The computation is pure
(``allocate``, ``allocate_across_loans``); ``InstallmentAllocator`` reads
fresh state under a per-loan lock, computes the plan and persists it with
versioned writes.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .currency import Money
from .errors import AllocationError
from .loans import (
    Loan, Installment, LoanBook, InstallmentStatus, RepaymentState
)

logger = logging.getLogger("lending_engine.allocation")


@dataclass
class InstallmentAllocation:
    """Amount applied to one installment"""
    installment_id: str
    loan_id: str
    installment_number: int
    due_date: date
    amount: Money
    paid_before: Money
    paid_after: Money
    status_after: InstallmentStatus


@dataclass
class LoanAllocation:
    """Allocations against one loan and the resulting repayment state"""
    loan_id: str
    allocations: List[InstallmentAllocation]
    repayment_state_before: RepaymentState
    repayment_state_after: RepaymentState

    @property
    def total(self) -> Money:
        total = Money.zero(self.allocations[0].amount.currency)
        for allocation in self.allocations:
            total = total + allocation.amount
        return total


@dataclass
class AllocationPlan:
    """Complete result of allocating one payment"""
    amount: Money
    loans: List[LoanAllocation] = field(default_factory=list)
    remainder: Money = None
    # Loans that received nothing but whose stored repayment state was stale
    state_corrections: Dict[str, RepaymentState] = field(default_factory=dict)

    def __post_init__(self):
        if self.remainder is None:
            self.remainder = Money.zero(self.amount.currency)

    @property
    def applied(self) -> Money:
        return self.amount - self.remainder

    @property
    def installment_allocations(self) -> List[InstallmentAllocation]:
        return [a for loan in self.loans for a in loan.allocations]


def _unpaid_in_order(installments: Iterable[Installment]) -> List[Installment]:
    unpaid = [i for i in installments if i.status != InstallmentStatus.PAID]
    unpaid.sort(key=lambda i: (i.due_date, i.installment_number))
    return unpaid


def _waterfall(remaining: Money,
               installments: Sequence[Installment]) -> Tuple[List[InstallmentAllocation], Money]:
    allocations = []
    for installment in _unpaid_in_order(installments):
        if remaining.is_zero():
            break
        outstanding = installment.outstanding
        if not outstanding.is_positive():
            continue

        applied = min(remaining, outstanding)
        paid_after = installment.paid_amount + applied
        if (installment.due_amount - paid_after).is_zero():
            status = InstallmentStatus.PAID
        else:
            status = InstallmentStatus.PARTIAL

        allocations.append(InstallmentAllocation(
            installment_id=installment.id,
            loan_id=installment.loan_id,
            installment_number=installment.installment_number,
            due_date=installment.due_date,
            amount=applied,
            paid_before=installment.paid_amount,
            paid_after=paid_after,
            status_after=status
        ))
        remaining = remaining - applied
    return allocations, remaining


def _check_amount(amount: Money) -> None:
    if not amount.is_positive():
        raise AllocationError(f"Payment amount must be positive, got {amount.to_string()}")


def allocate(amount: Money,
             installments: Sequence[Installment]) -> Tuple[List[InstallmentAllocation], Money]:
    """
    Waterfall one payment over a single loan's installments

    Args:
        amount: Payment amount
        installments: The loan's installments in any order

    Returns:
        (allocations, remainder) where remainder is the overpayment

    Raises:
        AllocationError: If the amount is not positive or nothing is unpaid
    """
    _check_amount(amount)
    if not _unpaid_in_order(installments):
        raise AllocationError("No unpaid installments to allocate against")
    return _waterfall(amount, installments)


def next_repayment_state(current: RepaymentState,
                         statuses_after: Iterable[InstallmentStatus],
                         changed: bool) -> RepaymentState:
    if all(status == InstallmentStatus.PAID for status in statuses_after):
        return RepaymentState.COMPLETED
    if changed:
        return RepaymentState.PARTIAL
    return current


def allocate_across_loans(amount: Money,
                          loan_installments: Sequence[Tuple[Loan, Sequence[Installment]]]) -> AllocationPlan:
    """
    Waterfall one payment over several loans, in the given loan order

    Raises:
        AllocationError: If the amount is not positive or no loan has an
            unpaid installment
    """
    _check_amount(amount)
    if not any(_unpaid_in_order(installments) for _, installments in loan_installments):
        raise AllocationError("No unpaid installments on the selected loans")

    plan = AllocationPlan(amount=amount)
    remaining = amount
    for loan, installments in loan_installments:
        allocations, remaining = _waterfall(remaining, installments)
        if not allocations:
            state = next_repayment_state(loan.repayment_state, [i.status for i in installments], False)
            if state != loan.repayment_state:
                plan.state_corrections[loan.id] = state
            continue

        after = {a.installment_id: a.status_after for a in allocations}
        statuses = [after.get(i.id, i.status) for i in installments]
        plan.loans.append(LoanAllocation(
            loan_id=loan.id,
            allocations=allocations,
            repayment_state_before=loan.repayment_state,
            repayment_state_after=next_repayment_state(loan.repayment_state, statuses, True)
        ))

    plan.remainder = remaining
    return plan


class LoanLockManager:
    """
    In-process mutual exclusion per loan.

    Locks are always taken in sorted loan id order so two payments touching
    overlapping loan sets cannot deadlock.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, loan_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = self._locks[loan_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, loan_ids: Iterable[str]):
        acquired = []
        try:
            for loan_id in sorted(set(loan_ids)):
                lock = self._lock_for(loan_id)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class InstallmentAllocator:
    """Applies allocation plans to stored loans and installments"""

    def __init__(self, loan_book: LoanBook, lock_manager: Optional[LoanLockManager] = None):
        self.loan_book = loan_book
        self.lock_manager = lock_manager or LoanLockManager()

    def apply(self, amount: Money, loans: Sequence[Loan]) -> AllocationPlan:
        """
        Allocate and persist a payment across ``loans`` (already in selection order)

        State is re-read inside the lock, so the plan always reflects the
        latest committed balances. Callers wanting allocation to commit
        together with other writes wrap this in ``storage.atomic()``.

        Raises:
            AllocationError: Nothing to allocate against
            ConcurrencyConflictError: A record changed between read and write
        """
        loan_ids = [loan.id for loan in loans]
        with self.lock_manager.hold(loan_ids):
            loan_installments = []
            for loan_id in loan_ids:
                fresh = self.loan_book.get_loan(loan_id)
                if fresh is None:
                    raise AllocationError(f"Loan {loan_id} not found")
                loan_installments.append((fresh, self.loan_book.get_installments(loan_id)))

            plan = allocate_across_loans(amount, loan_installments)

            installments_by_id = {
                i.id: i for _, installments in loan_installments for i in installments
            }
            loans_by_id = {loan.id: loan for loan, _ in loan_installments}
            for loan_allocation in plan.loans:
                for allocation in loan_allocation.allocations:
                    installment = installments_by_id[allocation.installment_id]
                    installment.paid_amount = allocation.paid_after
                    installment.status = allocation.status_after
                    self.loan_book.save_installment(installment)

                loan = loans_by_id[loan_allocation.loan_id]
                if loan.repayment_state != loan_allocation.repayment_state_after:
                    loan.repayment_state = loan_allocation.repayment_state_after
                self.loan_book.save_loan(loan)

            for loan_id, state in plan.state_corrections.items():
                loan = loans_by_id[loan_id]
                loan.repayment_state = state
                self.loan_book.save_loan(loan)

            logger.debug(
                f"Allocated {plan.applied.to_string()} across {len(plan.loans)} loan(s), "
                f"remainder {plan.remainder.to_string()}",
                extra={'action': 'allocate'}
            )
            return plan
