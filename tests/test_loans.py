"""
Test suite for loans module

Tests schedule construction, loan booking, versioned writes and the
overdue sweep.
"""

import pytest
from datetime import date
from decimal import Decimal

from lending_engine.audit import AuditTrail, AuditEventType
from lending_engine.currency import Money, Currency
from lending_engine.errors import ConcurrencyConflictError
from lending_engine.loans import (
    LoanBook, LoanStatus, RepaymentState, InstallmentStatus, build_schedule
)
from lending_engine.storage import InMemoryStorage


def kes(value) -> Money:
    return Money(Decimal(str(value)), Currency.KES)


class TestBuildSchedule:
    """Equal installments with the rounding residue on the last one"""

    def test_even_split(self):
        schedule = build_schedule(kes(300), 3, date(2026, 1, 7))
        assert [amount for _, amount in schedule] == [kes(100), kes(100), kes(100)]
        assert [due for due, _ in schedule] == [date(2026, 1, 7), date(2026, 1, 14), date(2026, 1, 21)]

    def test_residue_on_last_installment(self):
        schedule = build_schedule(kes(100), 3, date(2026, 1, 1), interval_days=30)
        assert [amount for _, amount in schedule] == [kes('33.33'), kes('33.33'), kes('33.34')]
        assert schedule[2][0] == date(2026, 3, 2)

    def test_zero_precision_currency(self):
        schedule = build_schedule(Money(Decimal('1000'), Currency.UGX), 3, date(2026, 1, 1))
        assert [amount.amount for _, amount in schedule] == [Decimal('333'), Decimal('333'), Decimal('334')]

    def test_needs_an_installment(self):
        with pytest.raises(ValueError, match="at least one installment"):
            build_schedule(kes(100), 0, date(2026, 1, 1))


class TestLoanBook:
    """Booking and persistence"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.book = LoanBook(self.storage, self.audit_trail)

    def _book(self, **kwargs):
        return self.book.book_loan(
            "t1", "c1", kes(350),
            [(date(2026, 1, 21), kes(200)), (date(2026, 1, 7), kes(100)), (date(2026, 1, 14), kes(50))],
            **kwargs
        )

    def test_book_loan(self):
        loan = self._book()

        assert loan.status == LoanStatus.DISBURSED
        assert loan.repayment_state == RepaymentState.ONGOING
        assert loan.disbursed_at is not None

        installments = self.book.get_installments(loan.id)
        assert [i.installment_number for i in installments] == [1, 2, 3]
        assert [i.due_amount for i in installments] == [kes(100), kes(50), kes(200)]
        assert installments[0].id == f"{loan.id}:1"
        assert all(i.paid_amount == kes(0) for i in installments)
        assert all(i.status == InstallmentStatus.PENDING for i in installments)

        booked = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in booked] == [AuditEventType.LOAN_BOOKED]

    def test_booked_loan_has_no_disbursement_date(self):
        loan = self._book(status=LoanStatus.BOOKED)
        assert loan.disbursed_at is None

    def test_schedule_must_sum_to_total(self):
        with pytest.raises(ValueError, match="Installments sum to 300"):
            self.book.book_loan("t1", "c1", kes(350), [(date(2026, 1, 7), kes(300))])
        assert self.storage.count(LoanBook.LOAN_TABLE) == 0

    def test_installment_currency_must_match(self):
        with pytest.raises(ValueError, match="currency must match"):
            self.book.book_loan("t1", "c1", kes(100),
                                [(date(2026, 1, 7), Money(Decimal('100'), Currency.TZS))])

    def test_get_customer_loans(self):
        first = self._book()
        second = self._book()
        self.book.book_loan("t2", "c1", kes(100), [(date(2026, 1, 7), kes(100))])

        assert [l.id for l in self.book.get_customer_loans("c1", tenant_id="t1")] == [first.id, second.id]
        assert len(self.book.get_customer_loans("c1")) == 3

    def test_versioned_save_detects_stale_write(self):
        """Two writers reading the same version: the second loses"""
        loan = self._book()
        first = self.book.get_installments(loan.id)[0]
        stale = self.book.get_installments(loan.id)[0]

        first.paid_amount = kes(40)
        self.book.save_installment(first)
        assert first.version == 1

        stale.paid_amount = kes(60)
        with pytest.raises(ConcurrencyConflictError):
            self.book.save_installment(stale)
        assert stale.version == 0
        assert self.book.get_installments(loan.id)[0].paid_amount == kes(40)

    def test_installment_cannot_be_overpaid(self):
        loan = self._book()
        installment = self.book.get_installments(loan.id)[0]
        installment.paid_amount = kes(101)
        with pytest.raises(ValueError, match="exceeds due amount"):
            self.book.save_installment(installment)

    def test_update_status(self):
        loan = self._book(status=LoanStatus.APPROVED)
        updated = self.book.update_status(loan.id, LoanStatus.DISBURSED)

        assert updated.status == LoanStatus.DISBURSED
        assert updated.disbursed_at is not None
        assert self.book.get_loan(loan.id).version == 1

        with pytest.raises(ValueError, match="not found"):
            self.book.update_status("missing", LoanStatus.CLOSED)

    def test_refresh_overdue(self):
        loan = self._book()

        results = self.book.refresh_overdue(as_of=date(2026, 1, 15))

        assert results == {'installments': 2, 'loans': 1}
        statuses = [i.status for i in self.book.get_installments(loan.id)]
        assert statuses == [InstallmentStatus.OVERDUE, InstallmentStatus.OVERDUE, InstallmentStatus.PENDING]
        assert self.book.get_loan(loan.id).repayment_state == RepaymentState.OVERDUE

        # Running again changes nothing
        assert self.book.refresh_overdue(as_of=date(2026, 1, 15)) == {'installments': 0, 'loans': 0}
