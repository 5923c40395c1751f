"""
Payment Processor

Runs one payment event through the pipeline: customer match, loan
selection, allocation, reconciliation records, wallet credit for any
overpayment, ledger posting and the event's final status. Allocation,
records, wallet credit, journal entry and status commit in a single storage
transaction under the per-loan lock; any failure rolls all of it back.

Outcomes:
    applied   money moved onto installments (and maybe the wallet)
    suspense  payer or loan could not be identified, awaiting re-match
    failed    payer identified but nothing could be applied
    skipped   event was not pending (already handled or in flight)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum

from .allocation import InstallmentAllocator
from .audit import AuditTrail, AuditEventType
from .config import EngineConfig
from .currency import Money
from .customers import Customer, CustomerDirectory
from .errors import (
    AllocationError, EngineError, ForeignAccountError, ImbalancedEntryError,
    NoEligibleLoanError, UnknownAccountError
)
from .ingest import (
    PaymentEvent, PaymentEventStore, PaymentStatus, SuspenseRegistry, SuspenseReason, SuspenseStatus
)
from .ledger import LedgerPoster, REFERENCE_PAYMENT
from .loans import LoanBook
from .logging_config import log_action
from .reconciliation import ReconciliationRecorder
from .selection import select_eligible_loans
from .storage import StorageInterface
from .tenancy import TenantManager, tenant_context
from .wallet import CustomerWallet

logger = logging.getLogger("lending_engine.processor")


class ProcessOutcome(Enum):
    APPLIED = "applied"
    SUSPENSE = "suspense"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ProcessResult:
    event_id: str
    outcome: ProcessOutcome
    applied_amount: Optional[Decimal] = None
    unapplied_amount: Optional[Decimal] = None
    journal_entry_id: Optional[str] = None
    selection_tier: Optional[str] = None
    code: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'outcome': self.outcome.value,
            'applied_amount': str(self.applied_amount) if self.applied_amount is not None else None,
            'unapplied_amount': str(self.unapplied_amount) if self.unapplied_amount is not None else None,
            'journal_entry_id': self.journal_entry_id,
            'selection_tier': self.selection_tier,
            'code': self.code,
            'reason': self.reason,
        }


class PaymentProcessor:
    """
    Executes the resolution, allocation and posting pipeline for payment events
    """

    def __init__(self, storage: StorageInterface, events: PaymentEventStore,
                 suspense: SuspenseRegistry, customers: CustomerDirectory,
                 loan_book: LoanBook, allocator: InstallmentAllocator,
                 recorder: ReconciliationRecorder, wallet: CustomerWallet,
                 ledger: LedgerPoster, tenant_manager: TenantManager,
                 config: EngineConfig, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.events = events
        self.suspense = suspense
        self.customers = customers
        self.loan_book = loan_book
        self.allocator = allocator
        self.recorder = recorder
        self.wallet = wallet
        self.ledger = ledger
        self.tenant_manager = tenant_manager
        self.config = config
        self.audit_trail = audit_trail

    def _account_codes(self, tenant_id: str) -> Dict[str, str]:
        tenant = self.tenant_manager.get_tenant(tenant_id)
        settings = tenant.settings if tenant else {}
        return {
            'clearing_code': settings.get('clearing_account_code', self.config.clearing_account_code),
            'receivable_code': settings.get('loan_receivable_account_code',
                                            self.config.loan_receivable_account_code),
            'overpayment_code': settings.get('overpayment_account_code',
                                             self.config.overpayment_account_code),
        }

    def _claim(self, event_id: str) -> Optional[PaymentEvent]:
        event = self.events.get(event_id)
        if event is None:
            raise ValueError(f"Payment event {event_id} not found")
        return self.events.update(event_id, {
            'status': PaymentStatus.PROCESSING,
            'attempts': event.attempts + 1
        }, expected_status=PaymentStatus.PENDING)

    def process_event(self, event_id: str,
                      customer_id: Optional[str] = None) -> ProcessResult:
        """
        Process one pending payment event

        Args:
            event_id: Payment event to process
            customer_id: Force the payer (manual re-match); otherwise matched by phone

        Returns:
            ProcessResult describing the outcome

        Raises:
            EngineError: Retryable errors leave the event pending, others mark it failed
            Exception: Unexpected errors leave the event pending for a retry
        """
        event = self._claim(event_id)
        if event is None:
            current = self.events.get(event_id)
            return ProcessResult(event_id=event_id, outcome=ProcessOutcome.SKIPPED,
                                 reason=f"Event is {current.status.value}")

        with tenant_context(event.tenant_id):
            try:
                return self._process_claimed(event, customer_id)
            except EngineError as e:
                if e.retryable:
                    self._release(event, e.code, str(e))
                else:
                    self._mark_failed(event, None, e.code, str(e))
                raise
            except Exception as e:
                # Unknown failures are retried by the queue
                self._release(event, "UNEXPECTED_ERROR", str(e))
                raise

    def _release(self, event: PaymentEvent, code: str, reason: str) -> None:
        self.events.update(event.id, {
            'status': PaymentStatus.PENDING,
            'failure_code': code,
            'failure_reason': reason
        }, expected_status=PaymentStatus.PROCESSING)

    def _match_customer(self, event: PaymentEvent,
                        customer_id: Optional[str]) -> Optional[Customer]:
        if customer_id:
            customer = self.customers.get_customer(customer_id)
            if customer is None or customer.tenant_id != event.tenant_id:
                raise ValueError(f"Customer {customer_id} not found for tenant {event.tenant_id}")
            return customer

        if event.customer_id:
            customer = self.customers.get_customer(event.customer_id)
            if customer and customer.tenant_id == event.tenant_id:
                return customer

        matches = self.customers.find_by_phone(event.payer_phone, tenant_id=event.tenant_id)
        return matches[0] if len(matches) == 1 else None

    def _process_claimed(self, event: PaymentEvent,
                         customer_id: Optional[str]) -> ProcessResult:
        if not event.tenant_id:
            return self._to_suspense(event, SuspenseReason.UNRESOLVED_TENANT,
                                     "Event has no tenant")

        customer = self._match_customer(event, customer_id)
        if customer is None:
            return self._to_suspense(event, SuspenseReason.UNMATCHED_CUSTOMER,
                                     f"No single customer matches phone {event.payer_phone}")
        event.customer_id = customer.id

        loans = self.loan_book.get_customer_loans(customer.id, tenant_id=event.tenant_id)
        try:
            selection = select_eligible_loans(loans, customer.id)
        except NoEligibleLoanError as e:
            return self._to_suspense(event, SuspenseReason.NO_ELIGIBLE_LOAN, str(e))

        try:
            with self.allocator.lock_manager.hold(selection.loan_ids):
                with self.storage.atomic():
                    plan = self.allocator.apply(event.amount, selection.loans)
                    self.recorder.record_allocation(event, customer.id, plan)
                    if plan.remainder.is_positive():
                        self.wallet.credit(
                            tenant_id=event.tenant_id,
                            customer_id=customer.id,
                            amount=plan.remainder,
                            reference_type=REFERENCE_PAYMENT,
                            reference_id=event.id,
                            description=f"Overpayment on {event.external_transaction_id or event.id}"
                        )
                    posting = self.ledger.post_allocation(event, plan, **self._account_codes(event.tenant_id))
                    self.events.update(event.id, {
                        'status': PaymentStatus.APPLIED,
                        'customer_id': customer.id,
                        'applied_amount': plan.applied,
                        'unapplied_amount': plan.remainder,
                        'journal_entry_id': posting.entry.id,
                        'failure_code': None,
                        'failure_reason': None,
                        'processed_at': datetime.now(timezone.utc)
                    })
                    if self.audit_trail:
                        self.audit_trail.log_event(
                            event_type=AuditEventType.PAYMENT_APPLIED,
                            entity_type="payment_event",
                            entity_id=event.id,
                            metadata={
                                "customer_id": customer.id,
                                "applied": plan.applied.to_dict(),
                                "unapplied": plan.remainder.to_dict(),
                                "loans": [l.loan_id for l in plan.loans],
                                "journal_entry_id": posting.entry.id
                            },
                            tenant_id=event.tenant_id
                        )
        except AllocationError as e:
            with self.storage.atomic():
                self.recorder.record_mismatch(event, customer.id, str(e))
                self._mark_failed(event, customer.id, e.code, str(e))
            return ProcessResult(event_id=event.id, outcome=ProcessOutcome.FAILED,
                                 unapplied_amount=event.amount.amount,
                                 selection_tier=selection.tier, code=e.code, reason=str(e))
        except (ImbalancedEntryError, ForeignAccountError, UnknownAccountError) as e:
            self._mark_failed(event, customer.id, e.code, str(e))
            return ProcessResult(event_id=event.id, outcome=ProcessOutcome.FAILED,
                                 selection_tier=selection.tier, code=e.code, reason=str(e))

        log_action(logger, "info", f"Payment applied: {plan.applied.to_string()}",
                   action="process_event", tenant_id=event.tenant_id,
                   transaction_id=event.external_transaction_id,
                   extra={"event_id": event.id, "tier": selection.tier,
                          "unapplied": str(plan.remainder.amount)})
        return ProcessResult(
            event_id=event.id,
            outcome=ProcessOutcome.APPLIED,
            applied_amount=plan.applied.amount,
            unapplied_amount=plan.remainder.amount,
            journal_entry_id=posting.entry.id,
            selection_tier=selection.tier
        )

    def _to_suspense(self, event: PaymentEvent, reason: SuspenseReason, detail: str) -> ProcessResult:
        self.suspense.move_to_suspense(event, reason, detail)
        return ProcessResult(event_id=event.id, outcome=ProcessOutcome.SUSPENSE,
                             unapplied_amount=event.amount.amount,
                             code=reason.value, reason=detail)

    def _mark_failed(self, event: PaymentEvent, customer_id: Optional[str],
                     code: str, reason: str) -> None:
        self.events.update(event.id, {
            'status': PaymentStatus.FAILED,
            'customer_id': customer_id or event.customer_id,
            'applied_amount': Money.zero(event.amount.currency),
            'unapplied_amount': event.amount,
            'failure_code': code,
            'failure_reason': reason,
            'processed_at': datetime.now(timezone.utc)
        })
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_FAILED,
                entity_type="payment_event",
                entity_id=event.id,
                metadata={"code": code, "reason": reason},
                tenant_id=event.tenant_id
            )
        log_action(logger, "warning", f"Payment failed: {reason}", action="process_event",
                   tenant_id=event.tenant_id, transaction_id=event.external_transaction_id)

    def rematch_suspense(self, suspense_id: str, customer_id: str) -> ProcessResult:
        """
        Re-feed a suspended payment with an operator-chosen customer

        The customer's tenant becomes the event's tenant. The suspense entry
        is resolved only when the payment is applied.

        Raises:
            ValueError: Unknown or closed entry, unknown customer, or a
                customer of a different tenant than the entry's
        """
        entry = self.suspense.get_entry(suspense_id)
        if entry is None:
            raise ValueError(f"Suspense entry {suspense_id} not found")
        if entry.status != SuspenseStatus.OPEN:
            raise ValueError(f"Suspense entry {suspense_id} is already resolved")

        customer = self.customers.get_customer(customer_id)
        if customer is None:
            raise ValueError(f"Customer {customer_id} not found")
        if entry.tenant_id and entry.tenant_id != customer.tenant_id:
            raise ValueError(f"Customer {customer_id} belongs to another tenant")

        reopened = self.events.update(entry.event_id, {
            'status': PaymentStatus.PENDING,
            'tenant_id': customer.tenant_id,
            'customer_id': customer.id,
            'matched_by': "manual"
        }, expected_status=PaymentStatus.SUSPENSE)
        if reopened is None:
            raise ValueError(f"Payment event {entry.event_id} is not in suspense")

        result = self.process_event(entry.event_id, customer_id=customer.id)
        if result.outcome == ProcessOutcome.APPLIED:
            self.suspense.mark_resolved(suspense_id, customer.id)
        return result

    def recover_stuck_events(self, timeout_minutes: Optional[int] = None,
                             now: Optional[datetime] = None) -> int:
        """Return events left in "processing" by a vanished worker to "pending"."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=timeout_minutes or self.config.stuck_job_minutes)
        recovered = 0
        for event in self.events.list_events(status=PaymentStatus.PROCESSING):
            if event.updated_at > cutoff:
                continue
            if self.events.update(event.id, {
                'status': PaymentStatus.PENDING,
                'failure_code': "STUCK_PROCESSING",
                'failure_reason': "Processing timed out"
            }, expected_status=PaymentStatus.PROCESSING):
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stuck payment event(s)",
                           extra={'action': 'recover_stuck'})
        return recovered

    def process_pending(self, tenant_id: Optional[str] = None, limit: int = 50) -> List[ProcessResult]:
        """Process pending events directly, oldest first, bypassing the queue"""
        results = []
        for event in self.events.list_events(tenant_id=tenant_id, status=PaymentStatus.PENDING)[:limit]:
            if not event.tenant_id:
                continue
            try:
                results.append(self.process_event(event.id))
            except EngineError as e:
                results.append(ProcessResult(event_id=event.id, outcome=ProcessOutcome.FAILED,
                                             code=e.code, reason=str(e)))
        return results
