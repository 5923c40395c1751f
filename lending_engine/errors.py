"""
Engine Error Taxonomy

Every failure the pipeline can surface carries a stable machine ``code``
that is stored on payment events, suspense entries and queue jobs.
Resolution errors route to suspense, allocation and posting errors fail
atomically, transient errors are retried by the queue.
"""

from decimal import Decimal
from typing import Optional


class EngineError(ValueError):
    """Base class for all lending engine errors"""

    code: str = "ENGINE_ERROR"
    retryable: bool = False


class DuplicateRecordError(EngineError):
    """A unique key already exists in storage"""

    code = "DUPLICATE_RECORD"

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"Record {record_id} already exists in {table}")


class UnresolvedTenantError(EngineError):
    """Neither routing key nor payer phone identifies a tenant"""

    code = "UNRESOLVED_TENANT"

    def __init__(self, routing_key: Optional[str], payer_phone: Optional[str]):
        self.routing_key = routing_key
        self.payer_phone = payer_phone
        super().__init__(
            f"Tenant not resolved from routing key {routing_key!r} or phone {payer_phone!r}"
        )


class UnmatchedCustomerError(EngineError):
    """Tenant is known but no customer owns the payer phone"""

    code = "UNMATCHED_CUSTOMER"

    def __init__(self, tenant_id: str, payer_phone: Optional[str]):
        self.tenant_id = tenant_id
        self.payer_phone = payer_phone
        super().__init__(f"No customer of tenant {tenant_id} matches phone {payer_phone!r}")


class NoEligibleLoanError(EngineError):
    """Customer has no loan able to receive a payment"""

    code = "NO_ELIGIBLE_LOAN"

    def __init__(self, customer_id: str, loan_summary: str = "none"):
        self.customer_id = customer_id
        self.loan_summary = loan_summary
        super().__init__(
            f"No eligible loan for customer {customer_id} (loans: {loan_summary})"
        )


class AllocationError(EngineError):
    """Payment cannot be allocated (non-positive amount or nothing outstanding)"""

    code = "ALLOCATION_FAILED"


class ImbalancedEntryError(EngineError):
    """Journal lines do not balance"""

    code = "IMBALANCED_ENTRY"

    def __init__(self, total_debit: Decimal, total_credit: Decimal):
        self.total_debit = total_debit
        self.total_credit = total_credit
        self.imbalance = total_debit - total_credit
        super().__init__(
            f"Entries do not balance: debits={total_debit} credits={total_credit} "
            f"difference={abs(self.imbalance)}"
        )


class ForeignAccountError(EngineError):
    """A journal line references an account owned by another tenant"""

    code = "FOREIGN_ACCOUNT"

    def __init__(self, account_id: str, tenant_id: str):
        self.account_id = account_id
        self.tenant_id = tenant_id
        super().__init__(f"Account {account_id} does not belong to tenant {tenant_id}")


class UnknownAccountError(EngineError):
    """A ledger account code or id does not exist in the tenant's chart"""

    code = "UNKNOWN_ACCOUNT"

    def __init__(self, tenant_id: str, account_ref: str):
        self.tenant_id = tenant_id
        self.account_ref = account_ref
        super().__init__(f"Account {account_ref} not found for tenant {tenant_id}")


class TransientInfrastructureError(EngineError):
    """Temporary failure worth retrying with backoff"""

    code = "TRANSIENT_FAILURE"
    retryable = True


class ConcurrencyConflictError(TransientInfrastructureError):
    """A versioned record changed between read and write"""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"Concurrent modification of {table}/{record_id}")
