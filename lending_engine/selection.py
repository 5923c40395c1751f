"""
Loan Selection Policy

Decides which of a customer's loans may receive a payment. Tiers are
consulted in order and the first non-empty tier wins:

1. ``active``: disbursed loans still being repaid (ongoing or partial)
2. ``disbursed``: any disbursed loan
3. ``not_rejected``: anything that was not rejected
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Tuple

from .errors import NoEligibleLoanError
from .loans import Loan, LoanStatus, RepaymentState


LoanPredicate = Callable[[Loan], bool]

SELECTION_TIERS: List[Tuple[str, LoanPredicate]] = [
    ("active", lambda loan: loan.status == LoanStatus.DISBURSED
        and loan.repayment_state in (RepaymentState.ONGOING, RepaymentState.PARTIAL)),
    ("disbursed", lambda loan: loan.status == LoanStatus.DISBURSED),
    ("not_rejected", lambda loan: loan.status != LoanStatus.REJECTED),
]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class LoanSelection:
    """Loans eligible for a payment and the tier that produced them"""
    tier: str
    loans: List[Loan]

    @property
    def loan_ids(self) -> List[str]:
        return [loan.id for loan in self.loans]


def _selection_order(loan: Loan):
    return (loan.disbursed_at or _EPOCH, loan.created_at, loan.id)


def select_eligible_loans(loans: List[Loan], customer_id: str = "") -> LoanSelection:
    """
    Apply the selection tiers to a customer's loans

    Raises:
        NoEligibleLoanError: If even the last tier is empty
    """
    for tier, predicate in SELECTION_TIERS:
        eligible = [loan for loan in loans if predicate(loan)]
        if eligible:
            eligible.sort(key=_selection_order)
            return LoanSelection(tier=tier, loans=eligible)

    summary = ", ".join(f"{loan.id}:{loan.status.value}" for loan in loans) or "none"
    raise NoEligibleLoanError(customer_id, summary)
