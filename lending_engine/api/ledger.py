"""
Ledger endpoints: chart of accounts, manual and bulk journal entries, queries
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import LendingSystem, get_lending_system, require_tenant, to_http_error
from .schemas import BulkJournalRequest, CreateAccountRequest, ManualJournalRequest
from ..currency import Currency
from ..ledger import AccountType, PostingStatus
from ..storage import parse_datetime

router = APIRouter()


def _currency(code: Optional[str]) -> Optional[Currency]:
    if code is None:
        return None
    if code not in Currency.__members__:
        raise ValueError(f"Unsupported currency: {code}")
    return Currency[code]


@router.get("/accounts")
def list_accounts(
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    accounts = system.chart.list_accounts(tenant_id)
    return {"accounts": [account.to_dict() for account in accounts]}


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        account = system.chart.create_account(
            tenant_id, request.code, request.name, AccountType(request.account_type)
        )
    except ValueError as e:
        raise to_http_error(e)
    return account.to_dict()


@router.post("/accounts/defaults", status_code=status.HTTP_201_CREATED)
def seed_default_accounts(
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    """Create the clearing, receivable and overpayment accounts if missing"""
    accounts = system.chart.seed_default_accounts(tenant_id)
    return {"accounts": {code: account.id for code, account in accounts.items()}}


@router.post("/journal-entries", status_code=status.HTTP_201_CREATED)
def post_manual_entry(
    request: ManualJournalRequest,
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    """Post a balanced manual journal entry"""
    try:
        posting = system.ledger.post_manual_entry(
            tenant_id=tenant_id,
            lines=[line.to_line_input() for line in request.lines],
            reference=request.reference,
            description=request.description,
            entry_date=parse_datetime(request.entry_date) if request.entry_date else None,
            currency=_currency(request.currency)
        )
    except ValueError as e:
        raise to_http_error(e)

    return {
        "entry_id": posting.entry.id,
        "reference_id": posting.entry.reference_id,
        "status": posting.status.value,
        "total": str(posting.entry.total_debit.amount),
        "line_count": posting.entry.line_count,
        "message": "Journal entry posted" if posting.status == PostingStatus.WRITTEN
                   else "Journal entry already posted"
    }


@router.post("/journal-entries/bulk")
def import_bulk_entries(
    request: BulkJournalRequest,
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    """Post spreadsheet rows grouped by reference"""
    try:
        result = system.ledger.import_bulk_lines(tenant_id, request.rows, _currency(request.currency))
    except ValueError as e:
        raise to_http_error(e)

    return {
        "count": result.count,
        "posted": result.posted,
        "duplicates": result.duplicates,
        "skipped": result.skipped
    }


@router.get("/journal-entries")
def find_entries(
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    entries = system.ledger.find_entries(tenant_id, reference_type, reference_id)
    return {"entries": [entry.to_dict() for entry in entries], "count": len(entries)}


@router.get("/journal-entries/{entry_id}")
def get_entry(
    entry_id: str,
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    entry = system.ledger.get_entry(entry_id)
    if entry is None or entry.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Journal entry not found")
    return {
        "entry": entry.to_dict(),
        "lines": [line.to_dict() for line in system.ledger.get_lines(entry_id)],
        "balanced": system.ledger.verify_entry(entry_id)
    }
