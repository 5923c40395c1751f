"""
Double-Entry Ledger Poster

Validates and posts balanced journal entries against a tenant's chart of
accounts. Every entry is keyed by its source ``(tenant, reference_type,
reference_id)``: the link, the header and all lines are written in one
storage transaction, so a failure can never leave a header without its
lines, and re-posting the same source returns the original entry.
Entries are immutable once posted.
"""

import logging
import uuid
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency, amounts_equal, decimal_from_string
from .errors import (
    DuplicateRecordError, ForeignAccountError, ImbalancedEntryError, UnknownAccountError
)
from .storage import StorageInterface, StorageRecord, parse_datetime

logger = logging.getLogger("lending_engine.ledger")


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    REVENUE = "revenue"       # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance


class PostingStatus(Enum):
    WRITTEN = "written"
    ALREADY_EXISTS = "already_exists"


# Accounts every tenant needs for repayment posting
DEFAULT_ACCOUNTS = [
    ("1010", "Mobile Money Clearing", AccountType.ASSET),
    ("1200", "Loans Receivable", AccountType.ASSET),
    ("2100", "Customer Overpayments", AccountType.LIABILITY),
]

REFERENCE_PAYMENT = "payment"
REFERENCE_MANUAL = "manual_journal"
REFERENCE_BULK = "bulk_upload"


@dataclass
class Account(StorageRecord):
    tenant_id: str
    code: str
    name: str
    account_type: AccountType
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['account_type'] = AccountType(data['account_type'])
        return cls(**data)


@dataclass
class LineInput:
    """Requested journal line: exactly one of debit or credit is positive"""
    account_id: str
    debit: Decimal = Decimal('0')
    credit: Decimal = Decimal('0')
    description: str = ""

    def __post_init__(self):
        self.debit = decimal_from_string(self.debit or 0)
        self.credit = decimal_from_string(self.credit or 0)


@dataclass
class JournalLine(StorageRecord):
    """
    Individual line item in a journal entry
    Each line affects one account with either a debit or credit
    """
    entry_id: str
    tenant_id: str
    line_number: int
    account_id: str
    debit_amount: Money
    credit_amount: Money
    description: str = ""

    @property
    def is_debit(self) -> bool:
        return not self.debit_amount.is_zero()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalLine':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['debit_amount'] = Money.from_dict(data['debit_amount'])
        data['credit_amount'] = Money.from_dict(data['credit_amount'])
        return cls(**data)


@dataclass
class JournalEntry(StorageRecord):
    """Posted journal entry header; lines live in their own table"""
    tenant_id: str
    reference_type: str
    reference_id: str
    description: str
    entry_date: datetime
    total_debit: Money
    total_credit: Money
    line_count: int
    posted_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalEntry':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'entry_date', 'posted_at'):
            data[key] = parse_datetime(data.get(key))
        data['total_debit'] = Money.from_dict(data['total_debit'])
        data['total_credit'] = Money.from_dict(data['total_credit'])
        return cls(**data)


@dataclass
class PostingResult:
    status: PostingStatus
    entry: JournalEntry
    lines: List[JournalLine] = field(default_factory=list)


@dataclass
class BulkImportResult:
    """Outcome of a bulk journal upload"""
    posted: List[str] = field(default_factory=list)        # references written
    duplicates: List[str] = field(default_factory=list)    # references already posted
    skipped: List[Dict[str, Any]] = field(default_factory=list)  # reference + reason/imbalance

    @property
    def count(self) -> int:
        return len(self.posted)


class ChartOfAccounts:
    """Tenant-scoped ledger accounts"""

    TABLE = "ledger_accounts"
    CODE_TABLE = "ledger_account_codes"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def create_account(self, tenant_id: str, code: str, name: str,
                       account_type: AccountType) -> Account:
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            code=str(code).strip(),
            name=name,
            account_type=account_type
        )
        try:
            with self.storage.atomic():
                self.storage.insert(self.CODE_TABLE, f"{tenant_id}:{account.code}",
                                    {'account_id': account.id})
                self.storage.insert(self.TABLE, account.id, account.to_dict())
        except DuplicateRecordError as e:
            raise ValueError(f"Account code {account.code} already exists for tenant {tenant_id}") from e
        return account

    def seed_default_accounts(self, tenant_id: str) -> Dict[str, Account]:
        """Create any missing default accounts; returns them by code"""
        accounts = {}
        for code, name, account_type in DEFAULT_ACCOUNTS:
            accounts[code] = self.get_by_code(tenant_id, code) or \
                self.create_account(tenant_id, code, name, account_type)
        return accounts

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.TABLE, account_id)
        return Account.from_dict(data) if data else None

    def get_by_code(self, tenant_id: str, code: str) -> Optional[Account]:
        link = self.storage.load(self.CODE_TABLE, f"{tenant_id}:{str(code).strip()}")
        return self.get_account(link['account_id']) if link else None

    def require_by_code(self, tenant_id: str, code: str) -> Account:
        account = self.get_by_code(tenant_id, code)
        if account is None:
            raise UnknownAccountError(tenant_id, str(code))
        return account

    def list_accounts(self, tenant_id: str) -> List[Account]:
        accounts = [Account.from_dict(d) for d in self.storage.find(self.TABLE, {'tenant_id': tenant_id})]
        accounts.sort(key=lambda a: a.code)
        return accounts


def _row_value(row: Dict[str, Any], *names: str) -> Any:
    lowered = {str(k).lower().replace(" ", "").replace("_", ""): v for k, v in row.items()}
    for name in names:
        value = lowered.get(name)
        if value not in (None, ""):
            return value
    return None


class LedgerPoster:
    """
    Posts balanced journal entries
    """

    ENTRY_TABLE = "journal_entries"
    LINE_TABLE = "journal_lines"
    LINK_TABLE = "journal_links"

    def __init__(self, storage: StorageInterface, chart: ChartOfAccounts,
                 audit_trail: Optional[AuditTrail] = None,
                 default_currency: Currency = Currency.KES):
        self.storage = storage
        self.chart = chart
        self.audit_trail = audit_trail
        self.default_currency = default_currency

    @staticmethod
    def _link_id(tenant_id: str, reference_type: str, reference_id: str) -> str:
        return f"{tenant_id}:{reference_type}:{reference_id}"

    def validate_lines(self, tenant_id: str, lines: List[LineInput],
                       currency: Optional[Currency] = None) -> Tuple[List[Tuple[Money, Money]], Money, Money]:
        """
        Check every rule a journal entry must satisfy before anything is written

        Amounts are rounded to the currency's minor unit first; the checks and
        totals use exactly the amounts that will be stored.

        Returns:
            ([(debit, credit) per line], total_debit, total_credit)

        Raises:
            ValueError: Fewer than two lines, or a line without exactly one positive side
            UnknownAccountError: A line names a missing account
            ForeignAccountError: A line names another tenant's account
            ImbalancedEntryError: Debits and credits differ by MONEY_EPSILON or more
        """
        if len(lines) < 2:
            raise ValueError("Journal entry needs at least two lines")

        currency = currency or self.default_currency
        rounded = []
        total_debit = Money.zero(currency)
        total_credit = Money.zero(currency)
        for number, line in enumerate(lines, start=1):
            if line.debit < 0 or line.credit < 0:
                raise ValueError(f"Line {number}: amounts cannot be negative")
            debit = Money(line.debit, currency)
            credit = Money(line.credit, currency)
            if debit.is_positive() == credit.is_positive():
                raise ValueError(f"Line {number}: exactly one of debit or credit must be positive")

            account = self.chart.get_account(line.account_id)
            if account is None:
                raise UnknownAccountError(tenant_id, line.account_id)
            if account.tenant_id != tenant_id:
                raise ForeignAccountError(line.account_id, tenant_id)

            rounded.append((debit, credit))
            total_debit += debit
            total_credit += credit

        if not amounts_equal(total_debit, total_credit):
            raise ImbalancedEntryError(total_debit.amount, total_credit.amount)
        return rounded, total_debit, total_credit

    def find_entries(self, tenant_id: str, reference_type: Optional[str] = None,
                     reference_id: Optional[str] = None) -> List[JournalEntry]:
        filters = {'tenant_id': tenant_id}
        if reference_type is not None:
            filters['reference_type'] = reference_type
        if reference_id is not None:
            filters['reference_id'] = reference_id
        entries = [JournalEntry.from_dict(d) for d in self.storage.find(self.ENTRY_TABLE, filters)]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def get_entry(self, entry_id: str) -> Optional[JournalEntry]:
        data = self.storage.load(self.ENTRY_TABLE, entry_id)
        return JournalEntry.from_dict(data) if data else None

    def get_lines(self, entry_id: str) -> List[JournalLine]:
        lines = [JournalLine.from_dict(d) for d in self.storage.find(self.LINE_TABLE, {'entry_id': entry_id})]
        lines.sort(key=lambda l: l.line_number)
        return lines

    def _existing(self, tenant_id: str, reference_type: str, reference_id: str) -> Optional[PostingResult]:
        link = self.storage.load(self.LINK_TABLE, self._link_id(tenant_id, reference_type, reference_id))
        if not link:
            return None
        entry = self.get_entry(link['entry_id'])
        return PostingResult(status=PostingStatus.ALREADY_EXISTS, entry=entry,
                             lines=self.get_lines(entry.id))

    def _save_line(self, line: JournalLine) -> None:
        self.storage.insert(self.LINE_TABLE, line.id, line.to_dict())

    def post_entry(self, tenant_id: str, reference_type: str, reference_id: str,
                   description: str, lines: List[LineInput],
                   currency: Optional[Currency] = None,
                   entry_date: Optional[datetime] = None) -> PostingResult:
        """
        Validate and post a journal entry

        Args:
            tenant_id: Owning tenant; every account must belong to it
            reference_type: Source kind (payment, manual_journal, bulk_upload)
            reference_id: Source id, unique per tenant and reference type
            description: Entry narrative
            lines: Requested lines
            currency: Entry currency, defaults to the poster's currency
            entry_date: Accounting date, defaults to now

        Returns:
            PostingResult with WRITTEN, or ALREADY_EXISTS for a source
            reference that was posted before

        Raises:
            ImbalancedEntryError, ForeignAccountError, UnknownAccountError,
            ValueError: entry rejected, nothing written
        """
        existing = self._existing(tenant_id, reference_type, reference_id)
        if existing:
            return existing

        currency = currency or self.default_currency
        try:
            amounts, total_debit, total_credit = self.validate_lines(tenant_id, lines, currency)
        except ValueError as e:
            logger.warning(f"Journal entry rejected: {e}",
                           extra={'tenant_id': tenant_id, 'action': 'post_entry'})
            raise

        now = datetime.now(timezone.utc)
        entry = JournalEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            entry_date=entry_date or now,
            total_debit=total_debit,
            total_credit=total_credit,
            line_count=len(lines),
            posted_at=now
        )
        journal_lines = [
            JournalLine(
                id=f"{entry.id}:{number}",
                created_at=now,
                updated_at=now,
                entry_id=entry.id,
                tenant_id=tenant_id,
                line_number=number,
                account_id=line.account_id,
                debit_amount=debit,
                credit_amount=credit,
                description=line.description
            )
            for number, (line, (debit, credit)) in enumerate(zip(lines, amounts), start=1)
        ]

        try:
            with self.storage.atomic():
                self.storage.insert(self.LINK_TABLE,
                                    self._link_id(tenant_id, reference_type, reference_id),
                                    {'entry_id': entry.id})
                self.storage.insert(self.ENTRY_TABLE, entry.id, entry.to_dict())
                for line in journal_lines:
                    self._save_line(line)

                if self.audit_trail:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.JOURNAL_ENTRY_POSTED,
                        entity_type="journal_entry",
                        entity_id=entry.id,
                        metadata={
                            "reference_type": reference_type,
                            "reference_id": reference_id,
                            "total": entry.total_debit.to_dict(),
                            "line_count": len(journal_lines)
                        },
                        tenant_id=tenant_id
                    )
        except DuplicateRecordError as e:
            if e.table != self.LINK_TABLE:
                raise
            # Concurrent poster won the reservation
            return self._existing(tenant_id, reference_type, reference_id)

        logger.info(f"Journal entry posted for {reference_type}/{reference_id}",
                    extra={'tenant_id': tenant_id, 'action': 'post_entry'})
        return PostingResult(status=PostingStatus.WRITTEN, entry=entry, lines=journal_lines)

    def post_allocation(self, event, plan, clearing_code: str = "1010",
                        receivable_code: str = "1200",
                        overpayment_code: str = "2100") -> PostingResult:
        """
        Post a processed payment: debit clearing for the full amount, credit
        loans receivable per loan, credit customer overpayments with any
        remainder.
        """
        tenant_id = event.tenant_id
        clearing = self.chart.require_by_code(tenant_id, clearing_code)
        receivable = self.chart.require_by_code(tenant_id, receivable_code)

        reference = event.external_transaction_id or event.id
        lines = [LineInput(account_id=clearing.id, debit=event.amount.amount,
                           description=f"Payment {reference}")]
        for loan_allocation in plan.loans:
            lines.append(LineInput(account_id=receivable.id, credit=loan_allocation.total.amount,
                                   description=f"Repayment of loan {loan_allocation.loan_id}"))
        if plan.remainder.is_positive():
            overpayment = self.chart.require_by_code(tenant_id, overpayment_code)
            lines.append(LineInput(account_id=overpayment.id, credit=plan.remainder.amount,
                                   description=f"Overpayment on {reference}"))

        return self.post_entry(
            tenant_id=tenant_id,
            reference_type=REFERENCE_PAYMENT,
            reference_id=event.id,
            description=f"Loan repayment {reference}",
            lines=lines,
            currency=event.amount.currency,
            entry_date=event.received_at
        )

    def post_manual_entry(self, tenant_id: str, lines: List[LineInput],
                          reference: Optional[str] = None,
                          description: Optional[str] = None,
                          entry_date: Optional[datetime] = None,
                          currency: Optional[Currency] = None) -> PostingResult:
        return self.post_entry(
            tenant_id=tenant_id,
            reference_type=REFERENCE_MANUAL,
            reference_id=reference or f"MANUAL-{uuid.uuid4().hex[:12].upper()}",
            description=description or "Manual Journal Entry",
            lines=lines,
            currency=currency,
            entry_date=entry_date
        )

    def import_bulk_lines(self, tenant_id: str, rows: List[Dict[str, Any]],
                          currency: Optional[Currency] = None) -> BulkImportResult:
        """
        Post spreadsheet rows grouped by reference

        Every account code is resolved before anything is posted; an unknown
        code aborts the whole batch. Groups that do not balance are skipped
        and reported with their imbalance.

        Raises:
            UnknownAccountError: A row names an account code the tenant lacks
        """
        fallback_reference = f"BULK-{uuid.uuid4().hex[:12].upper()}"
        groups: Dict[str, Dict[str, Any]] = {}

        for row in rows:
            code = _row_value(row, "accountcode", "code")
            if code is None:
                raise UnknownAccountError(tenant_id, "<blank>")
            account = self.chart.require_by_code(tenant_id, str(code))

            reference = str(_row_value(row, "reference") or fallback_reference).strip()
            description = _row_value(row, "description")
            group = groups.setdefault(reference, {
                'description': description or "Bulk Upload",
                'date': _row_value(row, "date"),
                'lines': []
            })
            group['lines'].append(LineInput(
                account_id=account.id,
                debit=_row_value(row, "debit") or 0,
                credit=_row_value(row, "credit") or 0,
                description=description or ""
            ))

        result = BulkImportResult()
        for reference, group in groups.items():
            entry_date = None
            if group['date']:
                try:
                    entry_date = parse_datetime(str(group['date']))
                except ValueError:
                    entry_date = None
            try:
                posting = self.post_entry(
                    tenant_id=tenant_id,
                    reference_type=REFERENCE_BULK,
                    reference_id=reference,
                    description=group['description'],
                    lines=group['lines'],
                    currency=currency,
                    entry_date=entry_date
                )
            except ImbalancedEntryError as e:
                result.skipped.append({'reference': reference, 'reason': e.code,
                                       'imbalance': str(e.imbalance)})
                continue
            except ValueError as e:
                result.skipped.append({'reference': reference, 'reason': str(e)})
                continue

            if posting.status == PostingStatus.ALREADY_EXISTS:
                result.duplicates.append(reference)
            else:
                result.posted.append(reference)

        logger.info(f"Bulk upload processed {result.count} journal entries, skipped {len(result.skipped)}",
                    extra={'tenant_id': tenant_id, 'action': 'import_bulk_lines'})
        return result

    def verify_entry(self, entry_id: str) -> bool:
        """Recompute an entry's totals from its stored lines"""
        entry = self.get_entry(entry_id)
        if entry is None:
            return False
        lines = self.get_lines(entry_id)
        if len(lines) != entry.line_count or len(lines) < 2:
            return False
        debit = sum((l.debit_amount.amount for l in lines), Decimal('0'))
        credit = sum((l.credit_amount.amount for l in lines), Decimal('0'))
        return amounts_equal(debit, credit) and amounts_equal(debit, entry.total_debit)
