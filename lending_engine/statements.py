"""
Bank Statement Import

Reconciles a bank statement export (one row per incoming transfer) against
the loan book. Rows are normalized from the spreadsheet's column names,
validated, ingested for the importing tenant and processed synchronously.
Rows that fail validation never reach ingest and are reported as rejected.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .currency import decimal_from_string
from .errors import EngineError
from .ingest import PaymentNotification, PaymentSource, TransactionIngest
from .logging_config import log_action
from .normalize import DEFAULT_COUNTRY_CODE, is_valid_mobile, local_phone
from .processor import PaymentProcessor, ProcessOutcome
from .reconciliation import BatchRowResult, ReconciliationBatchResult
from .storage import parse_datetime

logger = logging.getLogger("lending_engine.statements")

# Accepted column names per field, compared case-insensitively
COLUMN_ALIASES = {
    'payer_name': ("name", "customer_name", "customer"),
    'payer_phone': ("mobile", "phone", "phone_number"),
    'amount': ("amount", "transaction_amount"),
    'external_reference': ("mpesa_ref", "transaction_ref", "reference"),
    'bank_reference': ("bank_ref", "bank_transaction_id"),
    'date': ("date", "transaction_date"),
}

_PLACEHOLDERS = {"", "N/A", "NULL", "NONE"}


def _normalize_key(key: Any) -> str:
    return str(key).strip().lower().replace(" ", "_")


def _pick(row: Dict[str, Any], names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = row.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text.upper() not in _PLACEHOLDERS:
            return text
    return None


@dataclass
class BankStatementRow:
    """One normalized statement line"""
    row_number: int
    payer_name: Optional[str]
    payer_phone: Optional[str]
    amount: Optional[Decimal]
    external_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    date: Optional[datetime] = None
    raw: Optional[Dict[str, Any]] = None

    @property
    def reference(self) -> str:
        return self.external_reference or self.bank_reference or f"row-{self.row_number}"

    @classmethod
    def from_raw(cls, row: Dict[str, Any], row_number: int,
                 country_code: str = DEFAULT_COUNTRY_CODE) -> 'BankStatementRow':
        lowered = {_normalize_key(k): v for k, v in row.items()}
        values = {field: _pick(lowered, names) for field, names in COLUMN_ALIASES.items()}

        amount = None
        if values['amount'] is not None:
            try:
                amount = decimal_from_string(values['amount'])
            except ValueError:
                amount = None

        date = None
        if values['date']:
            try:
                date = parse_datetime(values['date'])
            except ValueError:
                date = None

        phone = values['payer_phone']
        return cls(
            row_number=row_number,
            payer_name=values['payer_name'],
            payer_phone=local_phone(phone, country_code) or phone,
            amount=amount,
            external_reference=values['external_reference'],
            bank_reference=values['bank_reference'],
            date=date,
            raw=dict(row)
        )

    def rejection_reason(self, country_code: str = DEFAULT_COUNTRY_CODE) -> Optional[str]:
        """Why the row cannot be imported, or None when it is valid"""
        if not is_valid_mobile(self.payer_phone, country_code):
            return f"Invalid mobile number: {self.payer_phone or '<blank>'}"
        if self.amount is None or self.amount <= 0:
            return "Amount must be a positive number"
        if not self.payer_name or self.payer_name.lower() == "unknown":
            return "Payer name is missing"
        return None

    def to_notification(self, currency: str = "KES") -> PaymentNotification:
        return PaymentNotification(
            amount=self.amount,
            external_transaction_id=self.external_reference,
            payer_phone=self.payer_phone,
            payer_name=self.payer_name,
            bank_reference=self.bank_reference,
            currency=currency,
            received_at=self.date,
            source=PaymentSource.BANK_STATEMENT,
            raw_payload={k: str(v) for k, v in (self.raw or {}).items()}
        )


class BankStatementImporter:
    """
    Validates, ingests and processes statement rows for one tenant
    """

    def __init__(self, ingest: TransactionIngest, processor: PaymentProcessor,
                 country_code: str = DEFAULT_COUNTRY_CODE, currency: str = "KES"):
        self.ingest = ingest
        self.processor = processor
        self.country_code = country_code
        self.currency = currency

    def import_rows(self, tenant_id: str, rows: List[Dict[str, Any]]) -> ReconciliationBatchResult:
        """
        Reconcile a whole statement

        Args:
            tenant_id: The importing operator's tenant
            rows: Raw spreadsheet rows keyed by column name

        Returns:
            ReconciliationBatchResult with one detail per row
        """
        result = ReconciliationBatchResult()
        for number, raw in enumerate(rows, start=1):
            row = BankStatementRow.from_raw(raw, number, self.country_code)
            result.add(self._import_row(tenant_id, row))

        log_action(logger, "info",
                   f"Statement import: {result.successful} successful, {result.failed} failed, "
                   f"{result.rejected} rejected",
                   action="import_bank_statement", tenant_id=tenant_id)
        return result

    def _import_row(self, tenant_id: str, row: BankStatementRow) -> BatchRowResult:
        reason = row.rejection_reason(self.country_code)
        if reason:
            return BatchRowResult(reference=row.reference, status="rejected", message=reason)

        ingested = self.ingest.ingest_statement_row(
            tenant_id, row.to_notification(self.currency), enqueue=False
        )
        event = ingested.event
        if ingested.duplicate:
            return BatchRowResult(reference=row.reference, status="duplicate",
                                  message="Transaction already received", event_id=event.id)

        try:
            outcome = self.processor.process_event(event.id)
        except EngineError as e:
            if e.retryable:
                # Left pending; hand it to the workers
                self.ingest.enqueue_event(event)
            return BatchRowResult(reference=row.reference, status="failed",
                                  message=str(e), event_id=event.id)
        except Exception as e:
            log_action(logger, "error", f"Unexpected error reconciling {row.reference}: {e}",
                       action="import_bank_statement", tenant_id=tenant_id,
                       transaction_id=event.external_transaction_id)
            self.ingest.enqueue_event(event)
            return BatchRowResult(reference=row.reference, status="failed",
                                  message=str(e), event_id=event.id)

        if outcome.outcome == ProcessOutcome.APPLIED:
            return BatchRowResult(
                reference=row.reference, status="success",
                message=f"Reconciled {self.currency} {outcome.applied_amount} for {row.payer_name}",
                event_id=event.id, applied_amount=outcome.applied_amount
            )
        if outcome.outcome == ProcessOutcome.SUSPENSE:
            return BatchRowResult(reference=row.reference, status="suspense",
                                  message=outcome.reason or "Moved to suspense", event_id=event.id)
        return BatchRowResult(reference=row.reference, status="failed",
                              message=outcome.reason or "Payment could not be applied",
                              event_id=event.id)
