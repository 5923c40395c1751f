"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field

from ..ingest import PaymentNotification, PaymentSource
from ..ledger import LineInput
from ..storage import parse_datetime


# M-Pesa C2B schemas
class C2BCallback(BaseModel):
    """Safaricom C2B validation/confirmation body"""
    TransactionType: Optional[str] = None
    TransID: Optional[str] = None
    TransTime: Optional[str] = None
    TransAmount: Union[str, int, float]
    BusinessShortCode: Optional[Union[str, int]] = None
    BillRefNumber: Optional[str] = None
    InvoiceNumber: Optional[str] = None
    OrgAccountBalance: Optional[str] = None
    ThirdPartyTransID: Optional[str] = None
    MSISDN: Optional[Union[str, int]] = None
    FirstName: Optional[str] = None
    MiddleName: Optional[str] = None
    LastName: Optional[str] = None


# Payment schemas
class PaymentNotificationRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = "KES"
    external_transaction_id: Optional[str] = None
    payer_phone: Optional[str] = None
    payer_name: Optional[str] = None
    routing_key: Optional[str] = Field(None, description="Paybill, till or shortcode")
    bill_reference: Optional[str] = None
    received_at: Optional[str] = None  # ISO datetime string
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    def to_notification(self) -> PaymentNotification:
        return PaymentNotification(
            amount=self.amount,
            external_transaction_id=self.external_transaction_id,
            payer_phone=self.payer_phone,
            payer_name=self.payer_name,
            routing_key=self.routing_key,
            bill_reference=self.bill_reference,
            currency=self.currency,
            received_at=parse_datetime(self.received_at) if self.received_at else None,
            source=PaymentSource.MANUAL,
            raw_payload=self.raw_payload
        )


class BankStatementRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(..., description="Statement rows keyed by column name")


# Ledger schemas
class JournalLineModel(BaseModel):
    account_id: str
    debit: str = "0"
    credit: str = "0"
    description: Optional[str] = None

    def to_line_input(self) -> LineInput:
        return LineInput(
            account_id=self.account_id,
            debit=self.debit,
            credit=self.credit,
            description=self.description or ""
        )


class ManualJournalRequest(BaseModel):
    lines: List[JournalLineModel]
    reference: Optional[str] = None
    description: Optional[str] = None
    entry_date: Optional[str] = None  # ISO date string
    currency: Optional[str] = None


class BulkJournalRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(
        ..., description="Rows with reference, date, description, accountcode, debit, credit"
    )
    currency: Optional[str] = None


class CreateAccountRequest(BaseModel):
    code: str
    name: str
    account_type: str = Field(..., description="asset, liability, equity, revenue or expense")


# Tenant schemas
class CreateTenantRequest(BaseModel):
    name: str
    code: str
    settings: Dict[str, Any] = Field(default_factory=dict)


class RegisterGatewayRequest(BaseModel):
    paybill_number: Optional[str] = None
    till_number: Optional[str] = None
    shortcode: Optional[str] = None
    environment: str = "production"
    credential_ref: Optional[str] = None


# Suspense schemas
class RematchRequest(BaseModel):
    customer_id: str


# Job schemas
class DrainRequest(BaseModel):
    max_jobs: Optional[int] = None
