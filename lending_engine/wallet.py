"""
Customer Wallet Module

Overpayments never disappear: the remainder a payment leaves after every
eligible installment is paid becomes a wallet credit for the customer.
Credits are keyed by their source reference, so replaying a payment cannot
credit the same remainder twice.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency
from .errors import DuplicateRecordError
from .storage import StorageInterface, StorageRecord, parse_datetime


class WalletTransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


@dataclass
class WalletTransaction(StorageRecord):
    tenant_id: str
    customer_id: str
    transaction_type: WalletTransactionType
    amount: Money
    reference_type: str
    reference_id: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WalletTransaction':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            tenant_id=data['tenant_id'],
            customer_id=data['customer_id'],
            transaction_type=WalletTransactionType(data['transaction_type']),
            amount=Money.from_dict(data['amount']),
            reference_type=data['reference_type'],
            reference_id=data['reference_id'],
            description=data.get('description', "")
        )


class CustomerWallet:
    """Ledger of customer credits created from overpayments"""

    TABLE = "wallet_transactions"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def credit(self, tenant_id: str, customer_id: str, amount: Money,
               reference_type: str, reference_id: str,
               description: str = "") -> WalletTransaction:
        """
        Credit a customer's wallet once per source reference

        Returns:
            The new credit, or the existing one on replay
        """
        if not amount.is_positive():
            raise ValueError("Wallet credit must be positive")

        now = datetime.now(timezone.utc)
        transaction = WalletTransaction(
            id=f"{tenant_id}:{reference_type}:{reference_id}",
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            customer_id=customer_id,
            transaction_type=WalletTransactionType.CREDIT,
            amount=amount,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description
        )
        try:
            self.storage.insert(self.TABLE, transaction.id, transaction.to_dict())
        except DuplicateRecordError:
            return WalletTransaction.from_dict(self.storage.load(self.TABLE, transaction.id))
        return transaction

    def list_transactions(self, tenant_id: str, customer_id: str) -> List[WalletTransaction]:
        transactions = [
            WalletTransaction.from_dict(d)
            for d in self.storage.find(self.TABLE, {'tenant_id': tenant_id, 'customer_id': customer_id})
        ]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def balance(self, tenant_id: str, customer_id: str,
                currency: Optional[Currency] = None) -> Money:
        transactions = self.list_transactions(tenant_id, customer_id)
        if currency is None:
            currency = transactions[0].amount.currency if transactions else Currency.KES
        total = Money.zero(currency)
        for transaction in transactions:
            if transaction.amount.currency != currency:
                continue
            if transaction.transaction_type == WalletTransactionType.CREDIT:
                total = total + transaction.amount
            else:
                total = total - transaction.amount
        return total
