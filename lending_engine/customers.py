"""
Customer Directory Module

Tenant-scoped borrower records with a phone index. Every variant of each
registered phone number is indexed, so a payment from ``254711000000``
finds a customer registered as ``0711 000 000``.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
import uuid

from .normalize import phone_variants, canonical_phone
from .storage import StorageInterface, StorageRecord, parse_datetime


@dataclass
class Customer(StorageRecord):
    """Borrower belonging to exactly one tenant"""
    tenant_id: str
    first_name: str
    last_name: str
    phones: List[str] = field(default_factory=list)
    is_active: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


class CustomerDirectory:
    """
    Customer lookup used by tenant resolution and payment matching
    """

    CUSTOMER_TABLE = "customers"
    PHONE_TABLE = "customer_phones"

    def __init__(self, storage: StorageInterface, country_code: str = "254"):
        self.storage = storage
        self.country_code = country_code

    def register_customer(self, tenant_id: str, first_name: str, last_name: str,
                          phones: List[str], customer_id: Optional[str] = None) -> Customer:
        """
        Register a customer and index its phone numbers

        Args:
            tenant_id: Owning tenant
            first_name: Customer's first name
            last_name: Customer's last name
            phones: One or more phone numbers in any common format
            customer_id: Optional explicit id

        Returns:
            Created Customer
        """
        if not phones:
            raise ValueError("Customer needs at least one phone number")

        now = datetime.now(timezone.utc)
        customer = Customer(
            id=customer_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            first_name=first_name,
            last_name=last_name,
            phones=[canonical_phone(p, self.country_code) or str(p).strip() for p in phones]
        )

        with self.storage.atomic():
            self.storage.insert(self.CUSTOMER_TABLE, customer.id, customer.to_dict())
            for phone in customer.phones:
                self._index_phone(customer, phone)

        return customer

    def add_phone(self, customer_id: str, phone: str) -> Customer:
        customer = self.get_customer(customer_id)
        if not customer:
            raise ValueError(f"Customer {customer_id} not found")

        normalized = canonical_phone(phone, self.country_code) or str(phone).strip()
        if normalized in customer.phones:
            return customer

        customer.phones.append(normalized)
        customer.updated_at = datetime.now(timezone.utc)
        with self.storage.atomic():
            self.storage.save(self.CUSTOMER_TABLE, customer.id, customer.to_dict())
            self._index_phone(customer, normalized)
        return customer

    def _index_phone(self, customer: Customer, phone: str) -> None:
        for variant in phone_variants(phone, self.country_code):
            self.storage.save(self.PHONE_TABLE, f"{customer.id}:{variant}", {
                'phone': variant,
                'customer_id': customer.id,
                'tenant_id': customer.tenant_id
            })

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.CUSTOMER_TABLE, customer_id)
        return Customer.from_dict(data) if data else None

    def find_by_phone(self, phone: Optional[str],
                      tenant_id: Optional[str] = None) -> List[Customer]:
        """
        Active customers owning any variant of ``phone``

        Args:
            phone: Phone number in any common format
            tenant_id: Restrict to one tenant; all tenants when omitted

        Returns:
            Distinct matching customers, oldest first
        """
        customer_ids = []
        for variant in phone_variants(phone, self.country_code):
            filters = {'phone': variant}
            if tenant_id is not None:
                filters['tenant_id'] = tenant_id
            for row in self.storage.find(self.PHONE_TABLE, filters):
                if row['customer_id'] not in customer_ids:
                    customer_ids.append(row['customer_id'])

        customers = []
        for customer_id in customer_ids:
            customer = self.get_customer(customer_id)
            if customer and customer.is_active:
                customers.append(customer)
        customers.sort(key=lambda c: c.created_at)
        return customers

    def list_customers(self, tenant_id: str) -> List[Customer]:
        customers = [Customer.from_dict(d) for d in
                     self.storage.find(self.CUSTOMER_TABLE, {'tenant_id': tenant_id})]
        customers.sort(key=lambda c: c.created_at)
        return customers
