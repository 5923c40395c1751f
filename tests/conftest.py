"""
Shared fixtures: an in-memory lending system with one configured tenant,
a customer and a disbursed loan of three installments (100, 50, 200).
"""

import pytest
from datetime import date
from decimal import Decimal

from lending_engine.api.dependencies import LendingSystem
from lending_engine.config import EngineConfig
from lending_engine.currency import Money, Currency


PAYBILL = "600100"
CUSTOMER_PHONE = "0711000001"


@pytest.fixture
def system():
    """Fully wired engine on in-memory storage, workers off"""
    lending = LendingSystem(EngineConfig(storage_backend="memory", worker_enabled=False,
                                         job_retry_backoff_seconds=30))
    yield lending
    lending.close()


@pytest.fixture
def tenant(system):
    tenant = system.tenant_manager.create_tenant("Acme Credit", "ACME")
    system.tenant_manager.register_gateway(tenant.id, paybill_number=PAYBILL)
    system.chart.seed_default_accounts(tenant.id)
    return tenant


@pytest.fixture
def customer(system, tenant):
    return system.customers.register_customer(tenant.id, "Jane", "Wanjiru", [CUSTOMER_PHONE])


@pytest.fixture
def loan(system, tenant, customer):
    schedule = [
        (date(2026, 1, 7), Money(Decimal('100'), Currency.KES)),
        (date(2026, 1, 14), Money(Decimal('50'), Currency.KES)),
        (date(2026, 1, 21), Money(Decimal('200'), Currency.KES)),
    ]
    return system.loan_book.book_loan(
        tenant.id, customer.id, Money(Decimal('350'), Currency.KES), schedule
    )
