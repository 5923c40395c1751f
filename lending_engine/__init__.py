"""
Lending Engine

Payment reconciliation and allocation engine for a multi-tenant micro-lending
back office: idempotent payment ingest, tenant/customer resolution, waterfall
allocation across loan installments, immutable reconciliation records and
balanced double-entry ledger posting. All money uses Decimal.
"""

__version__ = "1.0.0"
