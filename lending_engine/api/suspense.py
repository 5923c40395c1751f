"""
Suspense endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .dependencies import LendingSystem, get_lending_system, require_tenant, to_http_error
from .schemas import RematchRequest
from ..ingest import SuspenseStatus

router = APIRouter()


@router.get("")
def list_suspense(
    status_filter: Optional[str] = Query("open", alias="status"),
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    """Suspended payments of the caller's tenant (open by default)"""
    try:
        suspense_status = SuspenseStatus(status_filter) if status_filter else None
    except ValueError as e:
        raise to_http_error(e)
    entries = system.suspense.list_entries(tenant_id=tenant_id, status=suspense_status)
    return {"entries": [entry.to_dict() for entry in entries], "count": len(entries)}


@router.get("/unassigned")
def list_unassigned(system: LendingSystem = Depends(get_lending_system)):
    """Open entries no tenant could be resolved for"""
    entries = [
        entry for entry in system.suspense.list_entries(status=SuspenseStatus.OPEN)
        if entry.tenant_id is None
    ]
    return {"entries": [entry.to_dict() for entry in entries], "count": len(entries)}


@router.post("/{suspense_id}/rematch")
def rematch(
    suspense_id: str,
    request: RematchRequest,
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    """Assign a suspended payment to a customer of the caller's tenant and process it"""
    entry = system.suspense.get_entry(suspense_id)
    if entry is None or entry.tenant_id not in (None, tenant_id):
        raise HTTPException(status_code=404, detail="Suspense entry not found")

    customer = system.customers.get_customer(request.customer_id)
    if customer is None or customer.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Customer not found")

    try:
        result = system.processor.rematch_suspense(suspense_id, customer.id)
    except ValueError as e:
        raise to_http_error(e)
    return result.to_dict()
