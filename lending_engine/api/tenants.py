"""
Tenant and gateway configuration endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import LendingSystem, get_lending_system, to_http_error
from .schemas import CreateTenantRequest, RegisterGatewayRequest

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_tenant(
    request: CreateTenantRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a tenant with the default repayment accounts"""
    try:
        tenant = system.tenant_manager.create_tenant(request.name, request.code, request.settings)
    except ValueError as e:
        raise to_http_error(e)
    system.chart.seed_default_accounts(tenant.id)
    return tenant.to_dict()


@router.get("")
def list_tenants(system: LendingSystem = Depends(get_lending_system)):
    tenants = system.tenant_manager.list_tenants()
    return {"tenants": [tenant.to_dict() for tenant in tenants]}


@router.post("/{tenant_id}/gateways", status_code=status.HTTP_201_CREATED)
def register_gateway(
    tenant_id: str,
    request: RegisterGatewayRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    if system.tenant_manager.get_tenant(tenant_id) is None:
        raise HTTPException(status_code=404, detail="Tenant not found")
    try:
        gateway = system.tenant_manager.register_gateway(
            tenant_id,
            paybill_number=request.paybill_number,
            till_number=request.till_number,
            shortcode=request.shortcode,
            environment=request.environment,
            credential_ref=request.credential_ref
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return gateway.to_dict()
