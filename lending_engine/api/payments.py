"""
Payment ingress endpoints: M-Pesa C2B webhooks, generic notifications and
bank statement imports
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .dependencies import LendingSystem, get_lending_system, require_tenant, to_http_error
from .schemas import BankStatementRequest, C2BCallback, PaymentNotificationRequest
from ..ingest import IngestResult, PaymentNotification, PaymentStatus
from ..logging_config import log_action

logger = logging.getLogger("lending_engine.api.payments")

router = APIRouter()


def _ingest_response(result: IngestResult) -> dict:
    return {
        "event_id": result.event.id,
        "status": result.event.status.value,
        "tenant_id": result.event.tenant_id,
        "duplicate": result.duplicate,
        "job_id": result.job.id if result.job else None,
        "suspense_id": result.suspense.id if result.suspense else None,
    }


@router.post("/c2b/validation")
def c2b_validation(callback: C2BCallback):
    """Safaricom validation callback; accept any positive amount"""
    try:
        PaymentNotification.from_mpesa_c2b(callback.model_dump()).validate()
    except ValueError as e:
        log_action(logger, "warning", f"C2B validation rejected: {e}", action="c2b_validation",
                   transaction_id=callback.TransID)
        return {"ResultCode": "C2B00013", "ResultDesc": "Rejected"}
    return {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post("/c2b/confirmation")
def c2b_confirmation(
    callback: C2BCallback,
    system: LendingSystem = Depends(get_lending_system)
):
    """
    Safaricom confirmation callback

    The payment is stored before the acknowledgement; redeliveries are no-ops.
    """
    payload = callback.model_dump(exclude_none=True)
    try:
        notification = PaymentNotification.from_mpesa_c2b(payload, system.config.default_currency)
        result = system.ingest.ingest_notification(notification)
    except ValueError as e:
        log_action(logger, "error", f"C2B confirmation not recorded: {e}",
                   action="c2b_confirmation", transaction_id=callback.TransID)
        return {"ResultCode": 0, "ResultDesc": "Received"}

    log_action(logger, "info", "C2B confirmation received", action="c2b_confirmation",
               tenant_id=result.event.tenant_id, transaction_id=result.event.external_transaction_id,
               extra={"duplicate": result.duplicate})
    return {"ResultCode": 0, "ResultDesc": "Received"}


@router.post("/notifications", status_code=status.HTTP_202_ACCEPTED)
def receive_notification(
    request: PaymentNotificationRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Generic payment notification from any channel"""
    try:
        result = system.ingest.ingest_notification(request.to_notification())
    except ValueError as e:
        raise to_http_error(e)
    return _ingest_response(result)


@router.post("/bank-statements")
def import_bank_statement(
    request: BankStatementRequest,
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    """Reconcile a bank statement for the caller's tenant"""
    try:
        result = system.statements.import_rows(tenant_id, request.rows)
    except ValueError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.get("")
def list_payments(
    status_filter: Optional[str] = Query(None, alias="status"),
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        payment_status = PaymentStatus(status_filter) if status_filter else None
    except ValueError as e:
        raise to_http_error(e)
    events = system.events.list_events(tenant_id=tenant_id, status=payment_status)
    return {"payments": [event.to_dict() for event in events], "count": len(events)}


@router.get("/{event_id}")
def get_payment(
    event_id: str,
    tenant_id: str = Depends(require_tenant),
    system: LendingSystem = Depends(get_lending_system)
):
    event = system.events.get(event_id)
    if event is None or event.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Payment not found")
    records = system.recorder.get_by_payment(event_id)
    return {
        "payment": event.to_dict(),
        "reconciliation": [record.to_dict() for record in records],
        "applied_total": str(system.recorder.applied_total(event_id)),
    }
