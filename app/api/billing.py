from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.billing import GatewayEnvironment
from app.schemas.billing import (
    ChargeCancelRequest,
    ChargeCoverageRead,
    ChargeIssueRequest,
    ChargeIssueResponse,
    ChargeMutationResponse,
    ChargeUpdateRequest,
    CommissionRead,
    InvoiceRead,
    InvoiceStatusReset,
    InvoiceUpdate,
    LedgerEntryRead,
    LedgerStatementTotals,
)
from app.schemas.common import ListResponse
from app.schemas.integration import GatewayConnectionTestResponse
from app.services import billing as billing_service
from app.services.billing._common import ConsolidatedMember, DirectCharge
from app.services.gateway_client import GatewayClient, error_description

router = APIRouter(prefix="/billing")


# --- Charges ---


@router.post("/charges", response_model=ChargeIssueResponse, tags=["charges"])
def issue_charge(payload: ChargeIssueRequest, db: Session = Depends(get_db)):
    return billing_service.charges.issue_charge(db, payload)


@router.post("/charges/update", response_model=ChargeMutationResponse, tags=["charges"])
def update_charge(payload: ChargeUpdateRequest, db: Session = Depends(get_db)):
    return billing_service.mutations.update_charge(
        db, payload.charge_ref, value=payload.value, due_date=payload.due_date
    )


@router.post("/charges/cancel", response_model=ChargeMutationResponse, tags=["charges"])
def cancel_charge(payload: ChargeCancelRequest, db: Session = Depends(get_db)):
    return billing_service.mutations.cancel_charge(db, payload.charge_ref)


# --- Invoices ---


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead, tags=["invoices"])
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.get(db, invoice_id)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceRead, tags=["invoices"])
def update_invoice(invoice_id: str, payload: InvoiceUpdate, db: Session = Depends(get_db)):
    return billing_service.invoices.update(db, invoice_id, payload)


@router.post(
    "/invoices/{invoice_id}/status-reset", response_model=InvoiceRead, tags=["invoices"]
)
def reset_invoice_status(
    invoice_id: str, payload: InvoiceStatusReset, db: Session = Depends(get_db)
):
    return billing_service.invoices.reset_status(
        db, invoice_id, payload.status, payload.reason
    )


@router.get(
    "/invoices/{invoice_id}/coverage", response_model=ChargeCoverageRead, tags=["invoices"]
)
def get_invoice_coverage(invoice_id: str, db: Session = Depends(get_db)):
    coverage = billing_service.invoices.coverage(db, invoice_id)
    if isinstance(coverage, DirectCharge):
        return ChargeCoverageRead(
            kind=coverage.kind, gateway_payment_id=coverage.gateway_payment_id
        )
    if isinstance(coverage, ConsolidatedMember):
        return ChargeCoverageRead(
            kind=coverage.kind,
            gateway_payment_id=coverage.gateway_payment_id,
            consolidated_invoice_id=coverage.consolidated_id,
        )
    return ChargeCoverageRead(kind=coverage.kind)


# --- Ledger ---


@router.get("/ledger", response_model=ListResponse[LedgerEntryRead], tags=["ledger"])
def list_ledger_entries(
    environment: str | None = None,
    subscriber_id: str | None = None,
    originator_id: str | None = None,
    source: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.ledger_entries.list_response(
        db,
        environment=environment,
        subscriber_id=subscriber_id,
        originator_id=originator_id,
        source=source,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.get("/ledger/totals", response_model=LedgerStatementTotals, tags=["ledger"])
def ledger_totals(
    environment: str | None = None,
    subscriber_id: str | None = None,
    originator_id: str | None = None,
    db: Session = Depends(get_db),
):
    return billing_service.ledger_entries.statement_totals(
        db,
        environment=environment,
        subscriber_id=subscriber_id,
        originator_id=originator_id,
    )


# --- Commissions ---


@router.post(
    "/commissions/{commission_id}/payout", response_model=CommissionRead, tags=["commissions"]
)
def pay_commission(commission_id: str, db: Session = Depends(get_db)):
    return billing_service.payouts.pay(db, commission_id)


# --- Gateway ---


@router.post(
    "/gateway/test", response_model=GatewayConnectionTestResponse, tags=["gateway"]
)
def test_gateway_connection(
    environment: GatewayEnvironment | None = None, db: Session = Depends(get_db)
):
    client = GatewayClient(db)
    env = environment or client.active_environment()
    response = client.test_connection(env)
    if response.ok:
        return GatewayConnectionTestResponse(
            success=True, environment=env, message="Connection OK"
        )
    return GatewayConnectionTestResponse(
        success=False,
        environment=env,
        message=error_description(response) or f"HTTP {response.status}",
    )
