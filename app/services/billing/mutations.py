"""Update or cancel an existing gateway charge and mirror the result locally."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.billing import (
    ConsolidatedInvoice,
    ConsolidatedInvoiceStatus,
    Invoice,
    InvoiceStatus,
)
from app.schemas.billing import ChargeMutationResponse
from app.services.billing import history
from app.services.billing._common import active_membership, resolve_charge_ref
from app.services.common import money_to_json, round_money
from app.services.exceptions import ChargeConflictError, GatewayError, ValidationError
from app.services.gateway_client import (
    GatewayClient,
    error_code,
    error_description,
)

logger = logging.getLogger(__name__)

_CLOSED_INVOICE = {InvoiceStatus.canceled, InvoiceStatus.paid}
_CLOSED_CONSOLIDATED = {ConsolidatedInvoiceStatus.canceled, ConsolidatedInvoiceStatus.paid}


def _entity_type(target) -> str:
    if isinstance(target, ConsolidatedInvoice):
        return "consolidated_invoice"
    return "invoice"


def _is_closed(target) -> bool:
    if isinstance(target, ConsolidatedInvoice):
        return target.status in _CLOSED_CONSOLIDATED
    return target.status in _CLOSED_INVOICE


def _is_canceled(target) -> bool:
    if isinstance(target, ConsolidatedInvoice):
        return target.status == ConsolidatedInvoiceStatus.canceled
    return target.status == InvoiceStatus.canceled


def _is_paid(target) -> bool:
    if isinstance(target, ConsolidatedInvoice):
        return target.status == ConsolidatedInvoiceStatus.paid
    return target.status == InvoiceStatus.paid


class ChargeMutator:
    @staticmethod
    def update_charge(
        db: Session,
        charge_ref,
        value: Decimal | None = None,
        due_date: date | None = None,
        *,
        client: GatewayClient | None = None,
    ) -> ChargeMutationResponse:
        if value is None and due_date is None:
            raise ValidationError("Provide a value or a due date to update")
        if value is not None and round_money(value) <= 0:
            raise ValidationError("Charge value must be greater than zero")
        target = resolve_charge_ref(db, charge_ref)
        if not target.gateway_payment_id:
            # Local-only record: nothing upstream to change.
            return ChargeMutationResponse(success=True, gateway_called=False)
        if _is_closed(target):
            raise ChargeConflictError(
                f"Charge is {target.status.value} and can no longer be changed"
            )

        payload: dict = {}
        if value is not None:
            payload["value"] = money_to_json(value)
        if due_date is not None:
            payload["dueDate"] = due_date.isoformat()
        client = client or GatewayClient(db)
        client.update_charge(
            target.gateway_payment_id, payload, environment=target.gateway_environment
        )

        changes: dict = {}
        if value is not None:
            if isinstance(target, ConsolidatedInvoice):
                target.total_value = round_money(value)
            else:
                target.amount_due = round_money(value)
            changes["value"] = str(round_money(value))
        if due_date is not None:
            target.due_date = due_date
            changes["due_date"] = due_date.isoformat()
        history.record(db, _entity_type(target), target.id, "charge_updated", changes)
        db.commit()
        logger.info("Updated gateway charge %s: %s", target.gateway_payment_id, changes)
        return ChargeMutationResponse(success=True, gateway_called=True)

    @staticmethod
    def cancel_charge(
        db: Session, charge_ref, *, client: GatewayClient | None = None
    ) -> ChargeMutationResponse:
        target = resolve_charge_ref(db, charge_ref)
        if _is_canceled(target):
            return ChargeMutationResponse(success=True, gateway_called=False)
        if _is_paid(target):
            raise ChargeConflictError("Paid charges cannot be canceled")
        if isinstance(target, Invoice) and not target.gateway_payment_id:
            membership = active_membership(db, target.id)
            if membership:
                raise ChargeConflictError(
                    "Invoice is collected by a consolidated charge; cancel that charge first",
                    details={"consolidated_invoice_id": str(membership.consolidated_invoice_id)},
                )

        gateway_called = False
        if target.gateway_payment_id:
            client = client or GatewayClient(db)
            response = client.delete_charge(
                target.gateway_payment_id, environment=target.gateway_environment
            )
            gateway_called = True
            already_gone = response.status == 404 or error_code(response) == "not_found"
            if not response.ok and not already_gone:
                description = error_description(response)
                raise GatewayError(
                    f"Gateway charge cancel failed: {description or f'HTTP {response.status}'}",
                    upstream_status=response.status,
                    upstream_code=error_code(response),
                    description=description,
                )
            if already_gone:
                logger.info(
                    "Gateway charge %s was already gone; canceling locally",
                    target.gateway_payment_id,
                )
            target.gateway_status = "CANCELLED"

        if isinstance(target, ConsolidatedInvoice):
            target.status = ConsolidatedInvoiceStatus.canceled
            for item in target.items:
                item.is_active = False
        else:
            target.status = InvoiceStatus.canceled
        history.record(
            db,
            _entity_type(target),
            target.id,
            "charge_canceled",
            {"gateway_payment_id": target.gateway_payment_id},
        )
        db.commit()
        logger.info("Canceled %s %s", _entity_type(target), target.id)
        return ChargeMutationResponse(success=True, gateway_called=gateway_called)
