"""Issue individual and consolidated gateway charges.

Both paths follow the same shape: validate and lock locally, flush the
local rows, call the gateway, then attach the gateway id and commit. Any
failure after the flush rolls the whole transaction back, so a failed
issuance never leaves a charge linkage behind.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import (
    ConsolidatedInvoice,
    ConsolidatedInvoiceItem,
    ConsolidatedInvoiceStatus,
    GatewayEnvironment,
    Invoice,
    InvoiceStatus,
)
from app.models.subscriber import ConsumerUnit, Subscriber
from app.schemas.billing import ChargeIssueRequest, ChargeIssueResponse, ChargeMode
from app.services import customer_sync
from app.services.billing import history
from app.services.billing._common import (
    Uncharged,
    active_membership,
    compute_consolidated_due_date,
    consolidated_external_reference,
    coverage_of,
    invoice_external_reference,
)
from app.services.common import coerce_uuid, get_by_id, money_to_json, round_money
from app.services.exceptions import ChargeConflictError, GatewayError, ValidationError
from app.services.gateway_client import GatewayClient

logger = logging.getLogger(__name__)


def _boleto_url(charge: dict) -> str | None:
    return charge.get("bankSlipUrl") or charge.get("invoiceUrl")


def _adopt_or_create_charge(
    client: GatewayClient,
    environment: GatewayEnvironment,
    payload: dict,
    expected_value: Decimal,
) -> dict:
    """Reuse a live charge carrying the same external reference, else create one.

    A previous attempt that timed out may have created the charge upstream.
    """
    reference = payload["externalReference"]
    for charge in client.find_charges(external_reference=reference, environment=environment):
        if charge.get("deleted"):
            continue
        if round_money(charge.get("value") or 0) != round_money(expected_value):
            raise ChargeConflictError(
                f"Gateway charge {charge.get('id')} already uses reference {reference} "
                f"with a different value",
                details={"gateway_charge_id": charge.get("id"), "value": charge.get("value")},
            )
        logger.info("Adopting existing gateway charge %s for %s", charge.get("id"), reference)
        return charge
    charge = client.create_charge(payload, environment=environment)
    if not charge.get("id"):
        raise GatewayError("Gateway charge create returned no id")
    return charge


class ChargeIssuer:
    @staticmethod
    def issue_individual(
        db: Session, invoice_id, *, client: GatewayClient | None = None
    ) -> ChargeIssueResponse:
        invoice = get_by_id(db, Invoice, invoice_id, with_for_update=True)
        if not invoice:
            raise HTTPException(status_code=404, detail="Invoice not found")
        if invoice.status != InvoiceStatus.pending:
            raise ChargeConflictError(
                f"Invoice is {invoice.status.value}; only a_vencer invoices can be charged"
            )
        if not isinstance(coverage_of(db, invoice), Uncharged):
            raise ChargeConflictError("Invoice is already covered by a gateway charge")
        amount = round_money(invoice.amount_due or 0)
        if amount <= 0:
            raise ValidationError("Invoice amount must be greater than zero")
        if not invoice.due_date:
            raise ValidationError("Invoice has no due date")
        unit = invoice.consumer_unit
        subscriber = unit.subscriber if unit else None
        if not subscriber:
            raise ValidationError("Consumer unit is not linked to a subscriber")

        client = client or GatewayClient(db)
        try:
            environment = client.active_environment()
            customer_id = customer_sync.resolve_customer(
                db, subscriber, client=client, fallback_to_known_id=True
            )
            description = "Fatura de energia"
            if invoice.reference_month:
                description = f"Fatura de energia {invoice.reference_month:%m/%Y}"
            payload = {
                "customer": customer_id,
                "billingType": settings.gateway_billing_type,
                "value": money_to_json(amount),
                "dueDate": invoice.due_date.isoformat(),
                "description": description,
                "externalReference": invoice_external_reference(invoice.id),
            }
            charge = _adopt_or_create_charge(client, environment, payload, amount)

            invoice.gateway_payment_id = charge["id"]
            invoice.gateway_boleto_url = _boleto_url(charge)
            invoice.gateway_status = charge.get("status")
            invoice.gateway_environment = environment
            history.record(
                db,
                "invoice",
                invoice.id,
                "charge_issued",
                {"gateway_payment_id": charge["id"], "value": str(amount)},
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(invoice)
        logger.info("Issued gateway charge %s for invoice %s", invoice.gateway_payment_id, invoice.id)
        return ChargeIssueResponse(
            gateway_charge_id=invoice.gateway_payment_id,
            boleto_url=invoice.gateway_boleto_url,
            total_value=amount,
        )

    @staticmethod
    def eligible_invoices(db: Session, subscriber_id) -> list[Invoice]:
        """Invoices a consolidated charge may claim for this subscriber."""
        candidates = (
            db.query(Invoice)
            .join(ConsumerUnit, Invoice.consumer_unit_id == ConsumerUnit.id)
            .filter(ConsumerUnit.subscriber_id == subscriber_id)
            .filter(Invoice.status.notin_([InvoiceStatus.canceled, InvoiceStatus.paid]))
            .filter(Invoice.gateway_payment_id.is_(None))
            .order_by(Invoice.due_date.asc(), Invoice.created_at.asc())
            .all()
        )
        return [inv for inv in candidates if active_membership(db, inv.id) is None]

    @staticmethod
    def issue_consolidated(
        db: Session,
        subscriber_id,
        invoice_ids=None,
        due_date: date | None = None,
        *,
        client: GatewayClient | None = None,
        today: date | None = None,
    ) -> ChargeIssueResponse:
        subscriber = get_by_id(db, Subscriber, subscriber_id, with_for_update=True)
        if not subscriber:
            raise HTTPException(status_code=404, detail="Subscriber not found")

        eligible = {inv.id: inv for inv in ChargeIssuer.eligible_invoices(db, subscriber.id)}
        if invoice_ids:
            requested = list(dict.fromkeys(coerce_uuid(inv_id) for inv_id in invoice_ids))
            offenders = [str(inv_id) for inv_id in requested if inv_id not in eligible]
            if offenders:
                raise ValidationError(
                    "Invoices are not eligible for consolidation: " + ", ".join(offenders),
                    details={"invoice_ids": offenders},
                )
            selected = [eligible[inv_id] for inv_id in requested]
        else:
            selected = list(eligible.values())
        if not selected:
            raise ValidationError("Subscriber has no invoices eligible for consolidation")

        total = sum((round_money(inv.amount_due or 0) for inv in selected), Decimal("0.00"))
        if total <= 0:
            raise ValidationError("Consolidated total must be greater than zero")

        if due_date is None and subscriber.consolidated_due_day:
            due_date = compute_consolidated_due_date(
                subscriber.consolidated_due_day,
                today or date.today(),
                settings.consolidated_min_lead_days,
            )
        if due_date is None:
            member_dates = [inv.due_date for inv in selected if inv.due_date]
            if not member_dates:
                raise ValidationError("No due date: set one or configure the subscriber's due day")
            due_date = min(member_dates)

        reference = consolidated_external_reference(inv.id for inv in selected)
        client = client or GatewayClient(db)
        try:
            consolidated = ConsolidatedInvoice(
                subscriber_id=subscriber.id,
                total_value=total,
                due_date=due_date,
                status=ConsolidatedInvoiceStatus.pending,
                external_reference=reference,
            )
            db.add(consolidated)
            for inv in selected:
                db.add(
                    ConsolidatedInvoiceItem(
                        consolidated_invoice=consolidated,
                        invoice_id=inv.id,
                        amount=round_money(inv.amount_due or 0),
                    )
                )
            try:
                db.flush()
            except IntegrityError as exc:
                raise ChargeConflictError(
                    "An invoice was claimed by another consolidated charge"
                ) from exc

            environment = client.active_environment()
            customer_id = customer_sync.resolve_customer(
                db, subscriber, client=client, fallback_to_known_id=True
            )
            payload = {
                "customer": customer_id,
                "billingType": settings.gateway_billing_type,
                "value": money_to_json(total),
                "dueDate": due_date.isoformat(),
                "description": f"Fatura consolidada ({len(selected)} unidades)",
                "externalReference": reference,
            }
            charge = _adopt_or_create_charge(client, environment, payload, total)

            consolidated.gateway_payment_id = charge["id"]
            consolidated.gateway_boleto_url = _boleto_url(charge)
            consolidated.gateway_status = charge.get("status")
            consolidated.gateway_environment = environment
            history.record(
                db,
                "consolidated_invoice",
                consolidated.id,
                "charge_issued",
                {
                    "gateway_payment_id": charge["id"],
                    "total_value": str(total),
                    "invoice_ids": [str(inv.id) for inv in selected],
                },
            )
            try:
                db.commit()
            except IntegrityError as exc:
                raise ChargeConflictError(
                    "Gateway charge is already linked to another consolidated invoice"
                ) from exc
        except Exception:
            db.rollback()
            raise
        db.refresh(consolidated)
        logger.info(
            "Issued consolidated charge %s for subscriber %s (%s invoices, total %s)",
            consolidated.gateway_payment_id,
            subscriber_id,
            len(selected),
            total,
        )
        return ChargeIssueResponse(
            gateway_charge_id=consolidated.gateway_payment_id,
            boleto_url=consolidated.gateway_boleto_url,
            consolidated_invoice_id=consolidated.id,
            total_value=consolidated.total_value,
        )

    @staticmethod
    def issue_charge(
        db: Session, payload: ChargeIssueRequest, *, client: GatewayClient | None = None
    ) -> ChargeIssueResponse:
        if payload.mode == ChargeMode.individual:
            return ChargeIssuer.issue_individual(db, payload.invoice_ids[0], client=client)
        return ChargeIssuer.issue_consolidated(
            db,
            payload.subscriber_id,
            payload.invoice_ids,
            payload.due_date,
            client=client,
        )
