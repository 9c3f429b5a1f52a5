"""Originator commissions and the ledger entries that record them.

Everything here runs from the side-effect queue, never inline with the
subscriber save or webhook that triggered it. Each poster is idempotent so
a retried task cannot double-post.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import (
    Commission,
    CommissionKind,
    CommissionStatus,
    ConsolidatedInvoice,
    GatewayEnvironment,
    Invoice,
    LedgerReferenceType,
    LedgerSource,
)
from app.models.side_effect import SideEffectKind
from app.models.subscriber import Subscriber
from app.services import side_effects
from app.services.billing.ledger import LedgerEntries
from app.services.common import coerce_uuid, get_by_id, round_money
from app.services.integration_config import IntegrationConfigs
from app.services.notifications import format_brl

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CommissionBreakdown:
    gross: Decimal
    savings: Decimal
    base: Decimal
    amount: Decimal


def _decimal(value) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def normalize_discount_pct(value) -> Decimal:
    """Accept 0-1 fractions or 0-100 percentages; return a percentage."""
    discount = _decimal(value)
    if discount is None:
        return Decimal(settings.default_discount_pct)
    if Decimal("0") < discount < Decimal("1"):
        return discount * HUNDRED
    return discount


def compute_commission(consumption_kwh, tariff, discount_pct, split_pct) -> CommissionBreakdown:
    kwh = _decimal(consumption_kwh) or Decimal("0")
    rate = _decimal(tariff)
    if not rate or rate <= 0:
        rate = Decimal(settings.default_tariff_kwh)
    discount = normalize_discount_pct(discount_pct)
    split = _decimal(split_pct) or Decimal("0")

    gross = kwh * rate
    savings = gross * (discount / HUNDRED)
    base = gross - savings
    amount = base * (split / HUNDRED)
    return CommissionBreakdown(
        gross=round_money(gross),
        savings=round_money(savings),
        base=round_money(base),
        amount=round_money(amount),
    )


def _is_sandbox(db: Session, environment: GatewayEnvironment | None = None) -> bool:
    if environment is not None:
        return environment == GatewayEnvironment.sandbox
    config = IntegrationConfigs.get(db, settings.gateway_service_name)
    return bool(config and config.environment == GatewayEnvironment.sandbox)


def post_activation_commission(db: Session, subscriber_id) -> Commission | None:
    """Start commission for the subscriber's originator, once per subscriber."""
    subscriber = get_by_id(db, Subscriber, subscriber_id)
    if not subscriber:
        raise HTTPException(status_code=404, detail="Subscriber not found")
    originator = subscriber.originator
    if not originator:
        logger.info("Subscriber %s has no originator; no start commission", subscriber.id)
        return None
    existing = (
        db.query(Commission)
        .filter(Commission.subscriber_id == subscriber.id)
        .filter(Commission.kind == CommissionKind.start)
        .first()
    )
    if existing:
        return existing

    breakdown = compute_commission(
        subscriber.consumption_kwh,
        subscriber.tariff,
        subscriber.discount_pct,
        originator.split_start_pct,
    )
    commission = Commission(
        originator_id=originator.id,
        subscriber_id=subscriber.id,
        kind=CommissionKind.start,
        base_value=breakdown.base,
        split_pct=round_money(originator.split_start_pct or 0),
        amount=breakdown.amount,
        status=CommissionStatus.pending,
    )
    db.add(commission)
    db.flush()
    LedgerEntries.post(
        db,
        source=LedgerSource.commission,
        reference_type=LedgerReferenceType.commission,
        reference_id=commission.id,
        amount=breakdown.amount,
        idempotency_key=f"commission:start:{subscriber.id}",
        subscriber_id=subscriber.id,
        originator_id=originator.id,
        description=f"Comissão de início - {subscriber.name}",
        is_sandbox=_is_sandbox(db),
    )
    if originator.phone:
        side_effects.enqueue(
            db,
            SideEffectKind.notification,
            {
                "template": "originator_activation",
                "phone": originator.phone,
                "message": (
                    f"{subscriber.name}, aceitou o convite e está proximo de concluir o "
                    f"cadastro, em breve vc receberá o seu cashback {format_brl(breakdown.amount)}"
                ),
            },
        )
    logger.info(
        "Start commission %s for originator %s: %s", commission.id, originator.id, breakdown.amount
    )
    return commission


def post_recurring_commission(db: Session, invoice_id) -> Commission | None:
    """Recurring commission on a paid invoice, once per invoice."""
    invoice = get_by_id(db, Invoice, invoice_id)
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    unit = invoice.consumer_unit
    subscriber = unit.subscriber if unit else None
    originator = subscriber.originator if subscriber else None
    if not originator or not originator.split_recurring_pct:
        return None
    existing = (
        db.query(Commission)
        .filter(Commission.invoice_id == invoice.id)
        .filter(Commission.kind == CommissionKind.recurring)
        .first()
    )
    if existing:
        return existing

    base = round_money(invoice.amount_due or 0)
    split = Decimal(str(originator.split_recurring_pct))
    amount = round_money(base * split / HUNDRED)
    commission = Commission(
        originator_id=originator.id,
        subscriber_id=subscriber.id,
        invoice_id=invoice.id,
        kind=CommissionKind.recurring,
        base_value=base,
        split_pct=round_money(split),
        amount=amount,
        status=CommissionStatus.pending,
    )
    db.add(commission)
    db.flush()
    LedgerEntries.post(
        db,
        source=LedgerSource.commission,
        reference_type=LedgerReferenceType.commission,
        reference_id=commission.id,
        amount=amount,
        idempotency_key=f"commission:recurring:{invoice.id}",
        subscriber_id=subscriber.id,
        originator_id=originator.id,
        description=f"Comissão recorrente - {subscriber.name}",
        is_sandbox=_is_sandbox(db, invoice.gateway_environment),
    )
    return commission


def post_payment_received(db: Session, reference_type, reference_id):
    """Credit (negative) entry for money received on a charge."""
    ref_type = LedgerReferenceType(reference_type)
    if ref_type == LedgerReferenceType.consolidated_invoice:
        target = get_by_id(db, ConsolidatedInvoice, reference_id)
        if not target:
            raise HTTPException(status_code=404, detail="Consolidated invoice not found")
        amount = target.total_value
        subscriber_id = target.subscriber_id
        description = "Pagamento recebido - fatura consolidada"
    elif ref_type == LedgerReferenceType.invoice:
        target = get_by_id(db, Invoice, reference_id)
        if not target:
            raise HTTPException(status_code=404, detail="Invoice not found")
        amount = target.amount_due
        unit = target.consumer_unit
        subscriber_id = unit.subscriber_id if unit else None
        description = "Pagamento recebido - fatura"
    else:
        raise ValueError(f"Payments are not received on {ref_type.value}")
    return LedgerEntries.post(
        db,
        source=LedgerSource.payment,
        reference_type=ref_type,
        reference_id=target.id,
        amount=-round_money(amount or 0),
        idempotency_key=f"payment:{ref_type.value}:{target.id}",
        subscriber_id=subscriber_id,
        description=description,
        is_sandbox=_is_sandbox(db, target.gateway_environment),
    )


@side_effects.register(SideEffectKind.commission_activation)
def _handle_activation(db: Session, payload: dict):
    return post_activation_commission(db, coerce_uuid(payload["subscriber_id"]))


@side_effects.register(SideEffectKind.commission_recurring)
def _handle_recurring(db: Session, payload: dict):
    return post_recurring_commission(db, coerce_uuid(payload["invoice_id"]))


@side_effects.register(SideEffectKind.ledger_payment)
def _handle_ledger_payment(db: Session, payload: dict):
    return post_payment_received(db, payload["reference_type"], coerce_uuid(payload["reference_id"]))
