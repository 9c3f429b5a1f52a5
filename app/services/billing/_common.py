"""Helpers shared across the billing services.

Charge coverage, the consolidated due-date rule and the deterministic
external references used to find a charge again after a timeout.
"""

from __future__ import annotations

import calendar
import hashlib
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Union

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.billing import (
    ConsolidatedInvoice,
    ConsolidatedInvoiceItem,
    ConsolidatedInvoiceStatus,
    Invoice,
)
from app.services.common import get_by_id


@dataclass(frozen=True)
class Uncharged:
    kind: str = "uncharged"


@dataclass(frozen=True)
class DirectCharge:
    gateway_payment_id: str
    kind: str = "direct"


@dataclass(frozen=True)
class ConsolidatedMember:
    consolidated_id: object
    gateway_payment_id: str | None = None
    kind: str = "consolidated"


ChargeCoverage = Union[Uncharged, DirectCharge, ConsolidatedMember]


def active_membership(db: Session, invoice_id) -> ConsolidatedInvoiceItem | None:
    return (
        db.query(ConsolidatedInvoiceItem)
        .join(ConsolidatedInvoice)
        .filter(ConsolidatedInvoiceItem.invoice_id == invoice_id)
        .filter(ConsolidatedInvoiceItem.is_active.is_(True))
        .filter(ConsolidatedInvoice.status != ConsolidatedInvoiceStatus.canceled)
        .first()
    )


def coverage_of(db: Session, invoice: Invoice) -> ChargeCoverage:
    """Which gateway charge, if any, collects this invoice."""
    if invoice.gateway_payment_id:
        return DirectCharge(gateway_payment_id=invoice.gateway_payment_id)
    item = active_membership(db, invoice.id)
    if item:
        return ConsolidatedMember(
            consolidated_id=item.consolidated_invoice_id,
            gateway_payment_id=item.consolidated_invoice.gateway_payment_id,
        )
    return Uncharged()


def _clamp_day(year: int, month: int, day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def _add_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def compute_consolidated_due_date(
    preferred_day: int, today: date, min_lead_days: int = 3
) -> date:
    """Next occurrence of ``preferred_day`` at least ``min_lead_days`` away.

    Days past the end of a short month clamp to its last day.
    """
    if not 1 <= preferred_day <= 31:
        raise ValueError("preferred_day must be between 1 and 31")
    year, month = today.year, today.month
    candidate = _clamp_day(year, month, preferred_day)
    if candidate < today:
        year, month = _add_month(year, month)
        candidate = _clamp_day(year, month, preferred_day)
    if candidate - today < timedelta(days=min_lead_days):
        year, month = _add_month(year, month)
        candidate = _clamp_day(year, month, preferred_day)
    return candidate


def invoice_external_reference(invoice_id) -> str:
    return f"invoice:{invoice_id}"


def consolidated_external_reference(invoice_ids: Iterable) -> str:
    joined = ",".join(sorted(str(invoice_id) for invoice_id in invoice_ids))
    digest = hashlib.sha256(joined.encode()).hexdigest()[:32]
    return f"consolidated:{digest}"


def resolve_charge_ref(db: Session, charge_ref) -> Invoice | ConsolidatedInvoice:
    """Resolve an id that may name an invoice or a consolidated charge."""
    invoice = get_by_id(db, Invoice, charge_ref)
    if invoice:
        return invoice
    consolidated = get_by_id(db, ConsolidatedInvoice, charge_ref)
    if consolidated:
        return consolidated
    raise HTTPException(status_code=404, detail="Charge not found")
