"""Local invoice edits that must stay in step with the gateway charge."""

from sqlalchemy.orm import Session

from app.models.billing import Invoice, InvoiceStatus
from app.schemas.billing import InvoiceUpdate
from app.services.billing import history
from app.services.billing._common import coverage_of
from app.services.billing.mutations import ChargeMutator
from app.services.common import get_or_404, round_money, utcnow, validate_enum


class Invoices:
    @staticmethod
    def get(db: Session, invoice_id: str):
        return get_or_404(db, Invoice, invoice_id, detail="Invoice not found")

    @staticmethod
    def coverage(db: Session, invoice_id: str):
        invoice = Invoices.get(db, invoice_id)
        return coverage_of(db, invoice)

    @staticmethod
    def update(db: Session, invoice_id: str, payload: InvoiceUpdate, *, client=None):
        """Edit an invoice; amount and due date go through the gateway first.

        A gateway failure leaves the invoice untouched.
        """
        invoice = Invoices.get(db, invoice_id)
        data = payload.model_dump(exclude_unset=True)
        new_amount = data.pop("amount_due", None)
        new_due = data.pop("due_date", None)
        if new_amount is not None and round_money(new_amount) == round_money(invoice.amount_due or 0):
            new_amount = None
        if new_due is not None and new_due == invoice.due_date:
            new_due = None

        if invoice.gateway_payment_id and (new_amount is not None or new_due is not None):
            ChargeMutator.update_charge(
                db, invoice.id, value=new_amount, due_date=new_due, client=client
            )
        else:
            if new_amount is not None:
                invoice.amount_due = round_money(new_amount)
            if new_due is not None:
                invoice.due_date = new_due
        for key, value in data.items():
            setattr(invoice, key, value)
        db.commit()
        db.refresh(invoice)
        return invoice

    @staticmethod
    def reset_status(db: Session, invoice_id: str, status, reason: str):
        """Administrative status override; the only way to leave ``pago``."""
        invoice = Invoices.get(db, invoice_id)
        new_status = validate_enum(status, InvoiceStatus, "status")
        previous = invoice.status
        invoice.status = new_status
        invoice.gateway_status_at = utcnow()
        if new_status != InvoiceStatus.paid:
            invoice.paid_at = None
        history.record(
            db,
            "invoice",
            invoice.id,
            "status_reset",
            {"from": previous.value, "to": new_status.value, "reason": reason},
        )
        db.commit()
        db.refresh(invoice)
        return invoice
