"""Apply inbound gateway payment events to local invoices.

Events may arrive late, twice, or out of order relative to issuance and to
each other. Every structurally valid delivery is acknowledged with 200 so
the gateway stops retrying; whether it changed anything is recorded in
``payment_events``.
"""

from __future__ import annotations

import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, NamedTuple
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import WEBHOOK_EVENTS
from app.models.billing import (
    ConsolidatedInvoice,
    ConsolidatedInvoiceStatus,
    Invoice,
    InvoiceStatus,
    LedgerReferenceType,
    PaymentEvent,
    PaymentEventOutcome,
)
from app.models.side_effect import SideEffectKind
from app.schemas.billing import WebhookEvent
from app.services import side_effects
from app.services.billing import history
from app.services.common import as_aware, utcnow
from app.services.exceptions import ReconciliationSkip
from app.services.integration_config import IntegrationConfigs
from app.services.notifications import format_brl

logger = logging.getLogger(__name__)

STATUS_MAP: dict[str, InvoiceStatus] = {
    "PAYMENT_CONFIRMED": InvoiceStatus.paid,
    "PAYMENT_RECEIVED": InvoiceStatus.paid,
    "PAYMENT_OVERDUE": InvoiceStatus.overdue,
}


class WebhookResult(NamedTuple):
    status_code: int
    content: dict[str, Any]


def _bad_request(message: str) -> WebhookResult:
    WEBHOOK_EVENTS.labels(event="invalid", outcome="rejected").inc()
    return WebhookResult(400, {"error": message})


def _parse_event_time(raw: str | None) -> datetime:
    """Offset-less gateway timestamps are local to ``GATEWAY_TIMEZONE``; stored as UTC."""
    if not raw:
        return utcnow()
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("Unparseable webhook dateCreated %r; using receive time", raw)
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(settings.gateway_timezone))
    return parsed.astimezone(timezone.utc)


def _first_error(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


class WebhookReconciler:
    @staticmethod
    def _check_token(db: Session, token: str | None) -> bool:
        config = IntegrationConfigs.get(db, settings.gateway_service_name)
        expected = config.webhook_token if config else None
        if not expected:
            return True
        return hmac.compare_digest((token or "").encode(), expected.encode())

    @staticmethod
    def _guard(current, new_status: InvoiceStatus, last_applied, event_at: datetime):
        if settings.webhook_ordering != "guarded":
            return
        if current == InvoiceStatus.canceled:
            raise ReconciliationSkip("charge is canceled locally")
        if current == InvoiceStatus.paid and new_status == InvoiceStatus.overdue:
            raise ReconciliationSkip("paid charge cannot move back to overdue")
        if new_status == InvoiceStatus.paid:
            # A payment is final whatever order its events arrive in.
            return
        last_applied = as_aware(last_applied)
        if last_applied and event_at < last_applied:
            raise ReconciliationSkip("event is older than the last applied status")

    @staticmethod
    def _apply_invoice(
        db: Session, invoice: Invoice, new_status: InvoiceStatus, gateway_status: str, event_at
    ) -> bool:
        WebhookReconciler._guard(invoice.status, new_status, invoice.gateway_status_at, event_at)
        previous = invoice.status
        invoice.status = new_status
        invoice.gateway_status = gateway_status
        invoice.gateway_status_at = event_at
        became_paid = new_status == InvoiceStatus.paid and previous != InvoiceStatus.paid
        if became_paid:
            invoice.paid_at = invoice.paid_at or utcnow()
        history.record(
            db,
            "invoice",
            invoice.id,
            "gateway_status",
            {"from": previous.value, "to": new_status.value, "gateway_status": gateway_status},
        )
        return became_paid

    @staticmethod
    def _apply_consolidated(
        db: Session,
        consolidated: ConsolidatedInvoice,
        new_status: InvoiceStatus,
        gateway_status: str,
        event_at,
    ) -> tuple[bool, list[Invoice]]:
        current = {
            ConsolidatedInvoiceStatus.paid: InvoiceStatus.paid,
            ConsolidatedInvoiceStatus.canceled: InvoiceStatus.canceled,
        }.get(consolidated.status, InvoiceStatus.pending)
        WebhookReconciler._guard(current, new_status, consolidated.gateway_status_at, event_at)
        consolidated.gateway_status = gateway_status
        consolidated.gateway_status_at = event_at
        became_paid = (
            new_status == InvoiceStatus.paid
            and consolidated.status != ConsolidatedInvoiceStatus.paid
        )
        if new_status == InvoiceStatus.paid:
            consolidated.status = ConsolidatedInvoiceStatus.paid
            consolidated.paid_at = consolidated.paid_at or utcnow()

        newly_paid: list[Invoice] = []
        for item in consolidated.items:
            if not item.is_active:
                continue
            member = item.invoice
            if member.status == InvoiceStatus.canceled:
                continue
            if (
                settings.webhook_ordering == "guarded"
                and member.status == InvoiceStatus.paid
                and new_status == InvoiceStatus.overdue
            ):
                continue
            if new_status == InvoiceStatus.paid and member.status != InvoiceStatus.paid:
                member.paid_at = member.paid_at or utcnow()
                newly_paid.append(member)
            member.status = new_status
            member.gateway_status = gateway_status
            member.gateway_status_at = event_at
        history.record(
            db,
            "consolidated_invoice",
            consolidated.id,
            "gateway_status",
            {"to": new_status.value, "gateway_status": gateway_status},
        )
        return became_paid, newly_paid

    @staticmethod
    def _enqueue_payment_effects(db: Session, reference_type, target, invoices: list[Invoice]):
        side_effects.enqueue(
            db,
            SideEffectKind.ledger_payment,
            {"reference_type": reference_type.value, "reference_id": str(target.id)},
        )
        for invoice in invoices:
            side_effects.enqueue(
                db, SideEffectKind.commission_recurring, {"invoice_id": str(invoice.id)}
            )
        if isinstance(target, ConsolidatedInvoice):
            subscriber = target.subscriber
            amount = target.total_value
        else:
            subscriber = target.consumer_unit.subscriber if target.consumer_unit else None
            amount = target.amount_due
        if subscriber and subscriber.phone:
            side_effects.enqueue(
                db,
                SideEffectKind.notification,
                {
                    "template": "payment_received",
                    "phone": subscriber.phone,
                    "message": (
                        f"Olá {subscriber.name}, recebemos o pagamento de "
                        f"{format_brl(amount)}. Obrigado!"
                    ),
                },
            )

    @staticmethod
    def _reconcile(db: Session, event: WebhookEvent) -> str:
        new_status = STATUS_MAP.get(event.event)
        if new_status is None:
            raise ReconciliationSkip(f"event {event.event} does not change status")
        payment_id = event.payment.id
        gateway_status = event.payment.status or event.event
        event_at = _parse_event_time(event.dateCreated)

        invoice = (
            db.query(Invoice)
            .filter(Invoice.gateway_payment_id == payment_id)
            .with_for_update()
            .first()
        )
        if invoice:
            if WebhookReconciler._apply_invoice(db, invoice, new_status, gateway_status, event_at):
                WebhookReconciler._enqueue_payment_effects(
                    db, LedgerReferenceType.invoice, invoice, [invoice]
                )
            return f"invoice {invoice.id} -> {new_status.value}"

        consolidated = (
            db.query(ConsolidatedInvoice)
            .filter(ConsolidatedInvoice.gateway_payment_id == payment_id)
            .with_for_update()
            .first()
        )
        if consolidated:
            became_paid, newly_paid = WebhookReconciler._apply_consolidated(
                db, consolidated, new_status, gateway_status, event_at
            )
            if became_paid:
                WebhookReconciler._enqueue_payment_effects(
                    db, LedgerReferenceType.consolidated_invoice, consolidated, newly_paid
                )
            return f"consolidated invoice {consolidated.id} -> {new_status.value}"

        raise ReconciliationSkip(f"no local charge for gateway id {payment_id}")

    @staticmethod
    def _log_event(db: Session, event: WebhookEvent, payload: dict, outcome, detail: str):
        db.add(
            PaymentEvent(
                gateway_event_id=event.id,
                event_type=event.event,
                gateway_payment_id=event.payment.id if event.payment else None,
                outcome=outcome,
                detail=detail,
                payload=payload,
            )
        )

    @staticmethod
    def process(db: Session, body: bytes, token: str | None = None) -> WebhookResult:
        if not WebhookReconciler._check_token(db, token):
            WEBHOOK_EVENTS.labels(event="invalid", outcome="unauthorized").inc()
            logger.warning("Rejected webhook with invalid token")
            return WebhookResult(401, {"error": "Invalid webhook token"})
        try:
            payload = json.loads(body)
        except ValueError:
            return _bad_request("Invalid JSON body")
        if not isinstance(payload, dict):
            return _bad_request("Webhook body must be a JSON object")
        try:
            event = WebhookEvent.model_validate(payload)
        except PydanticValidationError as exc:
            return _bad_request(_first_error(exc))
        if event.payment is None and event.event in STATUS_MAP:
            return _bad_request("payment.id is required")

        if event.id:
            seen = (
                db.query(PaymentEvent.id)
                .filter(PaymentEvent.gateway_event_id == event.id)
                .first()
            )
            if seen:
                WEBHOOK_EVENTS.labels(event=event.event, outcome="duplicate").inc()
                logger.info("Duplicate webhook delivery %s ignored", event.id)
                return WebhookResult(200, {"received": True})

        try:
            detail = WebhookReconciler._reconcile(db, event)
            outcome = PaymentEventOutcome.processed
        except ReconciliationSkip as skip:
            db.rollback()
            detail = skip.reason
            outcome = PaymentEventOutcome.skipped
            logger.info("Webhook %s acknowledged without changes: %s", event.event, skip.reason)
        except Exception:
            db.rollback()
            raise

        WebhookReconciler._log_event(db, event, payload, outcome, detail)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event id won the insert.
            db.rollback()
            WEBHOOK_EVENTS.labels(event=event.event, outcome="duplicate").inc()
            return WebhookResult(200, {"received": True})
        WEBHOOK_EVENTS.labels(event=event.event, outcome=outcome.value).inc()
        return WebhookResult(200, {"received": True})
