"""Tests for charge update/cancel and invoice edits."""

import json
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from app.models.billing import (
    ConsolidatedInvoice,
    ConsolidatedInvoiceStatus,
    EntityHistory,
    InvoiceStatus,
)
from app.schemas.billing import InvoiceUpdate
from app.services.billing._common import Uncharged, coverage_of
from app.services.billing.charges import ChargeIssuer
from app.services.billing.invoices import Invoices
from app.services.billing.mutations import ChargeMutator
from app.services.exceptions import ChargeConflictError, GatewayError, ValidationError
from tests.factories import make_consumer_unit, make_invoice


@pytest.fixture()
def charged_invoice(db_session, invoice, gateway_client):
    ChargeIssuer.issue_individual(db_session, invoice.id, client=gateway_client)
    db_session.refresh(invoice)
    return invoice


@pytest.fixture()
def consolidated(db_session, subscriber, consumer_unit, gateway_client):
    other_unit = make_consumer_unit(db_session, subscriber, "UC-0002")
    make_invoice(db_session, consumer_unit, "80.00")
    make_invoice(db_session, other_unit, "70.00")
    result = ChargeIssuer.issue_consolidated(db_session, subscriber.id, client=gateway_client)
    return db_session.get(ConsolidatedInvoice, result.consolidated_invoice_id)


class TestUpdateCharge:
    def test_requires_a_change(self, db_session, charged_invoice, gateway_client):
        with pytest.raises(ValidationError):
            ChargeMutator.update_charge(db_session, charged_invoice.id, client=gateway_client)

    def test_rejects_non_positive_value(self, db_session, charged_invoice, gateway_client):
        with pytest.raises(ValidationError):
            ChargeMutator.update_charge(
                db_session, charged_invoice.id, value=Decimal("0"), client=gateway_client
            )

    def test_local_only_invoice_is_noop(self, db_session, invoice, gateway_client, fake_gateway):
        result = ChargeMutator.update_charge(
            db_session, invoice.id, value=Decimal("99.00"), client=gateway_client
        )
        assert result.success
        assert not result.gateway_called
        assert fake_gateway.requests == []
        db_session.refresh(invoice)
        assert invoice.amount_due == Decimal("150.00")

    def test_updates_gateway_then_mirrors(
        self, db_session, charged_invoice, gateway_client, fake_gateway
    ):
        charge_id = charged_invoice.gateway_payment_id
        result = ChargeMutator.update_charge(
            db_session,
            charged_invoice.id,
            value=Decimal("175.5"),
            due_date=date(2026, 11, 20),
            client=gateway_client,
        )
        assert result.gateway_called
        body = json.loads(fake_gateway.calls("POST", f"/payments/{charge_id}")[-1].content)
        assert body == {"value": 175.5, "dueDate": "2026-11-20"}
        db_session.refresh(charged_invoice)
        assert charged_invoice.amount_due == Decimal("175.50")
        assert charged_invoice.due_date == date(2026, 11, 20)

    def test_gateway_rejection_leaves_local_state(
        self, db_session, charged_invoice, gateway_client, fake_gateway
    ):
        fake_gateway.fail("POST", f"/payments/{charged_invoice.gateway_payment_id}")
        with pytest.raises(GatewayError):
            ChargeMutator.update_charge(
                db_session, charged_invoice.id, value=Decimal("10"), client=gateway_client
            )
        db_session.refresh(charged_invoice)
        assert charged_invoice.amount_due == Decimal("150.00")

    def test_consolidated_total_updated(
        self, db_session, consolidated, gateway_client
    ):
        ChargeMutator.update_charge(
            db_session, consolidated.id, value=Decimal("140.00"), client=gateway_client
        )
        db_session.refresh(consolidated)
        assert consolidated.total_value == Decimal("140.00")

    def test_unknown_reference(self, db_session, gateway_client):
        with pytest.raises(HTTPException) as exc_info:
            ChargeMutator.update_charge(
                db_session,
                "0b8f2a6e-1111-4c1d-9a7e-2f4b6c8d0e1a",
                value=Decimal("1"),
                client=gateway_client,
            )
        assert exc_info.value.status_code == 404

    def test_paid_charge_cannot_change(self, db_session, charged_invoice, gateway_client):
        charged_invoice.status = InvoiceStatus.paid
        db_session.commit()
        with pytest.raises(ChargeConflictError):
            ChargeMutator.update_charge(
                db_session, charged_invoice.id, value=Decimal("1"), client=gateway_client
            )


class TestCancelCharge:
    def test_cancel_deletes_and_marks_canceled(
        self, db_session, charged_invoice, gateway_client, fake_gateway
    ):
        charge_id = charged_invoice.gateway_payment_id
        result = ChargeMutator.cancel_charge(db_session, charged_invoice.id, client=gateway_client)
        assert result.gateway_called
        assert fake_gateway.charges[charge_id]["deleted"]
        db_session.refresh(charged_invoice)
        assert charged_invoice.status == InvoiceStatus.canceled
        assert charged_invoice.gateway_status == "CANCELLED"

    def test_cancel_is_idempotent(self, db_session, charged_invoice, gateway_client, fake_gateway):
        ChargeMutator.cancel_charge(db_session, charged_invoice.id, client=gateway_client)
        calls = len(fake_gateway.requests)
        result = ChargeMutator.cancel_charge(db_session, charged_invoice.id, client=gateway_client)
        assert result.success
        assert not result.gateway_called
        assert len(fake_gateway.requests) == calls

    def test_already_deleted_upstream_counts_as_success(
        self, db_session, charged_invoice, gateway_client, fake_gateway
    ):
        fake_gateway.charges[charged_invoice.gateway_payment_id]["deleted"] = True
        result = ChargeMutator.cancel_charge(db_session, charged_invoice.id, client=gateway_client)
        assert result.success
        db_session.refresh(charged_invoice)
        assert charged_invoice.status == InvoiceStatus.canceled

    def test_gateway_error_keeps_charge_open(
        self, db_session, charged_invoice, gateway_client, fake_gateway
    ):
        fake_gateway.fail(
            "DELETE", f"/payments/{charged_invoice.gateway_payment_id}",
            code="invalid_action", description="Cobrança já recebida",
        )
        with pytest.raises(GatewayError) as exc_info:
            ChargeMutator.cancel_charge(db_session, charged_invoice.id, client=gateway_client)
        assert exc_info.value.description == "Cobrança já recebida"
        db_session.refresh(charged_invoice)
        assert charged_invoice.status == InvoiceStatus.pending

    def test_paid_charge_cannot_be_canceled(self, db_session, charged_invoice, gateway_client):
        charged_invoice.status = InvoiceStatus.paid
        db_session.commit()
        with pytest.raises(ChargeConflictError):
            ChargeMutator.cancel_charge(db_session, charged_invoice.id, client=gateway_client)

    def test_local_invoice_cancel_skips_gateway(
        self, db_session, invoice, gateway_client, fake_gateway
    ):
        result = ChargeMutator.cancel_charge(db_session, invoice.id, client=gateway_client)
        assert not result.gateway_called
        assert fake_gateway.requests == []

    def test_member_invoice_must_cancel_consolidated(
        self, db_session, consolidated, gateway_client
    ):
        member = consolidated.items[0].invoice
        with pytest.raises(ChargeConflictError) as exc_info:
            ChargeMutator.cancel_charge(db_session, member.id, client=gateway_client)
        assert exc_info.value.details == {"consolidated_invoice_id": str(consolidated.id)}

    def test_cancel_consolidated_releases_members(
        self, db_session, subscriber, consolidated, gateway_client
    ):
        ChargeMutator.cancel_charge(db_session, consolidated.id, client=gateway_client)
        db_session.refresh(consolidated)
        assert consolidated.status == ConsolidatedInvoiceStatus.canceled
        assert not any(item.is_active for item in consolidated.items)
        for item in consolidated.items:
            assert item.invoice.status == InvoiceStatus.pending
            assert isinstance(coverage_of(db_session, item.invoice), Uncharged)
        assert len(ChargeIssuer.eligible_invoices(db_session, subscriber.id)) == 2


class TestInvoiceEdits:
    def test_amount_change_goes_through_gateway(
        self, db_session, charged_invoice, gateway_client, fake_gateway
    ):
        Invoices.update(
            db_session,
            str(charged_invoice.id),
            InvoiceUpdate(amount_due=Decimal("160.00")),
            client=gateway_client,
        )
        assert fake_gateway.calls("POST", f"/payments/{charged_invoice.gateway_payment_id}")
        assert charged_invoice.amount_due == Decimal("160.00")

    def test_same_amount_skips_gateway(
        self, db_session, charged_invoice, gateway_client, fake_gateway
    ):
        calls = len(fake_gateway.requests)
        Invoices.update(
            db_session,
            str(charged_invoice.id),
            InvoiceUpdate(amount_due=Decimal("150.00")),
            client=gateway_client,
        )
        assert len(fake_gateway.requests) == calls

    def test_uncharged_invoice_updates_locally(self, db_session, invoice, gateway_client, fake_gateway):
        updated = Invoices.update(
            db_session,
            str(invoice.id),
            InvoiceUpdate(amount_due=Decimal("90.00"), due_date=date(2026, 12, 10)),
            client=gateway_client,
        )
        assert updated.amount_due == Decimal("90.00")
        assert updated.due_date == date(2026, 12, 10)
        assert fake_gateway.requests == []

    def test_reset_status_records_reason(self, db_session, invoice):
        invoice.status = InvoiceStatus.paid
        db_session.commit()
        reset = Invoices.reset_status(db_session, str(invoice.id), "a_vencer", "estorno manual")
        assert reset.status == InvoiceStatus.pending
        assert reset.paid_at is None
        entry = (
            db_session.query(EntityHistory)
            .filter_by(entity_id=invoice.id, action="status_reset")
            .one()
        )
        assert entry.details == {"from": "pago", "to": "a_vencer", "reason": "estorno manual"}
