"""Pay originator commissions out by PIX transfer."""

from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.billing import Commission, CommissionStatus
from app.services.billing import history
from app.services.common import get_by_id, money_to_json, utcnow
from app.services.exceptions import ChargeConflictError, ValidationError
from app.services.gateway_client import GatewayClient

logger = logging.getLogger(__name__)


class CommissionPayouts:
    @staticmethod
    def pay(db: Session, commission_id, *, client: GatewayClient | None = None) -> Commission:
        commission = get_by_id(db, Commission, commission_id, with_for_update=True)
        if not commission:
            raise HTTPException(status_code=404, detail="Commission not found")
        if commission.status != CommissionStatus.pending:
            raise ChargeConflictError("Commission has already been paid")
        if commission.amount is None or commission.amount <= 0:
            raise ValidationError("Commission amount must be greater than zero")
        originator = commission.originator
        if not originator or not originator.pix_key:
            raise ValidationError("Originator has no PIX key")

        client = client or GatewayClient(db)
        payload = {
            "value": money_to_json(commission.amount),
            "pixAddressKey": originator.pix_key,
            "operationType": "PIX",
            "description": f"Comissão {commission.kind.value} - {originator.name}",
            "externalReference": f"commission:{commission.id}",
        }
        if originator.pix_key_type:
            payload["pixAddressKeyType"] = originator.pix_key_type
        transfer = client.create_transfer(payload)

        commission.status = CommissionStatus.paid
        commission.gateway_transfer_id = transfer.get("id")
        commission.paid_at = utcnow()
        history.record(
            db,
            "commission",
            commission.id,
            "payout_sent",
            {"gateway_transfer_id": transfer.get("id"), "status": transfer.get("status")},
        )
        db.commit()
        db.refresh(commission)
        logger.info(
            "Paid commission %s to originator %s (transfer %s)",
            commission.id,
            originator.id,
            commission.gateway_transfer_id,
        )
        return commission
