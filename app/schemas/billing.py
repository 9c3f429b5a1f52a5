from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.billing import (
    CommissionKind,
    CommissionStatus,
    InvoiceStatus,
    LedgerReferenceType,
    LedgerSource,
)


class ChargeMode(enum.Enum):
    individual = "individual"
    consolidated = "consolidated"


class ChargeIssueRequest(BaseModel):
    subscriber_id: UUID | None = None
    mode: ChargeMode
    invoice_ids: list[UUID] | None = None
    due_date: date | None = None

    @model_validator(mode="after")
    def _validate_mode_inputs(self) -> "ChargeIssueRequest":
        if self.mode == ChargeMode.individual:
            if not self.invoice_ids or len(self.invoice_ids) != 1:
                raise ValueError("individual charges take exactly one invoice id")
        elif self.subscriber_id is None:
            raise ValueError("subscriber_id is required for consolidated charges")
        return self


class ChargeIssueResponse(BaseModel):
    success: bool = True
    gateway_charge_id: str
    boleto_url: str | None = None
    consolidated_invoice_id: UUID | None = None
    total_value: Decimal | None = None


class ChargeUpdateRequest(BaseModel):
    charge_ref: UUID
    value: Decimal | None = Field(default=None, gt=0)
    due_date: date | None = None


class ChargeCancelRequest(BaseModel):
    charge_ref: UUID


class ChargeMutationResponse(BaseModel):
    success: bool = True
    gateway_called: bool = False


class ChargeCoverageRead(BaseModel):
    kind: str
    gateway_payment_id: str | None = None
    consolidated_invoice_id: UUID | None = None


class InvoiceUpdate(BaseModel):
    reference_month: date | None = None
    amount_due: Decimal | None = Field(default=None, ge=0)
    due_date: date | None = None


class InvoiceStatusReset(BaseModel):
    status: InvoiceStatus
    reason: str = Field(min_length=3, max_length=500)


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    consumer_unit_id: UUID
    reference_month: date | None = None
    amount_due: Decimal
    due_date: date | None = None
    status: InvoiceStatus
    gateway_payment_id: str | None = None
    gateway_boleto_url: str | None = None
    gateway_status: str | None = None
    paid_at: datetime | None = None


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source: LedgerSource
    reference_type: LedgerReferenceType
    reference_id: UUID
    subscriber_id: UUID | None = None
    originator_id: UUID | None = None
    amount: Decimal
    description: str | None = None
    is_sandbox: bool
    created_at: datetime


class LedgerStatementTotals(BaseModel):
    debits: Decimal
    credits: Decimal
    balance: Decimal


class CommissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    originator_id: UUID
    subscriber_id: UUID
    invoice_id: UUID | None = None
    kind: CommissionKind
    base_value: Decimal
    split_pct: Decimal
    amount: Decimal
    status: CommissionStatus
    gateway_transfer_id: str | None = None
    paid_at: datetime | None = None


class WebhookPayment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    status: str | None = None


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    event: str = Field(min_length=1)
    dateCreated: str | None = None
    payment: WebhookPayment | None = None
