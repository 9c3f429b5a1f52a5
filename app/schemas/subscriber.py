from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.subscriber import BillingMode, SubscriberStatus


class SubscriberBase(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    document: str = Field(min_length=11, max_length=20)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=40)
    postal_code: str | None = Field(default=None, max_length=10)
    street: str | None = Field(default=None, max_length=200)
    address_number: str | None = Field(default=None, max_length=20)
    district: str | None = Field(default=None, max_length=120)
    city: str | None = Field(default=None, max_length=120)
    state: str | None = Field(default=None, max_length=2)
    billing_mode: BillingMode = BillingMode.individualized
    consolidated_due_day: int | None = Field(default=None, ge=1, le=31)
    status: SubscriberStatus = SubscriberStatus.lead
    originator_id: UUID | None = None
    consumption_kwh: Decimal | None = Field(default=None, ge=0)
    tariff: Decimal | None = Field(default=None, ge=0)
    discount_pct: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = None


class SubscriberCreate(SubscriberBase):
    pass


class SubscriberUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    document: str | None = Field(default=None, min_length=11, max_length=20)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=40)
    postal_code: str | None = Field(default=None, max_length=10)
    street: str | None = Field(default=None, max_length=200)
    address_number: str | None = Field(default=None, max_length=20)
    district: str | None = Field(default=None, max_length=120)
    city: str | None = Field(default=None, max_length=120)
    state: str | None = Field(default=None, max_length=2)
    billing_mode: BillingMode | None = None
    consolidated_due_day: int | None = Field(default=None, ge=1, le=31)
    status: SubscriberStatus | None = None
    originator_id: UUID | None = None
    consumption_kwh: Decimal | None = Field(default=None, ge=0)
    tariff: Decimal | None = Field(default=None, ge=0)
    discount_pct: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = None


class SubscriberRead(SubscriberBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    gateway_customer_id: str | None = None
    created_at: datetime
    updated_at: datetime
