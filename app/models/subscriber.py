import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class BillingMode(enum.Enum):
    consolidated = "consolidated"
    individualized = "individualized"


class SubscriberStatus(enum.Enum):
    """Lead lifecycle; the transition into ``activated`` pays the start commission."""
    lead = "lead"
    negotiating = "em_negociacao"
    activated = "ativo"
    inactive = "inativo"


class Originator(Base):
    """Partner who brought the subscriber in and earns split commissions."""

    __tablename__ = "originators"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(40))
    email: Mapped[str | None] = mapped_column(String(255))
    pix_key: Mapped[str | None] = mapped_column(String(140))
    pix_key_type: Mapped[str | None] = mapped_column(String(20))
    split_start_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    split_recurring_pct: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("0.00")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    subscribers = relationship("Subscriber", back_populates="originator")


class Subscriber(Base):
    """Billing identity plus the lead data commissions are computed from.

    ``document`` holds the CPF/CNPJ digits only. ``gateway_customer_id`` is
    lazy: it is filled by customer resolution and refreshed on every sync.
    """

    __tablename__ = "subscribers"
    __table_args__ = (
        CheckConstraint(
            "consolidated_due_day IS NULL OR (consolidated_due_day BETWEEN 1 AND 31)",
            name="ck_subscribers_consolidated_due_day",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    document: Mapped[str] = mapped_column(String(14), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(40))

    postal_code: Mapped[str | None] = mapped_column(String(10))
    street: Mapped[str | None] = mapped_column(String(200))
    address_number: Mapped[str | None] = mapped_column(String(20))
    district: Mapped[str | None] = mapped_column(String(120))
    city: Mapped[str | None] = mapped_column(String(120))
    state: Mapped[str | None] = mapped_column(String(2))

    billing_mode: Mapped[BillingMode] = mapped_column(
        Enum(BillingMode), default=BillingMode.individualized
    )
    consolidated_due_day: Mapped[int | None] = mapped_column(Integer)
    gateway_customer_id: Mapped[str | None] = mapped_column(String(80), index=True)

    status: Mapped[SubscriberStatus] = mapped_column(
        Enum(SubscriberStatus, values_callable=_enum_values),
        default=SubscriberStatus.lead,
    )
    originator_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("originators.id")
    )
    consumption_kwh: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    tariff: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    discount_pct: Mapped[Decimal | None] = mapped_column(Numeric(6, 3))
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    originator = relationship("Originator", back_populates="subscribers")
    consumer_units = relationship("ConsumerUnit", back_populates="subscriber")
    consolidated_invoices = relationship("ConsolidatedInvoice", back_populates="subscriber")


class ConsumerUnit(Base):
    """Metered connection point; may be unlinked from its subscriber without deletion."""

    __tablename__ = "consumer_units"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscriber_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscribers.id"), index=True
    )
    installation_code: Mapped[str | None] = mapped_column(String(40))
    holder_name: Mapped[str | None] = mapped_column(String(200))
    provider: Mapped[str | None] = mapped_column(String(120))
    average_consumption_kwh: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    due_day: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    subscriber = relationship("Subscriber", back_populates="consumer_units")
    invoices = relationship("Invoice", back_populates="consumer_unit")
