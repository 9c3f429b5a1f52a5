import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class InvoiceStatus(enum.Enum):
    pending = "a_vencer"
    paid = "pago"
    overdue = "atrasado"
    canceled = "cancelado"


class ConsolidatedInvoiceStatus(enum.Enum):
    pending = "pending"
    paid = "paid"
    canceled = "canceled"


class GatewayEnvironment(enum.Enum):
    production = "production"
    sandbox = "sandbox"


class LedgerSource(enum.Enum):
    commission = "commission"
    payment = "payment"
    adjustment = "adjustment"


class LedgerReferenceType(enum.Enum):
    invoice = "invoice"
    consolidated_invoice = "consolidated_invoice"
    commission = "commission"


class CommissionKind(enum.Enum):
    start = "start"
    recurring = "recurring"


class CommissionStatus(enum.Enum):
    pending = "pending"
    paid = "paid"


class PaymentEventOutcome(enum.Enum):
    processed = "processed"
    skipped = "skipped"
    duplicate = "duplicate"


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    consumer_unit_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("consumer_units.id"), nullable=False, index=True
    )
    reference_month: Mapped[date | None] = mapped_column(Date)
    amount_due: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    due_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, values_callable=_enum_values),
        default=InvoiceStatus.pending,
    )
    gateway_payment_id: Mapped[str | None] = mapped_column(String(80), index=True)
    gateway_boleto_url: Mapped[str | None] = mapped_column(String(500))
    gateway_status: Mapped[str | None] = mapped_column(String(40))
    gateway_environment: Mapped[GatewayEnvironment | None] = mapped_column(
        Enum(GatewayEnvironment)
    )
    gateway_status_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    consumer_unit = relationship("ConsumerUnit", back_populates="invoices")
    consolidated_items = relationship("ConsolidatedInvoiceItem", back_populates="invoice")


class ConsolidatedInvoice(Base):
    """One gateway charge covering several invoices of the same subscriber.

    ``total_value`` is frozen at issuance; later edits to member invoices
    never flow back into it.
    """

    __tablename__ = "consolidated_invoices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscribers.id"), nullable=False, index=True
    )
    total_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ConsolidatedInvoiceStatus] = mapped_column(
        Enum(ConsolidatedInvoiceStatus), default=ConsolidatedInvoiceStatus.pending
    )
    gateway_payment_id: Mapped[str | None] = mapped_column(String(80), unique=True)
    gateway_boleto_url: Mapped[str | None] = mapped_column(String(500))
    gateway_status: Mapped[str | None] = mapped_column(String(40))
    gateway_environment: Mapped[GatewayEnvironment | None] = mapped_column(
        Enum(GatewayEnvironment)
    )
    external_reference: Mapped[str | None] = mapped_column(String(120))
    gateway_status_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    subscriber = relationship("Subscriber", back_populates="consolidated_invoices")
    items = relationship("ConsolidatedInvoiceItem", back_populates="consolidated_invoice")


class ConsolidatedInvoiceItem(Base):
    __tablename__ = "consolidated_invoice_items"
    __table_args__ = (
        # An invoice may back at most one live consolidated charge.
        Index(
            "uq_consolidated_invoice_items_active_invoice",
            "invoice_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    consolidated_invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("consolidated_invoices.id"), nullable=False, index=True
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    consolidated_invoice = relationship("ConsolidatedInvoice", back_populates="items")
    invoice = relationship("Invoice", back_populates="consolidated_items")


class Commission(Base):
    __tablename__ = "commissions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    originator_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("originators.id"), nullable=False, index=True
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscribers.id"), nullable=False
    )
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id")
    )
    kind: Mapped[CommissionKind] = mapped_column(Enum(CommissionKind), nullable=False)
    base_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    split_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    status: Mapped[CommissionStatus] = mapped_column(
        Enum(CommissionStatus), default=CommissionStatus.pending
    )
    gateway_transfer_id: Mapped[str | None] = mapped_column(String(80))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    originator = relationship("Originator")
    subscriber = relationship("Subscriber")
    invoice = relationship("Invoice")


class LedgerEntry(Base):
    """Append-only accounting record.

    ``amount`` is signed: positive is a debit (money going out), negative a
    credit (money coming in).
    """

    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    source: Mapped[LedgerSource] = mapped_column(Enum(LedgerSource), nullable=False)
    reference_type: Mapped[LedgerReferenceType] = mapped_column(
        Enum(LedgerReferenceType), nullable=False
    )
    reference_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    subscriber_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscribers.id"), index=True
    )
    originator_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("originators.id"), index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_sandbox: Mapped[bool] = mapped_column(Boolean, default=False)
    idempotency_key: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class LedgerImmutableError(RuntimeError):
    pass


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError("Ledger entries are append-only")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError("Ledger entries are append-only")


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    gateway_event_id: Mapped[str | None] = mapped_column(String(120), unique=True)
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(80), index=True)
    outcome: Mapped[PaymentEventOutcome] = mapped_column(
        Enum(PaymentEventOutcome), nullable=False
    )
    detail: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict | None] = mapped_column(JSON)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class EntityHistory(Base):
    __tablename__ = "entity_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
