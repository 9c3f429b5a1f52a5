"""Billing engine core: subscribers, charges, ledger, outbox.

Revision ID: a1c4e7f20b35
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "a1c4e7f20b35"
down_revision = None
branch_labels = None
depends_on = None

ENUMS = {
    "billingmode": ("consolidated", "individualized"),
    "subscriberstatus": ("lead", "em_negociacao", "ativo", "inativo"),
    "invoicestatus": ("a_vencer", "pago", "atrasado", "cancelado"),
    "consolidatedinvoicestatus": ("pending", "paid", "canceled"),
    "gatewayenvironment": ("production", "sandbox"),
    "ledgersource": ("commission", "payment", "adjustment"),
    "ledgerreferencetype": ("invoice", "consolidated_invoice", "commission"),
    "commissionkind": ("start", "recurring"),
    "commissionstatus": ("pending", "paid"),
    "paymenteventoutcome": ("processed", "skipped", "duplicate"),
    "sideeffectkind": (
        "commission_activation",
        "commission_recurring",
        "ledger_payment",
        "notification",
    ),
    "sideeffectstatus": ("queued", "running", "done", "failed"),
}


def _enum(name: str):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "originators",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("phone", sa.String(40)),
        sa.Column("email", sa.String(255)),
        sa.Column("pix_key", sa.String(140)),
        sa.Column("pix_key_type", sa.String(20)),
        sa.Column("split_start_pct", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("split_recurring_pct", sa.Numeric(5, 2), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "subscribers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("document", sa.String(14), nullable=False, unique=True),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(40)),
        sa.Column("postal_code", sa.String(10)),
        sa.Column("street", sa.String(200)),
        sa.Column("address_number", sa.String(20)),
        sa.Column("district", sa.String(120)),
        sa.Column("city", sa.String(120)),
        sa.Column("state", sa.String(2)),
        sa.Column("billing_mode", _enum("billingmode"), nullable=False, server_default="individualized"),
        sa.Column("consolidated_due_day", sa.Integer()),
        sa.Column("gateway_customer_id", sa.String(80)),
        sa.Column("status", _enum("subscriberstatus"), nullable=False, server_default="lead"),
        sa.Column("originator_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("originators.id")),
        sa.Column("consumption_kwh", sa.Numeric(12, 2)),
        sa.Column("tariff", sa.Numeric(10, 4)),
        sa.Column("discount_pct", sa.Numeric(6, 3)),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint(
            "consolidated_due_day IS NULL OR (consolidated_due_day BETWEEN 1 AND 31)",
            name="ck_subscribers_consolidated_due_day",
        ),
    )
    op.create_index("ix_subscribers_gateway_customer_id", "subscribers", ["gateway_customer_id"])

    op.create_table(
        "consumer_units",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("subscriber_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subscribers.id")),
        sa.Column("installation_code", sa.String(40)),
        sa.Column("holder_name", sa.String(200)),
        sa.Column("provider", sa.String(120)),
        sa.Column("average_consumption_kwh", sa.Numeric(12, 2)),
        sa.Column("due_day", sa.Integer()),
        *_timestamps(),
    )
    op.create_index("ix_consumer_units_subscriber_id", "consumer_units", ["subscriber_id"])

    op.create_table(
        "invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("consumer_unit_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("consumer_units.id"), nullable=False),
        sa.Column("reference_month", sa.Date()),
        sa.Column("amount_due", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("due_date", sa.Date()),
        sa.Column("status", _enum("invoicestatus"), nullable=False, server_default="a_vencer"),
        sa.Column("gateway_payment_id", sa.String(80)),
        sa.Column("gateway_boleto_url", sa.String(500)),
        sa.Column("gateway_status", sa.String(40)),
        sa.Column("gateway_environment", _enum("gatewayenvironment")),
        sa.Column("gateway_status_at", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_invoices_consumer_unit_id", "invoices", ["consumer_unit_id"])
    op.create_index("ix_invoices_gateway_payment_id", "invoices", ["gateway_payment_id"])

    op.create_table(
        "consolidated_invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("subscriber_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subscribers.id"), nullable=False),
        sa.Column("total_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", _enum("consolidatedinvoicestatus"), nullable=False, server_default="pending"),
        sa.Column("gateway_payment_id", sa.String(80), unique=True),
        sa.Column("gateway_boleto_url", sa.String(500)),
        sa.Column("gateway_status", sa.String(40)),
        sa.Column("gateway_environment", _enum("gatewayenvironment")),
        sa.Column("external_reference", sa.String(120)),
        sa.Column("gateway_status_at", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_consolidated_invoices_subscriber_id", "consolidated_invoices", ["subscriber_id"])

    op.create_table(
        "consolidated_invoice_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "consolidated_invoice_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("consolidated_invoices.id"),
            nullable=False,
        ),
        sa.Column("invoice_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_consolidated_invoice_items_consolidated_invoice_id",
        "consolidated_invoice_items",
        ["consolidated_invoice_id"],
    )
    op.create_index(
        "uq_consolidated_invoice_items_active_invoice",
        "consolidated_invoice_items",
        ["invoice_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "commissions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("originator_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("originators.id"), nullable=False),
        sa.Column("subscriber_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subscribers.id"), nullable=False),
        sa.Column("invoice_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("invoices.id")),
        sa.Column("kind", _enum("commissionkind"), nullable=False),
        sa.Column("base_value", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("split_pct", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", _enum("commissionstatus"), nullable=False, server_default="pending"),
        sa.Column("gateway_transfer_id", sa.String(80)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_commissions_originator_id", "commissions", ["originator_id"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("source", _enum("ledgersource"), nullable=False),
        sa.Column("reference_type", _enum("ledgerreferencetype"), nullable=False),
        sa.Column("reference_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscriber_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subscribers.id")),
        sa.Column("originator_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("originators.id")),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_sandbox", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("idempotency_key", sa.String(160), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_ledger_entries_subscriber_id", "ledger_entries", ["subscriber_id"])
    op.create_index("ix_ledger_entries_originator_id", "ledger_entries", ["originator_id"])

    op.create_table(
        "payment_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("gateway_event_id", sa.String(120), unique=True),
        sa.Column("event_type", sa.String(80), nullable=False),
        sa.Column("gateway_payment_id", sa.String(80)),
        sa.Column("outcome", _enum("paymenteventoutcome"), nullable=False),
        sa.Column("detail", sa.Text()),
        sa.Column("payload", postgresql.JSON()),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_payment_events_gateway_payment_id", "payment_events", ["gateway_payment_id"])

    op.create_table(
        "entity_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.String(40), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(60), nullable=False),
        sa.Column("details", postgresql.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_entity_history_entity_id", "entity_history", ["entity_id"])

    op.create_table(
        "integrations_config",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("service_name", sa.String(80), nullable=False, unique=True),
        sa.Column("environment", _enum("gatewayenvironment"), nullable=False, server_default="production"),
        sa.Column("endpoint_url", sa.String(255)),
        sa.Column("api_key", sa.String(255)),
        sa.Column("sandbox_endpoint_url", sa.String(255)),
        sa.Column("sandbox_api_key", sa.String(255)),
        sa.Column("webhook_token", sa.String(255)),
        sa.Column("variables", postgresql.JSON()),
        *_timestamps(),
    )

    op.create_table(
        "side_effect_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", _enum("sideeffectkind"), nullable=False),
        sa.Column("payload", postgresql.JSON(), nullable=False),
        sa.Column("status", _enum("sideeffectstatus"), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("run_after", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text()),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_side_effect_tasks_kind", "side_effect_tasks", ["kind"])
    op.create_index("ix_side_effect_tasks_status", "side_effect_tasks", ["status"])


def downgrade() -> None:
    for table in (
        "side_effect_tasks",
        "integrations_config",
        "entity_history",
        "payment_events",
        "ledger_entries",
        "commissions",
        "consolidated_invoice_items",
        "consolidated_invoices",
        "invoices",
        "consumer_units",
        "subscribers",
        "originators",
    ):
        op.drop_table(table)
    for name in ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")
