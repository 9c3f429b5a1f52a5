"""Append-only ledger: posting and statement reads."""

from decimal import Decimal

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.models.billing import (
    GatewayEnvironment,
    LedgerEntry,
    LedgerReferenceType,
    LedgerSource,
)
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_404,
    round_money,
    validate_enum,
)
from app.services.response import ListResponseMixin


def _environment_filter(query, environment):
    env = validate_enum(environment, GatewayEnvironment, "environment")
    if env is None:
        return query
    return query.filter(LedgerEntry.is_sandbox.is_(env == GatewayEnvironment.sandbox))


class LedgerEntries(ListResponseMixin):
    @staticmethod
    def post(
        db: Session,
        *,
        source: LedgerSource,
        reference_type: LedgerReferenceType,
        reference_id,
        amount: Decimal,
        idempotency_key: str,
        subscriber_id=None,
        originator_id=None,
        description: str | None = None,
        is_sandbox: bool = False,
    ) -> LedgerEntry:
        """Add an entry unless one with the same key exists; the caller commits."""
        existing = (
            db.query(LedgerEntry)
            .filter(LedgerEntry.idempotency_key == idempotency_key)
            .first()
        )
        if existing:
            return existing
        entry = LedgerEntry(
            source=source,
            reference_type=reference_type,
            reference_id=coerce_uuid(reference_id),
            subscriber_id=coerce_uuid(subscriber_id),
            originator_id=coerce_uuid(originator_id),
            amount=round_money(amount),
            description=description,
            is_sandbox=is_sandbox,
            idempotency_key=idempotency_key,
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def get(db: Session, entry_id: str):
        return get_or_404(db, LedgerEntry, entry_id, detail="Ledger entry not found")

    @staticmethod
    def list(
        db: Session,
        environment: str | None = None,
        subscriber_id: str | None = None,
        originator_id: str | None = None,
        source: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = _environment_filter(db.query(LedgerEntry), environment)
        if subscriber_id:
            query = query.filter(LedgerEntry.subscriber_id == coerce_uuid(subscriber_id))
        if originator_id:
            query = query.filter(LedgerEntry.originator_id == coerce_uuid(originator_id))
        if source:
            query = query.filter(
                LedgerEntry.source == validate_enum(source, LedgerSource, "source")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": LedgerEntry.created_at, "amount": LedgerEntry.amount},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def statement_totals(
        db: Session,
        environment: str | None = None,
        subscriber_id: str | None = None,
        originator_id: str | None = None,
    ) -> dict:
        """Debits are positive amounts, credits negative; balance is their sum."""
        query = db.query(
            func.coalesce(
                func.sum(case((LedgerEntry.amount > 0, LedgerEntry.amount), else_=0)), 0
            ),
            func.coalesce(
                func.sum(case((LedgerEntry.amount < 0, LedgerEntry.amount), else_=0)), 0
            ),
        ).select_from(LedgerEntry)
        query = _environment_filter(query, environment)
        if subscriber_id:
            query = query.filter(LedgerEntry.subscriber_id == coerce_uuid(subscriber_id))
        if originator_id:
            query = query.filter(LedgerEntry.originator_id == coerce_uuid(originator_id))
        debits, credits = query.one()
        debits = round_money(debits or 0)
        credits = round_money(credits or 0)
        return {"debits": debits, "credits": credits, "balance": round_money(debits + credits)}
