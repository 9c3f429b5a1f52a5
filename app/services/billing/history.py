"""Audit trail of billing actions (charge issued, updated, canceled, paid)."""

from sqlalchemy.orm import Session

from app.models.billing import EntityHistory
from app.services.common import coerce_uuid


def record(db: Session, entity_type: str, entity_id, action: str, details: dict | None = None):
    """Add a history row to the current transaction; the caller commits."""
    entry = EntityHistory(
        entity_type=entity_type,
        entity_id=coerce_uuid(entity_id),
        action=action,
        details=details or {},
    )
    db.add(entry)
    return entry


def list_for(db: Session, entity_type: str, entity_id) -> list[EntityHistory]:
    return (
        db.query(EntityHistory)
        .filter(EntityHistory.entity_type == entity_type)
        .filter(EntityHistory.entity_id == coerce_uuid(entity_id))
        .order_by(EntityHistory.created_at.asc())
        .all()
    )
