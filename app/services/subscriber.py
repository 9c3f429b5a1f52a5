"""Subscriber save path: validate, dedupe by document, sync the gateway, commit.

The gateway sync happens before the commit so a subscriber is never saved
with a profile the gateway rejected. Activation side effects are queued in
the same transaction.
"""

import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.side_effect import SideEffectKind
from app.models.subscriber import Originator, Subscriber, SubscriberStatus
from app.schemas.subscriber import SubscriberCreate, SubscriberUpdate
from app.services import customer_sync, side_effects
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_by_id,
    get_or_404,
    validate_enum,
)
from app.services.exceptions import DuplicateDocumentError
from app.services.gateway_client import GatewayClient
from app.services.response import ListResponseMixin
from app.validators import subscriber as subscriber_validators

logger = logging.getLogger(__name__)

# Fields mirrored into the gateway customer profile.
GATEWAY_PROFILE_FIELDS = {
    "name",
    "document",
    "email",
    "phone",
    "postal_code",
    "street",
    "address_number",
    "district",
}


def _ensure_unique_document(db: Session, document: str, exclude_id=None):
    query = db.query(Subscriber.id).filter(Subscriber.document == document)
    if exclude_id:
        query = query.filter(Subscriber.id != exclude_id)
    if query.first():
        raise DuplicateDocumentError("A subscriber with this CPF/CNPJ already exists")


def _validate_originator(db: Session, originator_id):
    if originator_id and not get_by_id(db, Originator, originator_id):
        raise HTTPException(status_code=404, detail="Originator not found")


def _queue_activation(db: Session, subscriber: Subscriber, previous_status):
    if (
        subscriber.status == SubscriberStatus.activated
        and previous_status != SubscriberStatus.activated
    ):
        side_effects.enqueue(
            db, SideEffectKind.commission_activation, {"subscriber_id": str(subscriber.id)}
        )
        logger.info("Subscriber %s activated; start commission queued", subscriber.id)


class Subscribers(ListResponseMixin):
    @staticmethod
    def get(db: Session, subscriber_id: str):
        return get_or_404(db, Subscriber, subscriber_id, detail="Subscriber not found")

    @staticmethod
    def list(
        db: Session,
        status: str | None = None,
        originator_id: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ):
        query = db.query(Subscriber)
        if status:
            query = query.filter(
                Subscriber.status == validate_enum(status, SubscriberStatus, "status")
            )
        if originator_id:
            query = query.filter(Subscriber.originator_id == coerce_uuid(originator_id))
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Subscriber.created_at, "name": Subscriber.name},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def create(db: Session, payload: SubscriberCreate, *, client: GatewayClient | None = None):
        data = payload.model_dump()
        data["document"] = subscriber_validators.validate_document(data["document"])
        subscriber_validators.validate_phone(data.get("phone"))
        _ensure_unique_document(db, data["document"])
        _validate_originator(db, data.get("originator_id"))

        subscriber = Subscriber(**data)
        db.add(subscriber)
        try:
            db.flush()
            customer_sync.resolve_customer(db, subscriber, client=client)
            _queue_activation(db, subscriber, None)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(subscriber)
        logger.info("Created subscriber %s", subscriber.id)
        return subscriber

    @staticmethod
    def update(
        db: Session,
        subscriber_id: str,
        payload: SubscriberUpdate,
        *,
        client: GatewayClient | None = None,
    ):
        subscriber = Subscribers.get(db, subscriber_id)
        data = payload.model_dump(exclude_unset=True)
        if "document" in data:
            data["document"] = subscriber_validators.validate_document(data["document"])
            _ensure_unique_document(db, data["document"], exclude_id=subscriber.id)
        if "phone" in data:
            subscriber_validators.validate_phone(data["phone"])
        if "originator_id" in data:
            _validate_originator(db, data["originator_id"])

        previous_status = subscriber.status
        changed = {
            key for key, value in data.items() if getattr(subscriber, key) != value
        }
        for key, value in data.items():
            setattr(subscriber, key, value)
        try:
            if changed & GATEWAY_PROFILE_FIELDS or not subscriber.gateway_customer_id:
                customer_sync.resolve_customer(db, subscriber, client=client)
            _queue_activation(db, subscriber, previous_status)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(subscriber)
        return subscriber

    @staticmethod
    def sync_gateway(db: Session, subscriber_id: str, *, client: GatewayClient | None = None):
        """Re-run customer resolution on demand; keeps the known id if the update fails."""
        subscriber = Subscribers.get(db, subscriber_id)
        try:
            customer_id = customer_sync.resolve_customer(
                db, subscriber, client=client, fallback_to_known_id=True
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        return customer_id


subscribers = Subscribers()
