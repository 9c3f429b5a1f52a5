"""Map a local subscriber to exactly one gateway customer.

Search-before-create keeps resolution idempotent: retrying after a timeout
finds the customer a previous attempt may already have created.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.models.subscriber import Subscriber
from app.services.billing import history
from app.services.common import digits_only
from app.services.exceptions import GatewayError, ValidationError
from app.services.gateway_client import GatewayClient

logger = logging.getLogger(__name__)


def customer_profile(subscriber: Subscriber, document: str) -> dict:
    profile = {
        "name": subscriber.name,
        "cpfCnpj": document,
        "email": subscriber.email or None,
        "phone": digits_only(subscriber.phone) or None,
        "mobilePhone": digits_only(subscriber.phone) or None,
        "address": subscriber.street or None,
        "addressNumber": subscriber.address_number or None,
        "province": subscriber.district or None,
        "postalCode": digits_only(subscriber.postal_code) or None,
        "externalReference": str(subscriber.id),
    }
    return {key: value for key, value in profile.items() if value is not None}


def resolve_customer(
    db: Session,
    subscriber: Subscriber,
    *,
    client: GatewayClient | None = None,
    fallback_to_known_id: bool = False,
) -> str:
    """Return the gateway customer id for ``subscriber``, creating it if needed.

    The id is written to the subscriber (flushed, not committed) when it
    changed. ``fallback_to_known_id`` only softens *update* failures on a
    subscriber that already has an id; create failures always raise.
    """
    document = digits_only(subscriber.document)
    if not document:
        raise ValidationError("Subscriber has no CPF/CNPJ to register with the gateway")
    client = client or GatewayClient(db)
    profile = customer_profile(subscriber, document)

    existing = client.find_customer_by_document(document)
    if existing and existing.get("id"):
        customer_id = existing["id"]
        try:
            client.update_customer(customer_id, profile)
        except GatewayError as exc:
            if not (fallback_to_known_id and subscriber.gateway_customer_id):
                raise
            logger.warning(
                "Gateway customer update failed for subscriber %s, keeping known id %s: %s",
                subscriber.id,
                subscriber.gateway_customer_id,
                exc.message,
            )
            return subscriber.gateway_customer_id
        action = "customer_updated"
    else:
        created = client.create_customer(profile)
        customer_id = created.get("id")
        if not customer_id:
            raise GatewayError("Gateway customer create returned no id")
        action = "customer_created"

    if subscriber.gateway_customer_id != customer_id:
        previous = subscriber.gateway_customer_id
        subscriber.gateway_customer_id = customer_id
        history.record(
            db,
            "subscriber",
            subscriber.id,
            action,
            {"gateway_customer_id": customer_id, "previous": previous},
        )
        db.flush()
        logger.info("Subscriber %s linked to gateway customer %s", subscriber.id, customer_id)
    return customer_id
