from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.common import ListResponse
from app.schemas.subscriber import SubscriberCreate, SubscriberRead, SubscriberUpdate
from app.services import subscriber as subscriber_service

router = APIRouter(prefix="/subscribers")


@router.post(
    "",
    response_model=SubscriberRead,
    status_code=status.HTTP_201_CREATED,
    tags=["subscribers"],
)
def create_subscriber(payload: SubscriberCreate, db: Session = Depends(get_db)):
    return subscriber_service.subscribers.create(db, payload)


@router.get("/{subscriber_id}", response_model=SubscriberRead, tags=["subscribers"])
def get_subscriber(subscriber_id: str, db: Session = Depends(get_db)):
    return subscriber_service.subscribers.get(db, subscriber_id)


@router.get("", response_model=ListResponse[SubscriberRead], tags=["subscribers"])
def list_subscribers(
    status: str | None = None,
    originator_id: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return subscriber_service.subscribers.list_response(
        db,
        status=status,
        originator_id=originator_id,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )


@router.patch("/{subscriber_id}", response_model=SubscriberRead, tags=["subscribers"])
def update_subscriber(
    subscriber_id: str, payload: SubscriberUpdate, db: Session = Depends(get_db)
):
    return subscriber_service.subscribers.update(db, subscriber_id, payload)


@router.post("/{subscriber_id}/gateway-sync", tags=["subscribers"])
def sync_subscriber_gateway(subscriber_id: str, db: Session = Depends(get_db)):
    customer_id = subscriber_service.subscribers.sync_gateway(db, subscriber_id)
    return {"success": True, "gateway_customer_id": customer_id}
