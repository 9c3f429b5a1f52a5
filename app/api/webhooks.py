from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.services import billing as billing_service

router = APIRouter(prefix="/webhooks")


@router.post("/payment-events", tags=["webhooks"])
async def receive_payment_event(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    token = request.headers.get(settings.gateway_webhook_token_header)
    result = billing_service.webhooks.process(db, body, token)
    return JSONResponse(status_code=result.status_code, content=result.content)
