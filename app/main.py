import logging

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.billing import router as billing_router
from app.api.subscribers import router as subscriber_router
from app.api.webhooks import router as webhooks_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Energy Billing Gateway API")
register_error_handlers(app)
app.add_middleware(ObservabilityMiddleware)

app.include_router(webhooks_router)
app.include_router(billing_router)
app.include_router(subscriber_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
