import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services import side_effects as side_effects_service
from app.services.subscriber import subscribers as subscriber_service

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.billing.drain_side_effects")
def drain_side_effects(batch_size: int | None = None):
    started = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        results = side_effects_service.process_pending(session, batch_size)
        if results["processed"]:
            logger.info("Side-effect drain: %s", results)
        return results
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("drain_side_effects", status, time.monotonic() - started)


@celery_app.task(name="app.tasks.billing.sync_subscriber_customer")
def sync_subscriber_customer(subscriber_id: str):
    session = SessionLocal()
    try:
        return subscriber_service.sync_gateway(session, subscriber_id)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
