import logging
import os
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def get_celery_config() -> dict:
    broker = settings.celery_broker_url or _env_value("REDIS_URL") or "redis://localhost:6379/0"
    backend = (
        settings.celery_result_backend
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": settings.celery_timezone or "UTC",
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if _env_bool("SIDE_EFFECT_DRAIN_ENABLED", True):
        interval_seconds = max(settings.side_effect_drain_interval_seconds, 10)
        schedule["side_effect_drain"] = {
            "task": "app.tasks.billing.drain_side_effects",
            "schedule": timedelta(seconds=interval_seconds),
        }
    else:
        logger.info("Side-effect drain is disabled; queued tasks will not run")
    return schedule
