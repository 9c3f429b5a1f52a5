"""Non-critical side effects: queued with the billing change, executed later.

``enqueue`` only adds a row to the caller's transaction, so the task exists
if and only if the triggering change commits. ``process_pending`` claims each
task with a conditional UPDATE, so overlapping drains never run it twice, and
then runs it inside its own savepoint: a failing handler rolls back its own
writes and is retried with backoff, never touching the billing state that
queued it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import SIDE_EFFECTS
from app.models.side_effect import SideEffectKind, SideEffectStatus, SideEffectTask
from app.services.common import as_aware, utcnow
from app.services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

Handler = Callable[[Session, dict], object]

_HANDLERS: dict[SideEffectKind, Handler] = {}

BACKOFF_BASE_SECONDS = 30
BACKOFF_MAX_SECONDS = 3600


def register(kind: SideEffectKind):
    def decorator(func: Handler) -> Handler:
        _HANDLERS[kind] = func
        return func

    return decorator


def enqueue(db: Session, kind: SideEffectKind, payload: dict) -> SideEffectTask:
    task = SideEffectTask(
        kind=kind,
        payload=payload,
        status=SideEffectStatus.queued,
        max_attempts=settings.side_effect_max_attempts,
    )
    db.add(task)
    logger.debug("Queued side effect %s: %s", kind.value, payload)
    return task


def backoff_delay(attempts: int) -> timedelta:
    seconds = min(BACKOFF_BASE_SECONDS * (2 ** max(attempts - 1, 0)), BACKOFF_MAX_SECONDS)
    return timedelta(seconds=seconds)


def _load_handlers() -> None:
    # Handlers register themselves on import.
    from app.services.billing import commissions  # noqa: F401
    from app.services import notifications  # noqa: F401


def run_task(db: Session, task: SideEffectTask) -> bool:
    """Execute one task in a savepoint. Returns True when it completed."""
    _load_handlers()
    handler = _HANDLERS.get(task.kind)
    task.attempts = (task.attempts or 0) + 1
    if handler is None:
        task.status = SideEffectStatus.failed
        task.last_error = f"No handler registered for {task.kind.value}"
        SIDE_EFFECTS.labels(kind=task.kind.value, outcome="failed").inc()
        logger.error("No handler registered for side effect %s", task.kind.value)
        return False
    try:
        with db.begin_nested():
            handler(db, dict(task.payload or {}))
    except ConfigurationError as exc:
        task.status = SideEffectStatus.failed
        task.last_error = exc.message
        SIDE_EFFECTS.labels(kind=task.kind.value, outcome="failed").inc()
        logger.error("Side effect %s %s failed permanently: %s", task.kind.value, task.id, exc.message)
        return False
    except Exception as exc:
        task.last_error = str(exc)[:2000]
        if task.attempts >= (task.max_attempts or settings.side_effect_max_attempts):
            task.status = SideEffectStatus.failed
            outcome = "failed"
        else:
            task.status = SideEffectStatus.queued
            task.run_after = utcnow() + backoff_delay(task.attempts)
            outcome = "retry"
        SIDE_EFFECTS.labels(kind=task.kind.value, outcome=outcome).inc()
        logger.exception(
            "Side effect %s %s failed (attempt %s/%s)",
            task.kind.value,
            task.id,
            task.attempts,
            task.max_attempts,
        )
        return False
    task.status = SideEffectStatus.done
    task.completed_at = utcnow()
    task.last_error = None
    SIDE_EFFECTS.labels(kind=task.kind.value, outcome="done").inc()
    return True


def _claimable(now):
    return or_(
        (SideEffectTask.status == SideEffectStatus.queued)
        & or_(SideEffectTask.run_after.is_(None), SideEffectTask.run_after <= now),
        # a claim left behind by a worker that died mid-task
        (SideEffectTask.status == SideEffectStatus.running) & (SideEffectTask.run_after <= now),
    )


def due_tasks(db: Session, batch_size: int, now=None) -> list[SideEffectTask]:
    now = now or utcnow()
    tasks = (
        db.query(SideEffectTask)
        .filter(_claimable(now))
        .order_by(SideEffectTask.created_at.asc())
        .limit(batch_size)
        .all()
    )
    return [t for t in tasks if t.run_after is None or as_aware(t.run_after) <= now]


def claim(db: Session, task_id, now=None) -> bool:
    """Mark a task running and commit. False when another worker got it first.

    The claim is a conditional UPDATE, so two drains racing for the same row
    cannot both see it match.
    """
    now = now or utcnow()
    claimed = (
        db.query(SideEffectTask)
        .filter(SideEffectTask.id == task_id)
        .filter(_claimable(now))
        .update(
            {
                SideEffectTask.status: SideEffectStatus.running,
                SideEffectTask.run_after: now
                + timedelta(seconds=settings.side_effect_claim_timeout_seconds),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


def process_pending(db: Session, batch_size: int | None = None) -> dict:
    """Claim and run every due task once. Returns outcome counts."""
    batch_size = batch_size or settings.side_effect_batch_size
    results = {"processed": 0, "done": 0, "retry": 0, "failed": 0}
    task_ids = [task.id for task in due_tasks(db, batch_size)]
    for task_id in task_ids:
        if not claim(db, task_id):
            logger.debug("Side effect %s already claimed elsewhere", task_id)
            continue
        task = db.get(SideEffectTask, task_id)
        results["processed"] += 1
        if run_task(db, task):
            results["done"] += 1
        elif task.status == SideEffectStatus.failed:
            results["failed"] += 1
        else:
            results["retry"] += 1
        db.commit()
    return results
