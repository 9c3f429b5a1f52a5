"""Tests for the side-effect outbox and WhatsApp notifications."""

from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest

from app.models.billing import LedgerEntry
from app.models.side_effect import SideEffectKind, SideEffectStatus, SideEffectTask
from app.services import notifications, side_effects
from app.services.common import utcnow
from app.services.exceptions import ConfigurationError


def _enqueue(db_session, kind, payload):
    task = side_effects.enqueue(db_session, kind, payload)
    db_session.commit()
    return task


class TestBackoff:
    def test_doubles_and_caps(self):
        assert side_effects.backoff_delay(1) == timedelta(seconds=30)
        assert side_effects.backoff_delay(2) == timedelta(seconds=60)
        assert side_effects.backoff_delay(4) == timedelta(seconds=240)
        assert side_effects.backoff_delay(20) == timedelta(seconds=3600)


class TestProcessPending:
    def test_runs_ledger_task(self, db_session, invoice):
        task = _enqueue(
            db_session,
            SideEffectKind.ledger_payment,
            {"reference_type": "invoice", "reference_id": str(invoice.id)},
        )
        results = side_effects.process_pending(db_session)
        assert results == {"processed": 1, "done": 1, "retry": 0, "failed": 0}
        db_session.refresh(task)
        assert task.status == SideEffectStatus.done
        assert task.attempts == 1
        assert task.completed_at is not None
        assert db_session.query(LedgerEntry).count() == 1

    def test_failure_schedules_retry_and_rolls_back_its_writes(self, db_session, subscriber):
        task = _enqueue(
            db_session, SideEffectKind.commission_activation, {"subscriber_id": str(subscriber.id)}
        )
        with patch(
            "app.services.billing.commissions.LedgerEntries.post",
            side_effect=RuntimeError("ledger down"),
        ):
            results = side_effects.process_pending(db_session)
        assert results["retry"] == 1
        db_session.refresh(task)
        assert task.status == SideEffectStatus.queued
        assert task.attempts == 1
        assert "ledger down" in task.last_error
        assert task.run_after is not None
        # the commission row flushed before the failure is gone with the savepoint
        from app.models.billing import Commission

        assert db_session.query(Commission).count() == 0

    def test_retry_waits_for_backoff(self, db_session, subscriber):
        task = _enqueue(
            db_session, SideEffectKind.commission_activation, {"subscriber_id": str(subscriber.id)}
        )
        task.run_after = utcnow() + timedelta(minutes=5)
        db_session.commit()
        assert side_effects.process_pending(db_session)["processed"] == 0

    def test_exhausted_attempts_fail(self, db_session, subscriber):
        task = _enqueue(
            db_session, SideEffectKind.commission_activation, {"subscriber_id": str(subscriber.id)}
        )
        task.max_attempts = 1
        db_session.commit()
        with patch(
            "app.services.billing.commissions.LedgerEntries.post",
            side_effect=RuntimeError("ledger down"),
        ):
            results = side_effects.process_pending(db_session)
        assert results["failed"] == 1
        db_session.refresh(task)
        assert task.status == SideEffectStatus.failed

    def test_configuration_error_fails_immediately(self, db_session):
        task = _enqueue(
            db_session,
            SideEffectKind.notification,
            {"phone": "11912345678", "message": "Olá"},
        )
        results = side_effects.process_pending(db_session)
        assert results["failed"] == 1
        db_session.refresh(task)
        assert task.status == SideEffectStatus.failed
        assert task.attempts == 1

    def test_claimed_task_is_not_run_again(self, db_session, invoice):
        task = _enqueue(
            db_session,
            SideEffectKind.ledger_payment,
            {"reference_type": "invoice", "reference_id": str(invoice.id)},
        )
        assert side_effects.claim(db_session, task.id) is True
        assert side_effects.claim(db_session, task.id) is False
        db_session.refresh(task)
        assert task.status == SideEffectStatus.running

        assert side_effects.process_pending(db_session)["processed"] == 0
        assert db_session.query(LedgerEntry).count() == 0

    def test_task_claimed_by_another_drain_is_skipped(self, db_session, invoice):
        first = _enqueue(
            db_session,
            SideEffectKind.ledger_payment,
            {"reference_type": "invoice", "reference_id": str(invoice.id)},
        )
        second = _enqueue(db_session, SideEffectKind.notification, {"message": "Olá"})
        rival_id = second.id
        original_claim = side_effects.claim

        def claim_after_rival(db, task_id, now=None):
            if task_id == rival_id:
                # another worker got there between our select and our claim
                original_claim(db, task_id, now)
            return original_claim(db, task_id, now)

        with patch("app.services.side_effects.claim", side_effect=claim_after_rival):
            results = side_effects.process_pending(db_session)
        assert results["processed"] == 1
        db_session.refresh(first)
        db_session.refresh(second)
        assert first.status == SideEffectStatus.done
        assert second.status == SideEffectStatus.running
        assert second.attempts == 0

    def test_expired_claim_is_picked_up(self, db_session, invoice):
        task = _enqueue(
            db_session,
            SideEffectKind.ledger_payment,
            {"reference_type": "invoice", "reference_id": str(invoice.id)},
        )
        task.status = SideEffectStatus.running
        task.run_after = utcnow() - timedelta(minutes=1)
        db_session.commit()
        assert side_effects.process_pending(db_session)["done"] == 1
        db_session.refresh(task)
        assert task.status == SideEffectStatus.done

    def test_failed_task_does_not_touch_billing_state(self, db_session, invoice):
        good = _enqueue(
            db_session,
            SideEffectKind.ledger_payment,
            {"reference_type": "invoice", "reference_id": str(invoice.id)},
        )
        bad = _enqueue(
            db_session,
            SideEffectKind.ledger_payment,
            {"reference_type": "commission", "reference_id": str(invoice.id)},
        )
        results = side_effects.process_pending(db_session)
        assert results["done"] == 1
        assert results["retry"] == 1
        db_session.refresh(good)
        db_session.refresh(bad)
        assert good.status == SideEffectStatus.done
        assert bad.status == SideEffectStatus.queued
        assert db_session.query(LedgerEntry).count() == 1


class TestNotifications:
    def test_normalize_phone(self):
        assert notifications.normalize_phone("(11) 91234-5678") == "5511912345678"
        assert notifications.normalize_phone("1132345678") == "551132345678"
        assert notifications.normalize_phone("5511912345678") == "5511912345678"

    def test_format_brl(self):
        assert notifications.format_brl(1234.5) == "R$ 1.234,50"
        assert notifications.format_brl(0) == "R$ 0,00"

    def test_send_text_payload(self, db_session, messaging_config, fake_messaging):
        notifications.send_text(
            db_session, "11912345678", "Pagamento recebido", http_client=fake_messaging
        )
        sent = fake_messaging.sent[0]
        assert sent["url"] == "https://whatsapp.test/message/sendText/billing"
        assert sent["headers"]["apikey"] == "evo-key"
        assert sent["json"] == {
            "number": "5511912345678",
            "options": {"delay": 1200, "presence": "composing", "linkPreview": False},
            "textMessage": {"text": "Pagamento recebido"},
        }

    def test_missing_instance_name(self, db_session, messaging_config, fake_messaging):
        messaging_config.variables = {}
        db_session.commit()
        with pytest.raises(ConfigurationError):
            notifications.send_text(db_session, "11912345678", "Oi", http_client=fake_messaging)
        assert fake_messaging.sent == []

    def test_notification_task_delivers(self, db_session, messaging_config, fake_messaging):
        task = _enqueue(
            db_session,
            SideEffectKind.notification,
            {"phone": "11912345678", "message": "Olá"},
        )
        with patch("app.services.notifications.httpx.post", fake_messaging.post):
            results = side_effects.process_pending(db_session)
        assert results["done"] == 1
        assert len(fake_messaging.sent) == 1
        db_session.refresh(task)
        assert task.status == SideEffectStatus.done

    def test_transport_error_is_retried(self, db_session, messaging_config, fake_messaging):
        fake_messaging.error = httpx.ConnectError("connection refused")
        _enqueue(db_session, SideEffectKind.notification, {"phone": "11912345678", "message": "Olá"})
        with patch("app.services.notifications.httpx.post", fake_messaging.post):
            results = side_effects.process_pending(db_session)
        assert results["retry"] == 1

    def test_http_error_is_retried(self, db_session, messaging_config):
        from tests.mocks import FakeMessagingAPI

        failing = FakeMessagingAPI(status_code=500)
        _enqueue(db_session, SideEffectKind.notification, {"phone": "11912345678", "message": "Olá"})
        with patch("app.services.notifications.httpx.post", failing.post):
            results = side_effects.process_pending(db_session)
        assert results["retry"] == 1

    def test_notification_without_phone_is_skipped(self, db_session):
        _enqueue(db_session, SideEffectKind.notification, {"message": "Olá"})
        assert side_effects.process_pending(db_session)["done"] == 1

    def test_queued_tasks_only_exist_with_their_trigger(self, db_session):
        side_effects.enqueue(db_session, SideEffectKind.notification, {"message": "x"})
        db_session.rollback()
        assert db_session.query(SideEffectTask).count() == 0
