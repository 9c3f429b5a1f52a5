"""Tests for subscriber validation, save path and gateway customer sync."""

import pytest
from fastapi import HTTPException

from app.models.billing import EntityHistory
from app.models.side_effect import SideEffectKind, SideEffectTask
from app.models.subscriber import Subscriber, SubscriberStatus
from app.schemas.subscriber import SubscriberCreate, SubscriberUpdate
from app.services import customer_sync
from app.services.exceptions import DuplicateDocumentError, GatewayError, ValidationError
from app.services.subscriber import subscribers
from app.validators import subscriber as subscriber_validators
from tests.factories import OTHER_CPF, THIRD_CPF, VALID_CNPJ, VALID_CPF


def _activation_tasks(db_session):
    return (
        db_session.query(SideEffectTask)
        .filter(SideEffectTask.kind == SideEffectKind.commission_activation)
        .all()
    )


class TestDocumentValidation:
    @pytest.mark.parametrize("document", [VALID_CPF, "529.982.247-25", OTHER_CPF, THIRD_CPF])
    def test_valid_cpf(self, document):
        assert subscriber_validators.is_valid_cpf(document)

    @pytest.mark.parametrize("document", ["52998224724", "11111111111", "123", ""])
    def test_invalid_cpf(self, document):
        assert not subscriber_validators.is_valid_cpf(document)

    def test_valid_cnpj(self):
        assert subscriber_validators.is_valid_cnpj("11.222.333/0001-81")
        assert not subscriber_validators.is_valid_cnpj("11222333000182")
        assert not subscriber_validators.is_valid_cnpj("00000000000000")

    def test_validate_document_returns_digits(self):
        assert subscriber_validators.validate_document("529.982.247-25") == VALID_CPF
        assert subscriber_validators.validate_document(VALID_CNPJ) == VALID_CNPJ
        with pytest.raises(ValidationError, match="Invalid CPF/CNPJ"):
            subscriber_validators.validate_document("52998224700")

    def test_validate_phone(self):
        subscriber_validators.validate_phone(None)
        subscriber_validators.validate_phone("(11) 91234-5678")
        with pytest.raises(ValidationError):
            subscriber_validators.validate_phone("1191234567")


class TestCustomerSync:
    def test_profile_maps_address_and_drops_empty(self, subscriber):
        profile = customer_sync.customer_profile(subscriber, VALID_CPF)
        assert profile["cpfCnpj"] == VALID_CPF
        assert profile["mobilePhone"] == "11912345678"
        assert profile["postalCode"] == "01310100"
        assert profile["province"] == "Bela Vista"
        assert profile["externalReference"] == str(subscriber.id)

        subscriber.email = None
        assert "email" not in customer_sync.customer_profile(subscriber, VALID_CPF)

    def test_creates_customer_when_absent(self, db_session, subscriber, gateway_client, fake_gateway):
        customer_id = customer_sync.resolve_customer(db_session, subscriber, client=gateway_client)
        assert subscriber.gateway_customer_id == customer_id
        assert len(fake_gateway.calls("POST", "/customers")) == 1
        history = db_session.query(EntityHistory).filter_by(entity_id=subscriber.id).all()
        assert [h.action for h in history] == ["customer_created"]

    def test_resolution_is_idempotent(self, db_session, subscriber, gateway_client, fake_gateway):
        first = customer_sync.resolve_customer(db_session, subscriber, client=gateway_client)
        second = customer_sync.resolve_customer(db_session, subscriber, client=gateway_client)
        assert first == second
        assert len(fake_gateway.customers) == 1
        assert len(fake_gateway.calls("POST", "/customers")) == 1
        assert len(fake_gateway.calls("POST", f"/customers/{first}")) == 1

    def test_adopts_existing_customer_by_document(
        self, db_session, subscriber, gateway_client, fake_gateway
    ):
        existing = fake_gateway.add_customer(VALID_CPF, name="Nome antigo")
        customer_id = customer_sync.resolve_customer(db_session, subscriber, client=gateway_client)
        assert customer_id == existing["id"]
        assert fake_gateway.customers[existing["id"]]["name"] == subscriber.name
        assert fake_gateway.calls("POST", "/customers") == []

    def test_update_failure_falls_back_to_known_id(
        self, db_session, subscriber, gateway_client, fake_gateway
    ):
        existing = fake_gateway.add_customer(VALID_CPF)
        subscriber.gateway_customer_id = existing["id"]
        fake_gateway.fail("POST", f"/customers/{existing['id']}")
        customer_id = customer_sync.resolve_customer(
            db_session, subscriber, client=gateway_client, fallback_to_known_id=True
        )
        assert customer_id == existing["id"]

    def test_update_failure_without_fallback_raises(
        self, db_session, subscriber, gateway_client, fake_gateway
    ):
        existing = fake_gateway.add_customer(VALID_CPF)
        fake_gateway.fail("POST", f"/customers/{existing['id']}")
        with pytest.raises(GatewayError):
            customer_sync.resolve_customer(
                db_session, subscriber, client=gateway_client, fallback_to_known_id=True
            )


class TestSubscriberSave:
    def _payload(self, **overrides):
        data = {
            "name": "Maria Cliente",
            "document": "111.444.777-35",
            "email": "maria@example.com",
            "phone": "(21) 98765-4321",
        }
        data.update(overrides)
        return SubscriberCreate(**data)

    def test_create_stores_digits_and_links_customer(self, db_session, gateway_client):
        created = subscribers.create(db_session, self._payload(), client=gateway_client)
        assert created.document == OTHER_CPF
        assert created.gateway_customer_id
        assert created.status == SubscriberStatus.lead

    def test_duplicate_document_rejected(self, db_session, subscriber, gateway_client, fake_gateway):
        with pytest.raises(DuplicateDocumentError):
            subscribers.create(
                db_session, self._payload(document=VALID_CPF), client=gateway_client
            )
        assert fake_gateway.requests == []

    def test_invalid_document_makes_no_network_call(self, db_session, gateway_client, fake_gateway):
        with pytest.raises(ValidationError):
            subscribers.create(
                db_session, self._payload(document="12345678900"), client=gateway_client
            )
        assert fake_gateway.requests == []

    def test_unknown_originator(self, db_session, gateway_client):
        with pytest.raises(HTTPException) as exc_info:
            subscribers.create(
                db_session,
                self._payload(originator_id="6f1c1d8e-4f39-4a55-9f8e-1a2b3c4d5e6f"),
                client=gateway_client,
            )
        assert exc_info.value.status_code == 404

    def test_gateway_failure_aborts_save(self, db_session, gateway_client, fake_gateway):
        fake_gateway.fail("POST", "/customers", description="CPF inválido")
        with pytest.raises(GatewayError):
            subscribers.create(db_session, self._payload(), client=gateway_client)
        assert db_session.query(Subscriber).filter_by(document=OTHER_CPF).count() == 0

    def test_create_active_queues_start_commission(
        self, db_session, originator, gateway_client
    ):
        created = subscribers.create(
            db_session,
            self._payload(status=SubscriberStatus.activated, originator_id=originator.id),
            client=gateway_client,
        )
        tasks = _activation_tasks(db_session)
        assert len(tasks) == 1
        assert tasks[0].payload == {"subscriber_id": str(created.id)}

    def test_activation_transition_queues_once(self, db_session, subscriber, gateway_client):
        subscribers.update(
            db_session,
            str(subscriber.id),
            SubscriberUpdate(status=SubscriberStatus.activated),
            client=gateway_client,
        )
        subscribers.update(
            db_session,
            str(subscriber.id),
            SubscriberUpdate(status=SubscriberStatus.activated, notes="renewed"),
            client=gateway_client,
        )
        assert len(_activation_tasks(db_session)) == 1

    def test_non_profile_update_skips_gateway_when_linked(
        self, db_session, subscriber, gateway_client, fake_gateway
    ):
        subscriber.gateway_customer_id = fake_gateway.add_customer(VALID_CPF)["id"]
        db_session.commit()
        subscribers.update(
            db_session, str(subscriber.id), SubscriberUpdate(notes="ligar amanhã"),
            client=gateway_client,
        )
        assert fake_gateway.requests == []

    def test_profile_update_resyncs_customer(
        self, db_session, subscriber, gateway_client, fake_gateway
    ):
        customer = fake_gateway.add_customer(VALID_CPF)
        subscriber.gateway_customer_id = customer["id"]
        db_session.commit()
        subscribers.update(
            db_session, str(subscriber.id), SubscriberUpdate(email="novo@example.com"),
            client=gateway_client,
        )
        assert fake_gateway.customers[customer["id"]]["email"] == "novo@example.com"

    def test_list_filters_by_status(self, db_session, subscriber):
        assert subscribers.list(db_session, status="lead") == [subscriber]
        assert subscribers.list(db_session, status="ativo") == []
