"""Tests for the payment gateway client and credential resolution."""

import pytest

from app.models.billing import GatewayEnvironment
from app.schemas.integration import IntegrationConfigUpsert
from app.services.exceptions import ConfigurationError, GatewayError
from app.services.gateway_client import (
    GatewayClient,
    GatewayResponse,
    error_code,
    error_description,
)
from app.services.integration_config import CredentialCache, IntegrationConfigs
from tests.factories import SANDBOX_BASE_URL, VALID_CPF


class TestGatewayResponse:
    def test_ok_requires_2xx_and_no_errors(self):
        assert GatewayResponse(200, {"id": "pay_1"}).ok
        assert not GatewayResponse(404, {"id": "pay_1"}).ok
        assert not GatewayResponse(
            200, {"errors": [{"code": "invalid_value", "description": "bad"}]}
        ).ok

    def test_error_helpers(self):
        response = GatewayResponse(
            400, {"errors": [{"code": "invalid_cpfCnpj", "description": "CPF inválido"}]}
        )
        assert error_code(response) == "invalid_cpfCnpj"
        assert error_description(response) == "CPF inválido"
        assert error_code(GatewayResponse(500, None)) is None
        assert error_description(GatewayResponse(500, {"message": "boom"})) == "boom"


class TestCredentials:
    def test_resolve_active_environment(self, db_session, integration_config):
        creds = IntegrationConfigs.resolve(db_session, integration_config.service_name)
        assert creds.environment == GatewayEnvironment.production
        assert creds.api_key == "prod-key"
        assert not creds.is_sandbox

    def test_resolve_explicit_sandbox(self, db_session, integration_config):
        creds = IntegrationConfigs.resolve(
            db_session, integration_config.service_name, "sandbox"
        )
        assert creds.base_url == SANDBOX_BASE_URL
        assert creds.api_key == "sandbox-key"
        assert creds.is_sandbox

    def test_missing_row_is_configuration_error(self, db_session):
        with pytest.raises(ConfigurationError):
            IntegrationConfigs.resolve(db_session, "does_not_exist")

    def test_missing_key_for_environment(self, db_session, integration_config):
        integration_config.sandbox_api_key = None
        db_session.commit()
        with pytest.raises(ConfigurationError, match="sandbox"):
            IntegrationConfigs.resolve(db_session, integration_config.service_name, "sandbox")

    def test_upsert_switches_environment(self, db_session, integration_config):
        IntegrationConfigs.upsert(
            db_session,
            integration_config.service_name,
            IntegrationConfigUpsert(environment=GatewayEnvironment.sandbox),
        )
        assert (
            IntegrationConfigs.active_environment(db_session, integration_config.service_name)
            == GatewayEnvironment.sandbox
        )

    def test_credential_cache_memoizes_per_environment(self, db_session, integration_config):
        cache = CredentialCache(db_session, integration_config.service_name)
        first = cache.get()
        integration_config.api_key = "rotated"
        db_session.commit()
        assert cache.get() is first
        assert CredentialCache(db_session, integration_config.service_name).get().api_key == "rotated"


class TestGatewayClient:
    def test_sends_api_key_header_for_environment(
        self, db_session, integration_config, fake_gateway
    ):
        client = GatewayClient(db_session, http_client=fake_gateway.client())
        client.test_connection(GatewayEnvironment.sandbox)
        request = fake_gateway.requests[-1]
        assert request.url.host == "sandbox.gateway.test"
        assert request.headers["access_token"] == "sandbox-key"

    def test_find_customer_returns_none_when_absent(self, gateway_client):
        assert gateway_client.find_customer_by_document(VALID_CPF) is None

    def test_find_customer_returns_first_match(self, gateway_client, fake_gateway):
        customer = fake_gateway.add_customer(VALID_CPF, name="João")
        assert gateway_client.find_customer_by_document(VALID_CPF)["id"] == customer["id"]

    def test_error_payload_raises_gateway_error(self, gateway_client, fake_gateway):
        fake_gateway.fail(
            "POST", "/payments", code="invalid_dueDate", description="Data de vencimento inválida"
        )
        with pytest.raises(GatewayError) as exc_info:
            gateway_client.create_charge({"value": 10})
        err = exc_info.value
        assert err.upstream_status == 400
        assert err.upstream_code == "invalid_dueDate"
        assert err.description == "Data de vencimento inválida"
        assert not err.timed_out

    def test_timeout_marks_outcome_unknown(self, gateway_client, fake_gateway):
        fake_gateway.timeout("POST", "/payments")
        with pytest.raises(GatewayError) as exc_info:
            gateway_client.create_charge({"value": 10})
        assert exc_info.value.timed_out

    def test_delete_returns_raw_response(self, gateway_client):
        response = gateway_client.delete_charge("pay_missing")
        assert response.status == 404
        assert error_code(response) == "not_found"

    def test_unconfigured_gateway(self, db_session, fake_gateway):
        client = GatewayClient(db_session, http_client=fake_gateway.client())
        with pytest.raises(ConfigurationError):
            client.create_charge({"value": 10})
        assert fake_gateway.requests == []
