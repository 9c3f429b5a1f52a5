"""Payment gateway (Asaas-style REST) client.

One client per request: credentials are resolved lazily through a
``CredentialCache`` so the admin can flip environments or rotate keys
without a restart.
"""

from __future__ import annotations

import logging
import time
from typing import Any, NamedTuple

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import GATEWAY_LATENCY, GATEWAY_REQUESTS
from app.models.billing import GatewayEnvironment
from app.services.exceptions import GatewayError
from app.services.integration_config import CredentialCache

logger = logging.getLogger(__name__)


class GatewayResponse(NamedTuple):
    status: int
    data: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300 and not _error_entries(self.data)


def _error_entries(data: Any) -> list[dict]:
    if not isinstance(data, dict):
        return []
    errors = data.get("errors")
    if isinstance(errors, list):
        return [e for e in errors if isinstance(e, dict)]
    return []


def error_code(response: GatewayResponse) -> str | None:
    """First ``errors[].code`` of an error payload, if any."""
    entries = _error_entries(response.data)
    if entries:
        return entries[0].get("code")
    return None


def error_description(response: GatewayResponse) -> str | None:
    entries = _error_entries(response.data)
    if entries:
        return entries[0].get("description")
    if isinstance(response.data, dict):
        return response.data.get("message")
    return None


class GatewayClient:
    def __init__(
        self,
        db: Session,
        *,
        service_name: str | None = None,
        http_client: httpx.Client | None = None,
        timeout: float | None = None,
    ):
        self.db = db
        self.credentials = CredentialCache(db, service_name or settings.gateway_service_name)
        self._http = http_client
        self._timeout = timeout if timeout is not None else settings.gateway_timeout_seconds

    def active_environment(self) -> GatewayEnvironment:
        return self.credentials.active_environment()

    def request(
        self,
        environment: GatewayEnvironment | str | None,
        method: str,
        path: str,
        body: dict | None = None,
        params: dict | None = None,
    ) -> GatewayResponse:
        """Send one request; never retries.

        Raises:
            ConfigurationError: no URL/key for the environment.
            GatewayError: timeout or transport failure (outcome unknown).
        """
        creds = self.credentials.get(environment)
        url = f"{creds.base_url}/{path.lstrip('/')}"
        headers = {
            settings.gateway_api_key_header: creds.api_key,
            "Content-Type": "application/json",
        }
        method = method.upper()
        started = time.monotonic()
        try:
            if self._http is not None:
                resp = self._http.request(
                    method, url, json=body, params=params, headers=headers, timeout=self._timeout
                )
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    resp = client.request(method, url, json=body, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            GATEWAY_REQUESTS.labels(method=method, outcome="timeout").inc()
            logger.warning("Gateway %s %s timed out after %ss", method, path, self._timeout)
            raise GatewayError(
                f"Gateway request timed out: {method} {path}", timed_out=True
            ) from exc
        except httpx.HTTPError as exc:
            GATEWAY_REQUESTS.labels(method=method, outcome="transport_error").inc()
            logger.warning("Gateway %s %s failed: %s", method, path, exc)
            raise GatewayError(
                f"Gateway request failed: {method} {path}", timed_out=True
            ) from exc
        finally:
            GATEWAY_LATENCY.labels(method=method).observe(time.monotonic() - started)

        try:
            data = resp.json() if resp.content else None
        except ValueError:
            data = {"message": resp.text}
        response = GatewayResponse(resp.status_code, data)
        GATEWAY_REQUESTS.labels(method=method, outcome="ok" if response.ok else "error").inc()
        logger.info(
            "Gateway %s %s -> %s (%s)", method, path, resp.status_code, creds.environment.value
        )
        return response

    def _checked(
        self,
        environment,
        method: str,
        path: str,
        body: dict | None = None,
        params: dict | None = None,
        action: str = "request",
    ) -> dict:
        response = self.request(environment, method, path, body=body, params=params)
        if not response.ok:
            description = error_description(response)
            raise GatewayError(
                f"Gateway {action} failed: {description or f'HTTP {response.status}'}",
                upstream_status=response.status,
                upstream_code=error_code(response),
                description=description,
            )
        return response.data or {}

    def find_customer_by_document(self, document: str, environment=None) -> dict | None:
        data = self._checked(
            environment, "GET", "/customers", params={"cpfCnpj": document},
            action="customer search",
        )
        matches = data.get("data") or []
        return matches[0] if matches else None

    def create_customer(self, profile: dict, environment=None) -> dict:
        return self._checked(environment, "POST", "/customers", body=profile, action="customer create")

    def update_customer(self, customer_id: str, profile: dict, environment=None) -> dict:
        return self._checked(
            environment, "POST", f"/customers/{customer_id}", body=profile,
            action="customer update",
        )

    def create_charge(self, payload: dict, environment=None) -> dict:
        return self._checked(environment, "POST", "/payments", body=payload, action="charge create")

    def find_charges(self, *, external_reference: str, environment=None) -> list[dict]:
        data = self._checked(
            environment, "GET", "/payments",
            params={"externalReference": external_reference},
            action="charge search",
        )
        return list(data.get("data") or [])

    def update_charge(self, charge_id: str, payload: dict, environment=None) -> dict:
        return self._checked(
            environment, "POST", f"/payments/{charge_id}", body=payload, action="charge update"
        )

    def delete_charge(self, charge_id: str, environment=None) -> GatewayResponse:
        return self.request(environment, "DELETE", f"/payments/{charge_id}")

    def create_transfer(self, payload: dict, environment=None) -> dict:
        return self._checked(environment, "POST", "/transfers", body=payload, action="transfer")

    def test_connection(self, environment=None) -> GatewayResponse:
        return self.request(environment, "GET", "/customers", params={"limit": 1})
