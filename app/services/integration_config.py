"""Credential resolution for external integrations.

All environment branching (production vs sandbox) happens here; callers ask
for an environment and get back a ready ``GatewayCredentials`` pair.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.models.billing import GatewayEnvironment
from app.models.integration import IntegrationConfig
from app.schemas.integration import IntegrationConfigUpsert
from app.services.common import validate_enum
from app.services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayCredentials:
    base_url: str
    api_key: str
    environment: GatewayEnvironment

    @property
    def is_sandbox(self) -> bool:
        return self.environment == GatewayEnvironment.sandbox


def _coerce_environment(value) -> GatewayEnvironment | None:
    if value is None or isinstance(value, GatewayEnvironment):
        return value
    return validate_enum(value, GatewayEnvironment, "environment")


class IntegrationConfigs:
    @staticmethod
    def get(db: Session, service_name: str) -> IntegrationConfig | None:
        return (
            db.query(IntegrationConfig)
            .filter(IntegrationConfig.service_name == service_name)
            .first()
        )

    @staticmethod
    def upsert(db: Session, service_name: str, payload: IntegrationConfigUpsert):
        config = IntegrationConfigs.get(db, service_name)
        if not config:
            config = IntegrationConfig(service_name=service_name)
            db.add(config)
        for key, value in payload.model_dump(exclude_unset=True).items():
            setattr(config, key, value)
        db.commit()
        db.refresh(config)
        logger.info(
            "Integration config %s saved (environment=%s)",
            service_name,
            config.environment.value if config.environment else None,
        )
        return config

    @staticmethod
    def active_environment(db: Session, service_name: str) -> GatewayEnvironment:
        config = IntegrationConfigs.get(db, service_name)
        if not config:
            raise ConfigurationError(f"Integration '{service_name}' is not configured")
        return config.environment or GatewayEnvironment.production

    @staticmethod
    def resolve(
        db: Session,
        service_name: str,
        environment: GatewayEnvironment | str | None = None,
    ) -> GatewayCredentials:
        config = IntegrationConfigs.get(db, service_name)
        if not config:
            raise ConfigurationError(f"Integration '{service_name}' is not configured")
        env = _coerce_environment(environment) or config.environment or GatewayEnvironment.production
        if env == GatewayEnvironment.sandbox:
            base_url, api_key = config.sandbox_endpoint_url, config.sandbox_api_key
        else:
            base_url, api_key = config.endpoint_url, config.api_key
        if not base_url or not api_key:
            raise ConfigurationError(
                f"Integration '{service_name}' has no endpoint URL or API key for the {env.value} environment"
            )
        return GatewayCredentials(
            base_url=base_url.rstrip("/"), api_key=api_key, environment=env
        )


class CredentialCache:
    """Per-request memo of resolved credentials, keyed by environment.

    Build one per client; never share across requests so rotated keys are
    picked up without a restart.
    """

    def __init__(self, db: Session, service_name: str):
        self.db = db
        self.service_name = service_name
        self._active: GatewayEnvironment | None = None
        self._resolved: dict[GatewayEnvironment, GatewayCredentials] = {}

    def active_environment(self) -> GatewayEnvironment:
        if self._active is None:
            self._active = IntegrationConfigs.active_environment(self.db, self.service_name)
        return self._active

    def get(self, environment: GatewayEnvironment | str | None = None) -> GatewayCredentials:
        env = _coerce_environment(environment) or self.active_environment()
        if env not in self._resolved:
            self._resolved[env] = IntegrationConfigs.resolve(self.db, self.service_name, env)
        return self._resolved[env]


integration_configs = IntegrationConfigs()
