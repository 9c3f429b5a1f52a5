from __future__ import annotations

from pydantic import BaseModel, Field

from app.models.billing import GatewayEnvironment


class IntegrationConfigUpsert(BaseModel):
    environment: GatewayEnvironment | None = None
    endpoint_url: str | None = Field(default=None, max_length=255)
    api_key: str | None = Field(default=None, max_length=255)
    sandbox_endpoint_url: str | None = Field(default=None, max_length=255)
    sandbox_api_key: str | None = Field(default=None, max_length=255)
    webhook_token: str | None = Field(default=None, max_length=255)
    variables: dict | None = None


class GatewayConnectionTestResponse(BaseModel):
    success: bool
    environment: GatewayEnvironment
    message: str
