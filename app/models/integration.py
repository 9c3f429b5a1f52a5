import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Enum, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.billing import GatewayEnvironment


class IntegrationConfig(Base):
    """Credentials for one external service, one row per service name.

    Each environment carries its own base URL and key; ``environment``
    selects which pair is live. Admins may rotate these at any time, so
    readers must not cache a row beyond a single request.
    """

    __tablename__ = "integrations_config"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    service_name: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    environment: Mapped[GatewayEnvironment] = mapped_column(
        Enum(GatewayEnvironment), default=GatewayEnvironment.production
    )
    endpoint_url: Mapped[str | None] = mapped_column(String(255))
    api_key: Mapped[str | None] = mapped_column(String(255))
    sandbox_endpoint_url: Mapped[str | None] = mapped_column(String(255))
    sandbox_api_key: Mapped[str | None] = mapped_column(String(255))
    webhook_token: Mapped[str | None] = mapped_column(String(255))
    variables: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )
