import os
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.config import settings
from app.db import Base, get_db
from app.models.billing import GatewayEnvironment
from app.models.integration import IntegrationConfig
from app.models.subscriber import Originator, Subscriber, SubscriberStatus
from app.services.gateway_client import GatewayClient
from tests.factories import (
    GATEWAY_BASE_URL,
    MESSAGING_BASE_URL,
    SANDBOX_BASE_URL,
    VALID_CPF,
    WEBHOOK_TOKEN,
    make_consumer_unit,
    make_invoice,
)
from tests.mocks import FakeGateway, FakeMessagingAPI


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def integration_config(db_session):
    """Gateway credentials for both environments, production active."""
    config = IntegrationConfig(
        service_name=settings.gateway_service_name,
        environment=GatewayEnvironment.production,
        endpoint_url=GATEWAY_BASE_URL,
        api_key="prod-key",
        sandbox_endpoint_url=SANDBOX_BASE_URL,
        sandbox_api_key="sandbox-key",
        webhook_token=WEBHOOK_TOKEN,
    )
    db_session.add(config)
    db_session.commit()
    db_session.refresh(config)
    return config


@pytest.fixture()
def messaging_config(db_session):
    config = IntegrationConfig(
        service_name=settings.notification_service_name,
        environment=GatewayEnvironment.production,
        endpoint_url=MESSAGING_BASE_URL,
        api_key="evo-key",
        variables={"instance_name": "billing"},
    )
    db_session.add(config)
    db_session.commit()
    db_session.refresh(config)
    return config


@pytest.fixture()
def fake_gateway():
    return FakeGateway(base_path="/api/v3")


@pytest.fixture()
def fake_messaging():
    return FakeMessagingAPI()


@pytest.fixture()
def gateway_client(db_session, integration_config, fake_gateway):
    return GatewayClient(db_session, http_client=fake_gateway.client())


@pytest.fixture()
def route_gateway(monkeypatch, fake_gateway):
    """Point every GatewayClient built without an http client at the fake."""
    original_init = GatewayClient.__init__

    def _init(self, db, **kwargs):
        if kwargs.get("http_client") is None:
            kwargs["http_client"] = fake_gateway.client()
        original_init(self, db, **kwargs)

    monkeypatch.setattr(GatewayClient, "__init__", _init)
    return fake_gateway


@pytest.fixture()
def originator(db_session):
    originator = Originator(
        name="Carla Indicadora",
        phone="11987654321",
        email="carla@example.com",
        pix_key="carla@example.com",
        pix_key_type="EMAIL",
        split_start_pct=Decimal("10.00"),
        split_recurring_pct=Decimal("5.00"),
    )
    db_session.add(originator)
    db_session.commit()
    db_session.refresh(originator)
    return originator


@pytest.fixture()
def subscriber(db_session, originator):
    subscriber = Subscriber(
        name="João Assinante",
        document=VALID_CPF,
        email="joao@example.com",
        phone="11912345678",
        postal_code="01310-100",
        street="Avenida Paulista",
        address_number="1000",
        district="Bela Vista",
        city="São Paulo",
        state="SP",
        status=SubscriberStatus.lead,
        originator_id=originator.id,
        consumption_kwh=Decimal("500"),
        tariff=Decimal("0.80"),
        discount_pct=Decimal("15"),
    )
    db_session.add(subscriber)
    db_session.commit()
    db_session.refresh(subscriber)
    return subscriber


@pytest.fixture()
def consumer_unit(db_session, subscriber):
    return make_consumer_unit(db_session, subscriber, "UC-0001")


@pytest.fixture()
def invoice(db_session, consumer_unit):
    return make_invoice(db_session, consumer_unit)


@pytest.fixture()
def client(db_session):
    from app.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
