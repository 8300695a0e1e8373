import os
import sqlite3
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

from app import models  # noqa: E402,F401
from app.models.payments import PaymentProviderType  # noqa: E402
from app.services import payment_gateways  # noqa: E402
from app.services import payments as payments_service  # noqa: E402
from tests.mocks import FakeGateway  # noqa: E402


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        # pysqlite defers BEGIN on its own, which breaks SAVEPOINT handling
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
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


@pytest.fixture(autouse=True)
def _reset_gateways():
    payment_gateways.reset_gateways()
    yield
    payment_gateways.reset_gateways()


@pytest.fixture()
def fake_gateway(monkeypatch):
    """Route every provider lookup to one scripted gateway."""
    gateway = FakeGateway(provider="mpesa")
    monkeypatch.setattr(payment_gateways, "get_gateway", lambda provider: gateway)
    return gateway


@pytest.fixture()
def make_payment(db_session):
    """Create a pending payment, optionally with a provider tracking id."""

    def _make(
        *,
        provider=PaymentProviderType.mpesa,
        amount=Decimal("500.00"),
        metadata=None,
        tracking_id=None,
        order_id=None,
    ):
        payment = payments_service.pending_payments.create(
            db_session,
            order_id=order_id or payments_service.pending_payments.generate_order_id(provider),
            provider=provider,
            amount=amount,
            currency="KES",
            metadata=metadata
            if metadata is not None
            else {"type": "credit_purchase", "credits": 25, "agentId": "agent-1"},
        )
        if tracking_id:
            payment = payments_service.pending_payments.attach_tracking_id(
                db_session, payment.order_id, tracking_id
            )
        return payment

    return _make
