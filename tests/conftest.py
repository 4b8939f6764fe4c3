"""Pytest configuration and fixtures."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ledgermatch.api.deps import get_bank_feed, get_category_resolver
from ledgermatch.database import get_session
from ledgermatch.main import app
from ledgermatch.models import Account, AccountShare, Base, Transaction


@pytest.fixture
async def client():
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def db_engine():
    """Create in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Create database session for testing."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
async def async_engine():
    """In-memory SQLite engine for the async services."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine):
    """Async session for service tests."""
    Session = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with Session() as session:
        yield session


@pytest.fixture
def make_account(async_session):
    """Factory for accounts, optionally shared with another user."""

    async def _make(user_id=1, name="Everyday", bank_account_ref=None, share_with=None):
        account = Account(user_id=user_id, name=name, bank_account_ref=bank_account_ref)
        async_session.add(account)
        await async_session.flush()
        if share_with:
            share_user, role = share_with
            async_session.add(AccountShare(account_id=account.id, user_id=share_user, role=role))
        await async_session.commit()
        return account

    return _make


@pytest.fixture
def make_transaction(async_session):
    """Factory for ledger transactions."""

    async def _make(account, amount, on, description=None, **fields):
        transaction = Transaction(
            user_id=fields.pop("user_id", account.user_id),
            account_id=account.id,
            amount=Decimal(str(amount)),
            date=on,
            description=description,
            **fields,
        )
        async_session.add(transaction)
        await async_session.commit()
        return transaction

    return _make


@pytest.fixture
def tx():
    """Plain in-memory transaction for the pure matching engines."""

    def _make(id, amount, on, description=None, account_id=1, **fields):
        defaults = {
            "external_id": None,
            "is_deleted": False,
            "is_reviewed": False,
            "transfer_id": None,
        }
        defaults.update(fields)
        return SimpleNamespace(
            id=id,
            amount=Decimal(str(amount)),
            date=on,
            description=description,
            account_id=account_id,
            **defaults,
        )

    return _make


@pytest.fixture
async def api_client(async_engine):
    """API client bound to the test database, external services stubbed out."""
    Session = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)

    async def _session():
        async with Session() as session:
            yield session

    async def _no_bank_feed():
        yield None

    async def _no_categories():
        yield None

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_bank_feed] = _no_bank_feed
    app.dependency_overrides[get_category_resolver] = _no_categories
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def statement_date():
    return date(2024, 1, 31)
