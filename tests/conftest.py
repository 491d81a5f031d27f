import os
import uuid
from datetime import date

# Settings are read at import time, so the environment comes first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./nl2sql_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("ACCESS_TOKEN_EXPIRE_MINUTES", "30")
os.environ.setdefault("RUN_MIGRATIONS", "false")

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.ai_feature.service import get_query_pipeline
from app.core.security import create_access_token, hash_password
from app.main import app
from app.core import models
from app.core.database import Base, enable_sqlite_foreign_keys, get_db
from app.core.nl2sql.errors import GenerationError
from app.core.nl2sql.execute import BoundedExecutor
from app.core.nl2sql.generation import TextGenerator
from app.core.nl2sql.pipeline import QueryPipeline


class ScriptedGenerator(TextGenerator):
    """Returns queued answers in order; queued exceptions are raised."""

    def __init__(self):
        self.responses = []
        self.prompts = []

    def push(self, *responses):
        self.responses.extend(responses)

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise GenerationError("no response from model")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


# A fresh database file per test, dropped with tmp_path
@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'nl2sql.db'}", poolclass=NullPool
    )
    enable_sqlite_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine):
    TestingSessionLocal = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with TestingSessionLocal() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def generator():
    return ScriptedGenerator()


@pytest_asyncio.fixture(scope="function")
async def pipeline(test_engine, generator):
    executor = BoundedExecutor(test_engine, timeout_seconds=5, max_rows=100)
    return QueryPipeline(generator=generator, executor=executor, timeout_seconds=5)


# Client
@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, pipeline: QueryPipeline):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_query_pipeline] = lambda: pipeline

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def _make_user(db_session: AsyncSession, prefix: str, role: str):
    # Unique email for each test to avoid duplicates
    user = models.User(
        email=f"{prefix}_{uuid.uuid4().hex[:8]}@gmail.com",
        password=hash_password("password123"),
        role=role,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


# Users
@pytest_asyncio.fixture(scope="function")
async def test_user(db_session: AsyncSession):
    return await _make_user(db_session, "test", "user")


@pytest_asyncio.fixture(scope="function")
async def other_user(db_session: AsyncSession):
    return await _make_user(db_session, "other", "user")


@pytest_asyncio.fixture(scope="function")
async def test_admin(db_session: AsyncSession):
    return await _make_user(db_session, "admin", "admin")


def _headers(user):
    token = create_access_token({"user_id": user.id, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture(scope="function")
async def auth_headers_user(test_user):
    return _headers(test_user)


@pytest_asyncio.fixture(scope="function")
async def auth_headers_other(other_user):
    return _headers(other_user)


@pytest_asyncio.fixture(scope="function")
async def auth_headers_admin(test_admin):
    return _headers(test_admin)


# Transactions the generated SQL reads from
@pytest_asyncio.fixture(scope="function")
async def sample_transactions(db_session: AsyncSession):
    rows = [
        ("Magnum", "Almaty", "POS", 120.0, date(2024, 1, 5)),
        ("Magnum", "Almaty", "POS", 80.0, date(2024, 1, 7)),
        ("Small", "Astana", "POS", 300.0, date(2024, 2, 1)),
        ("Kaspi Shop", "Almaty", "ECOM", 55.5, date(2024, 2, 14)),
        ("Sulpak", "Shymkent", "POS", 410.0, date(2024, 3, 3)),
        ("Technodom", "Astana", "ECOM", 999.9, date(2024, 3, 20)),
        ("Arbuz", "Almaty", "ECOM", 15.0, date(2024, 3, 30)),
    ]
    transactions = [
        models.Transaction(
            card_no=f"4400********{i:04d}",
            date=trx_date,
            process_date=trx_date,
            merch_name=merchant,
            agg_merch_name=merchant,
            location_city=city,
            trx_type=trx_type,
            trx_direction="plus",
            trx_amount_usd=amount,
            authorization_status="approved",
        )
        for i, (merchant, city, trx_type, amount, trx_date) in enumerate(rows)
    ]
    db_session.add_all(transactions)
    await db_session.commit()
    return transactions
