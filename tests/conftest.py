"""
Shared pytest fixtures – file-backed SQLite per test (no real Postgres needed).
"""
from __future__ import annotations

import os

from cryptography.fernet import Fernet

# Settings are read once at import time; configure the environment first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SHOPIFY_SHOP_DOMAIN", "test-shop.myshopify.com")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("SHOPIFY_ACCESS_TOKEN", "shpat_env_fallback_token")
os.environ.setdefault("CONFIG_ENCRYPTION_KEY", Fernet.generate_key().decode())

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.models import Base  # noqa: E402
from tests.shopify_fake import FakeShopify, make_order  # noqa: E402


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    # A file database so that several sessions see each other's commits.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_shopify() -> FakeShopify:
    return FakeShopify([make_order(1001), make_order(1002, ["HD-2", None])])
