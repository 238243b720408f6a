"""
Test Suite Configuration
"""
import os

# delays and budgets are read once at import; keep every wait at zero
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("SYNC_REPORT_POLL_INTERVAL_SECONDS", "0")
os.environ.setdefault("SYNC_INTER_BATCH_DELAY_SECONDS", "0")
os.environ.setdefault("SYNC_BATCH_ERROR_DELAY_SECONDS", "0")
os.environ.setdefault("SYNC_FINANCE_PAGE_DELAY_SECONDS", "0")
os.environ.setdefault("SYNC_FINANCE_WINDOW_DELAY_SECONDS", "0")
os.environ.setdefault("SYNC_FINANCE_RATE_LIMIT_WAIT_SECONDS", "0")
os.environ.setdefault("SYNC_STATUS_RATE_LIMIT_WAIT_SECONDS", "0")
os.environ.setdefault("SYNC_REPORT_CREATE_BACKOFF_SECONDS", "0")
os.environ.setdefault("SYNC_RESYNC_ORDER_DELAY_SECONDS", "0")
os.environ.setdefault("JOBS_CANCEL_CHECK_INTERVAL_SECONDS", "0")

from decimal import Decimal
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sellerops.config import Settings
from sellerops.database.connection import create_session_factory
from sellerops.database.models import Base, Product, Warehouse


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(app_env="testing", debug=True)


@pytest.fixture
async def test_engine(tmp_path):
    """File-backed SQLite engine so separate sessions see committed rows"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sellerops.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def seeded_catalog(session_factory):
    """Two catalog products and one warehouse"""
    async with session_factory() as session:
        session.add_all([
            Product(sku="SKU-A", title="Widget A", fnsku="X00A", cost=Decimal("4.00"), is_active=True),
            Product(sku="SKU-B", title="Widget B", fnsku="X00B", cost=Decimal("2.50"), is_active=True),
            Warehouse(id=1, code="MAIN", name="Main"),
        ])
        await session.commit()
