"""Database configuration and session management for FastAPI.

SQLAlchemy's asyncio support with asyncpg is used against PostgreSQL.
``COACHDESK_DATABASE_URL`` wins when set; otherwise the URL is assembled
from the ``DB_*`` environment variables, using the Cloud SQL Unix socket
when ``CLOUDSQL_INSTANCE_CONNECTION_NAME`` is present.
"""

import os
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base
from .settings import settings


def _make_database_url() -> str:
    """Construct a database URL from settings or environment variables.

    - CLOUDSQL_INSTANCE_CONNECTION_NAME: Cloud SQL connection name
      (``project:region:instance``); selects the Unix socket path.
    - DB_USER / DB_PASSWORD / DB_NAME: credentials and database.
    - DB_HOST / DB_PORT: TCP fallback for local development.
    """
    if settings.database_url:
        return settings.database_url
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")
    db_name = os.getenv("DB_NAME", "coachdesk")
    instance_connection_name = os.getenv("CLOUDSQL_INSTANCE_CONNECTION_NAME")
    if instance_connection_name:
        return (
            f"postgresql+asyncpg://{user}:{password}@/{db_name}?host=/cloudsql/{instance_connection_name}"
        )
    host = os.getenv("DB_HOST", "127.0.0.1")
    port = os.getenv("DB_PORT", "5432")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"


DATABASE_URL = _make_database_url()
engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def init_db() -> None:
    """Create any missing tables. Schema migrations are managed elsewhere."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one ``AsyncSession`` per request."""
    async with AsyncSessionLocal() as session:
        yield session
