"""Database connection and session management."""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from adimages.settings import settings
import os


def normalize_database_url(url: str) -> str:
    """Convert postgres:// style URLs to the asyncpg dialect SQLAlchemy expects."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


# Hosted Postgres providers expose POSTGRES_URL
database_url = normalize_database_url(os.getenv("POSTGRES_URL") or settings.DATABASE_URL)

engine = create_async_engine(
    database_url,
    echo=False,  # Set to True for SQL debugging
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for FastAPI to get database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_tables(bind=None) -> None:
    """Create all database tables."""
    # Registers the mapped tables on Base.metadata
    from adimages import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
