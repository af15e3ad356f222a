"""
Database engine and session factory for the sync store.
PostgreSQL via asyncpg with the SQLAlchemy 2 async engine; each store call
opens its own short session from ``async_session``.
"""

import logging
import ssl
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from adsync.config import Settings, get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def connect_args(settings: Settings) -> dict:
    """asyncpg connect arguments; SSL without certificate checks for proxied hosted Postgres."""
    args = {"timeout": settings.database_connect_timeout}
    if settings.database_ssl or "rlwy.net" in settings.database_url:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        args["ssl"] = ctx
    return args


engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_pre_ping=True,
    connect_args=connect_args(settings),
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db():
    """Create the connected_accounts and campaigns tables if missing."""
    import adsync.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized with {len(Base.metadata.tables)} tables: "
                     f"{', '.join(Base.metadata.tables.keys())}")


async def check_db_connection() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
