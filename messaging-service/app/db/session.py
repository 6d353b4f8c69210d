from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
from app.core.config import get_settings
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse
import ssl
import logging

logger = logging.getLogger(__name__)

settings = get_settings()


# asyncpg doesn't accept sslmode as URL param, needs ssl context instead
def prepare_async_url(url: str) -> tuple[str, dict]:
    """Convert DATABASE_URL to an async driver URL and extract SSL settings."""
    if not url.startswith("postgresql://"):
        # Already carries an async driver (e.g. sqlite+aiosqlite)
        return url, {}

    url = url.replace("postgresql://", "postgresql+asyncpg://")

    parsed = urlparse(url)
    query_params = parse_qs(parsed.query)

    connect_args = {}

    if "sslmode" in query_params:
        sslmode = query_params.pop("sslmode")[0]
        if sslmode in ("require", "verify-ca", "verify-full"):
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            connect_args["ssl"] = ssl_context

    new_query = urlencode({k: v[0] for k, v in query_params.items()})
    clean_url = urlunparse(parsed._replace(query=new_query))

    return clean_url, connect_args


engine = None
AsyncSessionLocal = None

if settings.DATABASE_URL:
    DATABASE_URL, connect_args = prepare_async_url(settings.DATABASE_URL)
    engine = create_async_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=connect_args)
    AsyncSessionLocal = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
else:
    logger.warning("DATABASE_URL not configured. Message and notification stores will be unavailable.")

# Base class for models
Base = declarative_base()


async def init_db():
    """Create the message and notification tables"""
    if engine is None:
        logger.warning("Database engine not initialized. Skipping database setup.")
        return

    # Import models to register them with Base.metadata
    from app.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Messaging tables ready")


async def verify_database_connection() -> bool:
    """
    Verify database connection is available at startup.

    Returns:
        True if DB is available, False otherwise
    """
    if AsyncSessionLocal is None:
        logger.warning("DATABASE_URL not configured. Messaging service has no persistence.")
        return False

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
            logger.info("Database connection verified successfully")
            return True
    except Exception as e:
        logger.error(
            f"Database connection FAILED: {e}. "
            f"Fix DATABASE_URL or check database availability."
        )
        return False

