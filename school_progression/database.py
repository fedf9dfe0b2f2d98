"""
school_progression/database.py
Database configuration for the stage progression engine
"""
import os
import logging

from dotenv import load_dotenv
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Import Base from orm.base to avoid circular imports
from school_progression.orm.base import Base
import school_progression.orm  # ensures all models are registered

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./progression.db")

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is not set")


def _configure_sqlite(engine) -> None:
    """
    Make SQLite behave transactionally enough for the engine.

    - Foreign keys are off per connection unless switched on
    - The driver's own BEGIN handling breaks SAVEPOINT, so BEGIN is emitted here
    - BEGIN IMMEDIATE takes the write lock up front; deferred transactions
      upgrading from read to write deadlock under concurrent writers
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str = DATABASE_URL, **kwargs):
    """Create an async engine with pool settings suited to the dialect."""
    if "sqlite" in url.lower():
        engine = create_async_engine(
            url,
            echo=False,
            future=True,
            connect_args={
                "timeout": 30.0,   # SQLite busy timeout in seconds
            },
            **kwargs
        )
        _configure_sqlite(engine)
        return engine

    # PostgreSQL: row locks (SELECT ... FOR UPDATE) serialize recomputation across workers
    return create_async_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=20,           # Base pool size
        max_overflow=30,        # Additional connections under load
        pool_timeout=30,        # Wait up to 30s for connection
        pool_recycle=3600,      # Recycle connections after 1 hour
        **kwargs
    )


engine = build_engine()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db():
    """Yield a database session and always close it afterwards."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(target_engine=None):
    """Create all progression tables that don't exist yet."""
    target_engine = target_engine or engine
    logger.info("Initializing database...")
    try:
        async with target_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✓ Database tables ready")
    except Exception as e:
        logger.error(f"Database initialization error: {str(e)}")
        raise
