from typing import Dict

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
import logging

# Initialize logger for this module
logger = logging.getLogger(__name__)


def create_engine_for(database_url: str) -> AsyncEngine:
    """
    Create the async SQLAlchemy engine for the run ledger.

    SQLite needs check_same_thread disabled because the web tier and the
    background runner both open connections; aiosqlite manages them safely.
    """
    connect_args: Dict = {}
    if "sqlite" in database_url:
        connect_args = {"check_same_thread": False}

    # echo=False: Disable SQL query logging to console (enable for debugging)
    return create_async_engine(
        database_url,
        echo=False,
        connect_args=connect_args,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,              # Bind to our async engine
        class_=AsyncSession,      # Specify usage of AsyncSession
        expire_on_commit=False,   # Keep loaded rows usable after commit
        autoflush=False,          # Disable autoflush for better manual control
    )
