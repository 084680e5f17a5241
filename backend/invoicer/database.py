"""Database engine, session factory, and declarative base.

  - Base         → every ledger table (invoices, payments, subscriptions, clients)
  - get_session_factory() → the sessionmaker the LedgerService opens its
                   own short transactions from
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from invoicer.config import settings


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with driver-appropriate pool/lock settings."""
    if url.startswith("sqlite"):
        # SQLite serialises writers; wait on the file lock instead of failing fast
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": settings.sqlite_busy_timeout_s},
        )
    return create_async_engine(
        url,
        echo=echo,
        pool_size=20,
        max_overflow=10,
    )


engine = build_engine(settings.database_url, echo=settings.debug)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    """Models owned by the ledger."""
    pass


# ── Session factory ─────────────────────────────────────────

def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the factory mutating operations open their transactions from."""
    return async_session


def dialect_name(session: AsyncSession) -> str:
    return session.bind.dialect.name


async def apply_lock_timeout(session: AsyncSession) -> None:
    """Bound how long the current transaction may wait for a row lock.

    Only PostgreSQL understands ``lock_timeout``; on SQLite the driver
    busy timeout set in build_engine() plays the same role.
    """
    if dialect_name(session) == "postgresql":
        await session.execute(
            text(f"SET LOCAL lock_timeout = '{int(settings.lock_timeout_ms)}ms'")
        )
