import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.sql import Executable

from fiscal_engine.config import settings
from fiscal_engine.core.exceptions import FiscalEngineError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def create_engine_for(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, skipping pool settings SQLite does not support."""
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)
async_session_factory = create_session_factory(engine)


class PersistenceGateway:
    """
    Transactional access to durable storage.

    The lifecycle manager receives an instance explicitly instead of reaching
    for a module-level session, so tests can point it at a throwaway database.

    Primitives:
        query(sql, params)    -> list of row dicts
        execute(sql, params)  -> None, committed immediately
        transaction(fn)       -> fn(session) inside BEGIN/COMMIT,
                                 rolled back on any exception
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "PersistenceGateway":
        """Build a gateway that owns its own engine."""
        own_engine = create_engine_for(database_url, echo=echo)
        return cls(create_session_factory(own_engine), engine=own_engine)

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine or self._session_factory.kw.get("bind")

    @staticmethod
    def _statement(sql: Union[str, Executable]) -> Executable:
        return text(sql) if isinstance(sql, str) else sql

    async def query(
        self,
        sql: Union[str, Executable],
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Run a read statement and return its rows as dicts."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(self._statement(sql), params or {})
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            logger.error(f"Query failed: {e.__class__.__name__}")
            raise StorageError(f"Query failed: {e}") from e

    async def execute(
        self,
        sql: Union[str, Executable],
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Run a single write statement in its own transaction."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(self._statement(sql), params or {})
        except SQLAlchemyError as e:
            logger.error(f"Execute failed: {e.__class__.__name__}")
            raise StorageError(f"Execute failed: {e}") from e

    async def transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run ``fn`` inside one all-or-nothing transaction.

        Domain errors raised by ``fn`` propagate unchanged after rollback;
        driver errors are re-raised as StorageError.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except FiscalEngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Transaction rolled back: {e.__class__.__name__}: {e}")
            raise StorageError(f"Transaction failed: {e}") from e

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Read-only session for queries that need ORM objects."""
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                raise StorageError(f"Read failed: {e}") from e

    async def create_all(self) -> None:
        """Create all tables registered on Base.metadata."""
        from fiscal_engine import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Registered {len(Base.metadata.tables)} tables")

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()


_gateway: Optional[PersistenceGateway] = None


def get_gateway() -> PersistenceGateway:
    """Get or create the application-wide gateway."""
    global _gateway
    if _gateway is None:
        _gateway = PersistenceGateway(async_session_factory, engine=engine)
    return _gateway


async def init_db() -> None:
    """Initialize database tables."""
    await get_gateway().create_all()
