from contextlib import asynccontextmanager
from typing import AsyncIterator
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from oae.config import settings
from oae.core.errors import Conflict, StorageUnavailable

engine = create_async_engine(settings.DATABASE_URL, echo=False)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

class Base(DeclarativeBase):
    pass


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """Open a session and a short transaction on it.

    Commits on clean exit. Driver-level failures surface as StorageUnavailable,
    uniqueness violations as Conflict.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except IntegrityError as e:
        raise Conflict(str(e.orig)) from e
    except (OperationalError, InterfaceError) as e:
        raise StorageUnavailable(f"datastore error: {e.orig}") from e
