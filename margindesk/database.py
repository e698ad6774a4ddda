"""Database engine, session factory and declarative base."""

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from margindesk.config import settings

engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)

# Engine operations open their own transactions from this factory.
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Deterministic constraint names so Alembic revisions stay stable.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)
