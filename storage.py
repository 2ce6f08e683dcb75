"""
Document store adapter: the single order document persisted in a SQL table.

Reads degrade to a default document; writes are conditional on the row
version so a concurrent writer is detected instead of silently overwritten.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import JSON, Column, DateTime, Integer, String, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from errors import UpstreamError, WriteConflictError
from models import COMPLETED_ORDERS_CAP, Document

logger = structlog.get_logger()

Base = declarative_base()


def utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DocumentRow(Base):
    __tablename__ = "documents"

    key = Column(String(100), primary_key=True)
    body = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    expires_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class EventRow(Base):
    __tablename__ = "order_events"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    store_key = Column(String(100), index=True, nullable=False)
    event_id = Column(String(36), unique=True, nullable=False)
    type = Column(String(50), nullable=False)
    data = Column(JSON, nullable=False)
    timestamp = Column(String(40), nullable=False)
    created_at = Column(DateTime, index=True, nullable=False, default=utcnow)


def create_engine(database_url: str) -> AsyncEngine:
    options = {}
    if not database_url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
    return create_async_engine(database_url, echo=False, **options)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine):
    """Create tables if they do not exist yet"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized")


class DocumentStore:
    def __init__(
        self,
        sessions: sessionmaker,
        key: str,
        ttl_seconds: Optional[int] = None,
        completed_cap: int = COMPLETED_ORDERS_CAP,
    ):
        self._sessions = sessions
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.completed_cap = completed_cap

    async def load(self) -> Document:
        """
        Fetch the current document.

        A missing, expired or malformed row is replaced by a fresh default
        document (persisted best-effort). A read failure returns defaults
        without writing anything.
        """
        try:
            async with self._sessions() as session:
                row = await session.get(DocumentRow, self.key)
        except SQLAlchemyError as e:
            logger.error("document_load_failed", key=self.key, error=str(e))
            return Document()

        if row is None:
            return await self._initialize(None)

        if row.expires_at is not None and row.expires_at <= utcnow():
            logger.info("document_expired", key=self.key)
            return await self._initialize(row.version)

        doc = None
        if isinstance(row.body, dict):
            try:
                doc = Document.model_validate(row.body, context={"completed_cap": self.completed_cap})
            except PydanticValidationError as e:
                logger.warning("document_invalid", key=self.key, error=str(e))
        if doc is None:
            logger.warning("document_malformed", key=self.key)
            return await self._initialize(row.version)

        doc._version = row.version
        return doc

    async def _initialize(self, version: Optional[int]) -> Document:
        doc = Document()
        doc._version = version
        try:
            await self.save(doc)
        except UpstreamError as e:
            logger.warning("document_init_failed", key=self.key, error=e.message)
        return doc

    async def save(self, doc: Document):
        """
        Persist the full document.

        Raises WriteConflictError when the row changed since ``doc`` was loaded
        and UpstreamError for any other storage failure.
        """
        now = utcnow()
        expires_at = now + timedelta(seconds=self.ttl_seconds) if self.ttl_seconds else None
        body = doc.to_json()

        try:
            async with self._sessions() as session:
                async with session.begin():
                    if doc._version is None:
                        session.add(DocumentRow(
                            key=self.key,
                            body=body,
                            version=1,
                            expires_at=expires_at,
                            updated_at=now,
                        ))
                        new_version = 1
                    else:
                        result = await session.execute(
                            update(DocumentRow)
                            .where(DocumentRow.key == self.key, DocumentRow.version == doc._version)
                            .values(body=body, version=doc._version + 1, expires_at=expires_at, updated_at=now)
                        )
                        if result.rowcount != 1:
                            raise WriteConflictError("Order data was changed by another request")
                        new_version = doc._version + 1
        except IntegrityError as e:
            raise WriteConflictError("Order data was created by another request") from e
        except SQLAlchemyError as e:
            logger.error("document_save_failed", key=self.key, error=str(e))
            raise UpstreamError("Failed to save order data") from e

        doc._version = new_version

    async def ping(self) -> int:
        """Round-trip to the database; returns the number of stored documents"""
        try:
            async with self._sessions() as session:
                result = await session.execute(select(func.count()).select_from(DocumentRow))
                return result.scalar()
        except SQLAlchemyError as e:
            raise UpstreamError("Order storage is unreachable") from e
