import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import BigInteger, Column, JSON, String, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings
from .errors import DuplicateRecordError, RecordNotFoundError, ValidationError
from .registry import EntityOperations

Base = declarative_base()


class EntityRecord(Base):
    """One record of any entity type; the payload lives in ``data``."""
    __tablename__ = "entity_records"
    __table_args__ = (UniqueConstraint("entity_type", "identifier", name="uq_entity_identifier"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    entity_type = Column(String, nullable=False, index=True)
    identifier = Column(String, nullable=False)
    data = Column(JSON, nullable=False)
    created_at = Column(BigInteger, nullable=False, index=True)  # epoch ms


def get_engine_and_session(dsn=None):
    dsn = dsn or get_settings().DATABASE_URL
    kwargs: Dict[str, Any] = {"echo": False, "future": True}
    if dsn.startswith("sqlite") and ":memory:" in dsn:
        # one shared connection, otherwise every session sees a fresh empty db
        kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
    engine = create_async_engine(dsn, **kwargs)
    async_session = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine, async_session


async def init_models(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _to_record(row: EntityRecord) -> Dict[str, Any]:
    record = dict(row.data or {})
    record["_id"] = row.id
    record["_creationTime"] = row.created_at
    return record


class EntityStore:
    """Generic document store keyed by (entity_type, identifier).

    Every operation returns structured data; missing and duplicate records
    raise ``RecordNotFoundError`` / ``DuplicateRecordError``.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.engine, self._sessionmaker = get_engine_and_session(dsn)
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._last_ts = 0

    async def setup(self) -> None:
        async with self._init_lock:
            if not self._initialized:
                await init_models(self.engine)
                self._initialized = True

    async def dispose(self) -> None:
        await self.engine.dispose()

    def _next_timestamp(self) -> int:
        # strictly increasing so creation order is recoverable from _creationTime
        now_ms = int(time.time() * 1000)
        self._last_ts = max(now_ms, self._last_ts + 1)
        return self._last_ts

    async def _find(self, session: AsyncSession, entity_type: str, identifier: str) -> Optional[EntityRecord]:
        result = await session.execute(
            select(EntityRecord).where(
                EntityRecord.entity_type == entity_type,
                EntityRecord.identifier == identifier,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, entity_type: str, identifier_field: str, data: Dict[str, Any]) -> Dict[str, Any]:
        await self.setup()
        identifier = data.get(identifier_field)
        if identifier in (None, ""):
            raise ValidationError(f"Missing {identifier_field}", field=identifier_field)
        identifier = str(identifier)
        async with self._sessionmaker() as session:
            if await self._find(session, entity_type, identifier) is not None:
                raise DuplicateRecordError(entity_type, identifier)
            row = EntityRecord(
                entity_type=entity_type,
                identifier=identifier,
                data=dict(data),
                created_at=self._next_timestamp(),
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return {"id": identifier, "record": _to_record(row)}

    async def get(self, entity_type: str, identifier: str) -> Dict[str, Any]:
        await self.setup()
        async with self._sessionmaker() as session:
            row = await self._find(session, entity_type, str(identifier))
            if row is None:
                raise RecordNotFoundError(entity_type, str(identifier))
            return {"record": _to_record(row)}

    async def update(
        self, entity_type: str, identifier_field: str, identifier: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        await self.setup()
        identifier = str(identifier)
        async with self._sessionmaker() as session:
            row = await self._find(session, entity_type, identifier)
            if row is None:
                raise RecordNotFoundError(entity_type, identifier)
            new_identifier = identifier
            if identifier_field in changes and changes[identifier_field] not in (None, ""):
                new_identifier = str(changes[identifier_field])
                if new_identifier != identifier and await self._find(session, entity_type, new_identifier) is not None:
                    raise DuplicateRecordError(entity_type, new_identifier)
            data = dict(row.data or {})
            data.update(changes)
            # reassign so the JSON column is flagged dirty
            row.data = data
            row.identifier = new_identifier
            await session.commit()
            await session.refresh(row)
            return {"id": new_identifier, "record": _to_record(row)}

    async def delete(self, entity_type: str, identifier: str) -> Dict[str, Any]:
        await self.setup()
        identifier = str(identifier)
        async with self._sessionmaker() as session:
            row = await self._find(session, entity_type, identifier)
            if row is None:
                raise RecordNotFoundError(entity_type, identifier)
            record = _to_record(row)
            await session.delete(row)
            await session.commit()
            return {"id": identifier, "record": record}

    async def list(self, entity_type: str) -> Dict[str, Any]:
        await self.setup()
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(EntityRecord)
                .where(EntityRecord.entity_type == entity_type)
                .order_by(EntityRecord.created_at.asc())
            )
            items: List[Dict[str, Any]] = [_to_record(row) for row in result.scalars().all()]
            return {"count": len(items), "items": items}


def bind_store_operations(store: Any, entity_type: str, identifier_field: str) -> EntityOperations:
    """Build the typed operation closures an EntityConfig holds for one type."""

    async def create(data: Dict[str, Any]) -> Dict[str, Any]:
        return await store.create(entity_type, identifier_field, data)

    async def read(identifier: str) -> Dict[str, Any]:
        return await store.get(entity_type, identifier)

    async def update(identifier: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return await store.update(entity_type, identifier_field, identifier, changes)

    async def delete(identifier: str) -> Dict[str, Any]:
        return await store.delete(entity_type, identifier)

    async def list_all() -> Dict[str, Any]:
        return await store.list(entity_type)

    return EntityOperations(create=create, read=read, update=update, delete=delete, list=list_all)
