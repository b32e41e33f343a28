"""
Record Store

Authoritative, strongly consistent CRUD for knowledge entities, backed by
SQLAlchemy. Blocking session work runs in worker threads so every call is a
suspension point for the event loop.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from models import KnowledgeEntityRecord
from knowledge_graph.exceptions import StoreUnavailableError, ValidationError
from knowledge_graph.models import EntityType, KnowledgeEntity, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields an update patch may touch
_PATCHABLE = {"type", "name", "description", "properties", "vector"}


class RecordStore(ABC):
    """Capability interface of the authoritative store."""

    @abstractmethod
    async def create(self, entity: KnowledgeEntity) -> KnowledgeEntity:
        """Persist a new entity. Assigns an id when the entity has none."""

    @abstractmethod
    async def find_by_id(self, entity_id: str) -> Optional[KnowledgeEntity]: ...

    @abstractmethod
    async def find_by_ids(self, entity_ids: Iterable[str]) -> List[KnowledgeEntity]:
        """Entities for the ids that exist, in the order requested."""

    @abstractmethod
    async def find_by_type(self, entity_type: EntityType) -> List[KnowledgeEntity]: ...

    @abstractmethod
    async def find_by_name(self, pattern: str) -> List[KnowledgeEntity]:
        """Case-insensitive substring match on the name."""

    @abstractmethod
    async def find_by_properties(self, filters: Dict[str, Any]) -> List[KnowledgeEntity]:
        """Entities whose properties match every filter value."""

    @abstractmethod
    async def search_text(
        self, query: str, entity_type: Optional[EntityType] = None, limit: Optional[int] = None
    ) -> List[KnowledgeEntity]:
        """Case-insensitive substring match on name or description."""

    @abstractmethod
    async def update(self, entity_id: str, patch: Dict[str, Any]) -> Optional[KnowledgeEntity]:
        """Apply a patch; properties merge and a None value drops the key. Returns None when the id does not exist."""

    @abstractmethod
    async def remove(self, entity_id: str) -> bool:
        """Delete an entity. Returns False when the id does not exist."""


def like_pattern(text: str) -> str:
    """Substring LIKE pattern with %, _ and the escape character taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def property_matches(value: Any, expected: Any) -> bool:
    """Filter semantics: list properties match by membership, strings case-insensitively."""
    if isinstance(value, (list, tuple, set)) and not isinstance(expected, (list, tuple, set)):
        return any(property_matches(v, expected) for v in value)
    if isinstance(value, str) and isinstance(expected, str):
        return value.lower() == expected.lower()
    return value == expected


class SqlRecordStore(RecordStore):
    """SQLAlchemy-backed record store."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def _run(self, fn: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._in_session, fn)

    def _in_session(self, fn: Callable[[Session], T]) -> T:
        session = self.session_factory()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Record store operation failed: {exc}")
            raise StoreUnavailableError("record", exc) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _to_domain(row: KnowledgeEntityRecord) -> KnowledgeEntity:
        return KnowledgeEntity(
            id=row.id,
            type=EntityType(row.type),
            name=row.name,
            description=row.description or "",
            properties=dict(row.properties or {}),
            vector=list(row.vector) if row.vector else None,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def create(self, entity: KnowledgeEntity) -> KnowledgeEntity:
        entity_id = entity.id or uuid.uuid4().hex

        def _create(session: Session) -> KnowledgeEntity:
            if session.get(KnowledgeEntityRecord, entity_id) is not None:
                raise ValidationError(f"Entity already exists: {entity_id}", field="id")
            now = utcnow()
            row = KnowledgeEntityRecord(
                id=entity_id,
                type=entity.type.value,
                name=entity.name,
                description=entity.description or "",
                properties=dict(entity.properties or {}),
                vector=list(entity.vector) if entity.vector else None,
                created_at=entity.created_at or now,
                updated_at=entity.updated_at or now,
            )
            session.add(row)
            session.flush()
            return self._to_domain(row)

        created = await self._run(_create)
        logger.debug(f"Record created: {created.id} ({created.type.value})")
        return created

    async def find_by_id(self, entity_id: str) -> Optional[KnowledgeEntity]:
        def _get(session: Session) -> Optional[KnowledgeEntity]:
            row = session.get(KnowledgeEntityRecord, entity_id)
            return self._to_domain(row) if row else None

        return await self._run(_get)

    async def find_by_ids(self, entity_ids: Iterable[str]) -> List[KnowledgeEntity]:
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return []

        def _get_many(session: Session) -> List[KnowledgeEntity]:
            rows = session.query(KnowledgeEntityRecord).filter(KnowledgeEntityRecord.id.in_(ids)).all()
            by_id = {row.id: self._to_domain(row) for row in rows}
            return [by_id[i] for i in ids if i in by_id]

        return await self._run(_get_many)

    async def find_by_type(self, entity_type: EntityType) -> List[KnowledgeEntity]:
        entity_type = EntityType(entity_type)

        def _by_type(session: Session) -> List[KnowledgeEntity]:
            rows = (
                session.query(KnowledgeEntityRecord)
                .filter(KnowledgeEntityRecord.type == entity_type.value)
                .order_by(KnowledgeEntityRecord.name)
                .all()
            )
            return [self._to_domain(row) for row in rows]

        return await self._run(_by_type)

    async def find_by_name(self, pattern: str) -> List[KnowledgeEntity]:
        def _by_name(session: Session) -> List[KnowledgeEntity]:
            rows = (
                session.query(KnowledgeEntityRecord)
                .filter(KnowledgeEntityRecord.name.ilike(like_pattern(pattern), escape="\\"))
                .order_by(KnowledgeEntityRecord.name)
                .all()
            )
            return [self._to_domain(row) for row in rows]

        return await self._run(_by_name)

    async def find_by_properties(self, filters: Dict[str, Any]) -> List[KnowledgeEntity]:
        filters = dict(filters or {})
        type_filter = filters.pop("type", None)

        def _by_properties(session: Session) -> List[KnowledgeEntity]:
            q = session.query(KnowledgeEntityRecord)
            if type_filter is not None:
                q = q.filter(KnowledgeEntityRecord.type == EntityType(type_filter).value)
            matches = []
            # JSON filtering is done here to stay portable across SQLite and Postgres
            for row in q.order_by(KnowledgeEntityRecord.name).all():
                props = row.properties or {}
                if all(key in props and property_matches(props[key], value) for key, value in filters.items()):
                    matches.append(self._to_domain(row))
            return matches

        return await self._run(_by_properties)

    async def search_text(
        self, query: str, entity_type: Optional[EntityType] = None, limit: Optional[int] = None
    ) -> List[KnowledgeEntity]:
        query = (query or "").strip()
        if not query:
            return []

        def _search(session: Session) -> List[KnowledgeEntity]:
            like = like_pattern(query)
            q = session.query(KnowledgeEntityRecord).filter(
                or_(
                    KnowledgeEntityRecord.name.ilike(like, escape="\\"),
                    KnowledgeEntityRecord.description.ilike(like, escape="\\"),
                )
            )
            if entity_type is not None:
                q = q.filter(KnowledgeEntityRecord.type == EntityType(entity_type).value)
            q = q.order_by(KnowledgeEntityRecord.name)
            if limit:
                q = q.limit(limit)
            return [self._to_domain(row) for row in q.all()]

        return await self._run(_search)

    async def update(self, entity_id: str, patch: Dict[str, Any]) -> Optional[KnowledgeEntity]:
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValidationError(f"Cannot patch fields: {', '.join(sorted(unknown))}")

        def _update(session: Session) -> Optional[KnowledgeEntity]:
            row = session.get(KnowledgeEntityRecord, entity_id)
            if row is None:
                return None
            if "type" in patch:
                row.type = EntityType(patch["type"]).value
            if "name" in patch:
                if not str(patch["name"] or "").strip():
                    raise ValidationError("name cannot be blank", field="name")
                row.name = patch["name"]
            if "description" in patch:
                row.description = patch["description"] or ""
            if "properties" in patch:
                # Assign a new dict so the JSON column is flagged dirty
                merged = dict(row.properties or {})
                merged.update(patch["properties"] or {})
                # None clears a key
                row.properties = {k: v for k, v in merged.items() if v is not None}
            if "vector" in patch:
                row.vector = list(patch["vector"]) if patch["vector"] else None
            row.updated_at = utcnow()
            session.flush()
            return self._to_domain(row)

        return await self._run(_update)

    async def remove(self, entity_id: str) -> bool:
        def _remove(session: Session) -> bool:
            row = session.get(KnowledgeEntityRecord, entity_id)
            if row is None:
                return False
            session.delete(row)
            return True

        removed = await self._run(_remove)
        if not removed:
            logger.debug(f"Record not found for removal: {entity_id}")
        return removed
