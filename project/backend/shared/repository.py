"""
Repository abstraction for workflows and jobs.

Backends share a small get/put/list/delete contract so orchestration code
does not depend on where state lives. CachedRepository keeps an in-process
copy in front of any backend for hot reads.
"""

import time
from typing import Dict, Generic, List, Optional, Protocol, Set, Tuple, Type, TypeVar

from pydantic import BaseModel

from shared.interfaces import ProjectStore
from shared.logging import get_logger
from shared.models.workflow import Workflow
from shared.redis_client import RedisClient

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class Repository(Protocol[M]):
    """Storage contract for entities that carry an `id`."""

    async def get(self, entity_id: str) -> Optional[M]:
        ...

    async def put(self, entity: M, ttl_seconds: Optional[int] = None) -> None:
        ...

    async def list(self) -> List[M]:
        ...

    async def delete(self, entity_id: str) -> bool:
        ...


class InMemoryRepository(Generic[M]):
    """
    Dict-backed repository.

    Stores deep copies so callers never share state with the backend, the
    same way a durable store behaves. Honors TTLs lazily on read.
    """

    def __init__(self):
        self._items: Dict[str, Tuple[M, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and time.monotonic() >= expires_at

    async def get(self, entity_id: str) -> Optional[M]:
        entry = self._items.get(entity_id)
        if entry is None:
            return None
        entity, expires_at = entry
        if self._expired(expires_at):
            del self._items[entity_id]
            return None
        return entity.model_copy(deep=True)

    async def put(self, entity: M, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._items[entity.id] = (entity.model_copy(deep=True), expires_at)

    async def list(self) -> List[M]:
        result = []
        for entity_id in list(self._items):
            entity = await self.get(entity_id)
            if entity is not None:
                result.append(entity)
        return result

    async def delete(self, entity_id: str) -> bool:
        return self._items.pop(entity_id, None) is not None


class RedisRepository(Generic[M]):
    """
    Redis-backed repository.

    Entities are stored as JSON under `{namespace}:{id}` with an index set
    `{namespace}:index`. Index entries whose key expired are pruned on list.
    """

    def __init__(self, model: Type[M], namespace: str, client: RedisClient):
        self.model = model
        self.namespace = namespace
        self.client = client

    def _key(self, entity_id: str) -> str:
        return f"{self.namespace}:{entity_id}"

    @property
    def _index_key(self) -> str:
        return f"{self.namespace}:index"

    async def get(self, entity_id: str) -> Optional[M]:
        raw = await self.client.get(self._key(entity_id))
        if raw is None:
            return None
        return self.model.model_validate_json(raw)

    async def put(self, entity: M, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(self._key(entity.id), entity.model_dump_json(), ex=ttl_seconds)
        await self.client.sadd(self._index_key, entity.id)

    async def list(self) -> List[M]:
        result = []
        for entity_id in sorted(await self.client.smembers(self._index_key)):
            entity = await self.get(entity_id)
            if entity is None:
                await self.client.srem(self._index_key, entity_id)
                continue
            result.append(entity)
        return result

    async def delete(self, entity_id: str) -> bool:
        await self.client.srem(self._index_key, entity_id)
        return await self.client.delete(self._key(entity_id))


class CachedRepository(Generic[M]):
    """
    In-process cache in front of another repository.

    Reads return the cached instance when present; writes update the cache
    and go through to the backend.
    """

    def __init__(self, backend: Repository[M]):
        self.backend = backend
        self._cache: Dict[str, M] = {}

    async def get(self, entity_id: str) -> Optional[M]:
        cached = self._cache.get(entity_id)
        if cached is not None:
            return cached
        entity = await self.backend.get(entity_id)
        if entity is not None:
            self._cache[entity_id] = entity
        return entity

    async def put(self, entity: M, ttl_seconds: Optional[int] = None) -> None:
        self._cache[entity.id] = entity
        await self.backend.put(entity, ttl_seconds=ttl_seconds)

    async def list(self) -> List[M]:
        result = []
        for entity in await self.backend.list():
            cached = self._cache.setdefault(entity.id, entity)
            result.append(cached)
        return result

    async def delete(self, entity_id: str) -> bool:
        self._cache.pop(entity_id, None)
        return await self.backend.delete(entity_id)

    def is_cached(self, entity_id: str) -> bool:
        return entity_id in self._cache

    def evict(self, entity_id: Optional[str] = None) -> None:
        """Drop one entry, or the whole cache when no id is given."""
        if entity_id is None:
            self._cache.clear()
        else:
            self._cache.pop(entity_id, None)


class ProjectStoreWorkflowRepository:
    """Workflow repository backed by the project store's workflow records."""

    def __init__(self, store: ProjectStore):
        self.store = store
        self._known_ids: Set[str] = set()

    async def get(self, entity_id: str) -> Optional[Workflow]:
        record = await self.store.load_workflow_record(entity_id)
        if record is None:
            return None
        self._known_ids.add(entity_id)
        return Workflow.model_validate(record)

    async def put(self, entity: Workflow, ttl_seconds: Optional[int] = None) -> None:
        record = entity.model_dump(mode="json")
        if entity.id not in self._known_ids:
            existing = await self.store.load_workflow_record(entity.id)
            if existing is None:
                await self.store.create_workflow_record(record)
                self._known_ids.add(entity.id)
                return
            self._known_ids.add(entity.id)
        await self.store.update_workflow_record(entity.id, record)

    async def list(self) -> List[Workflow]:
        return [Workflow.model_validate(record) for record in await self.store.list_workflow_records()]

    async def delete(self, entity_id: str) -> bool:
        # Workflow records are historical; the store keeps every run
        logger.warning("Workflow records cannot be deleted", extra={"workflow_id": entity_id})
        return False
