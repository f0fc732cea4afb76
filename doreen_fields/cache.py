"""Per-entity-type object cache shared by the lookup repositories."""

from typing import Dict, Generic, Optional, Type, TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)


class EntityCache:
    """Maps an entity class to its loaded instances, keyed by ID.

    A type is "fully loaded" once a repository has read its whole table.
    Individual instances may be cached before that.
    """

    def __init__(self):
        self._items: Dict[type, Dict[int, BaseModel]] = {}
        self._loaded: Dict[type, bool] = {}

    def items(self, entity_type: Type[T]) -> Dict[int, T]:
        return self._items.setdefault(entity_type, {})  # type: ignore[return-value]

    def get(self, entity_type: Type[T], entity_id: int) -> Optional[T]:
        return self.items(entity_type).get(entity_id)

    def put(self, entity: T) -> T:
        self.items(type(entity))[entity.id] = entity  # type: ignore[attr-defined]
        return entity

    def discard(self, entity_type: type, entity_id: int) -> None:
        self.items(entity_type).pop(entity_id, None)

    def is_loaded(self, entity_type: type) -> bool:
        return self._loaded.get(entity_type, False)

    def mark_loaded(self, entity_type: type) -> None:
        self._loaded[entity_type] = True

    def reset(self) -> None:
        self._items.clear()
        self._loaded.clear()


class CachedRepository(Generic[T]):
    """Base for repositories whose table is read once and kept in memory."""

    entity_type: Type[T]

    def __init__(self, cache: EntityCache):
        self.cache = cache

    def _load_rows(self, store) -> None:
        raise NotImplementedError

    def ensure_loaded(self, store) -> Dict[int, T]:
        if not self.cache.is_loaded(self.entity_type):
            self._load_rows(store)
            self.cache.mark_loaded(self.entity_type)
        return self.cache.items(self.entity_type)
