"""Field and handler registries.

FieldRegistry is a plain lookup table of FieldDescriptor records.
HandlerRegistry maps field IDs to handler factories and caches one handler
instance per field.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from doreen_fields.errors import ConfigurationError
from doreen_fields.models import FieldDescriptor

logger = logging.getLogger(__name__)


class FieldRegistry:
    def __init__(self):
        self._fields: Dict[int, FieldDescriptor] = {}
        self._by_name: Dict[str, FieldDescriptor] = {}

    def register(self, field: FieldDescriptor) -> FieldDescriptor:
        existing = self._fields.get(field.id)
        if existing is not None and existing != field:
            raise ConfigurationError(
                f"Field ID {field.id} is already registered as '{existing.name}'"
            )
        self._fields[field.id] = field
        self._by_name[field.name] = field
        return field

    def find(self, field_id: int, required: bool = True) -> Optional[FieldDescriptor]:
        field = self._fields.get(field_id)
        if field is None and required:
            raise ConfigurationError(f"Unknown field ID {field_id}")
        return field

    def find_by_name(self, name: str) -> Optional[FieldDescriptor]:
        return self._by_name.get(name)

    def all(self) -> List[FieldDescriptor]:
        return list(self._fields.values())

    def reset(self) -> None:
        self._fields.clear()
        self._by_name.clear()


HandlerFactory = Callable[[Any, FieldDescriptor], Any]


class HandlerRegistry:
    """field ID -> handler factory, with lazily built, cached instances."""

    def __init__(self, engine):
        self.engine = engine
        self._factories: Dict[int, HandlerFactory] = {}
        self._instances: Dict[int, Any] = {}

    def register(self, field_id: int, factory: HandlerFactory) -> None:
        if field_id in self._instances:
            raise ConfigurationError(
                f"Handler for field {field_id} is already in use and cannot be replaced"
            )
        self._factories[field_id] = factory

    def has(self, field_id: int) -> bool:
        return field_id in self._factories

    def find(self, field_id: int, required: bool = True):
        handler = self._instances.get(field_id)
        if handler is None:
            factory = self._factories.get(field_id)
            if factory is None:
                if required:
                    raise ConfigurationError(f"No field handler for field ID {field_id}")
                return None
            handler = factory(self.engine, self.engine.fields.find(field_id))
            self._instances[field_id] = handler
        return handler

    def reset(self) -> None:
        self._instances.clear()
