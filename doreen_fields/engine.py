"""Process-scoped engine state: registries, repositories and caches.

One FieldEngine is built per process by get_engine(). Everything loaded
lazily from the database (categories, keywords, workflows, status values,
handler instances) lives on it and is dropped by reset(). Forked children
reset their copy so they never reuse a parent's cached state.
"""

import logging
import os
from typing import Any, Callable, Optional

from doreen_fields.cache import EntityCache
from doreen_fields.categories import CategoryRepository
from doreen_fields.changelog import Changelog
from doreen_fields.config import EngineSettings, get_settings
from doreen_fields.constants import (
    FIELD_CATEGORY,
    FIELD_CHILDREN,
    FIELD_COMMENT,
    FIELD_COMMENT_DELETED,
    FIELD_COMMENT_UPDATED,
    FIELD_CREATED_DT,
    FIELD_DESCRIPTION,
    FIELD_KEYWORDS,
    FIELD_LASTMOD_DT,
    FIELD_PARENTS,
    FIELD_PRIORITY,
    FIELD_PROJECT,
    FIELD_STATUS,
    FIELD_TITLE,
    FIELD_UIDASSIGN,
)
from doreen_fields.fieldhandler import FieldHandler
from doreen_fields.handlers import (
    AssigneeHandler,
    CategoryHandler,
    ChildrenHandler,
    CommentHandler,
    CreatedDateTimeHandler,
    DeletedCommentHandler,
    KeywordsHandler,
    LastModifiedDateTimeHandler,
    ParentsHandler,
    PriorityHandler,
    ProjectHandler,
    UpdatedCommentHandler,
)
from doreen_fields.keywords import KeywordRepository
from doreen_fields.models import FieldDescriptor, FieldFlag
from doreen_fields.registry import FieldRegistry, HandlerRegistry
from doreen_fields.status import StatusHandler, WorkflowHandlerRegistry
from doreen_fields.workflow import StatusValueRepository, WorkflowRepository

logger = logging.getLogger(__name__)

_HISTORIZED = FieldFlag.STD_DATA_OLD_NEW
_INT = FieldFlag.STD_DATA_OLD_NEW | FieldFlag.TYPE_INT

CORE_FIELDS = [
    (
        FieldDescriptor(
            id=FIELD_TITLE,
            name="title",
            tblname="ticket_texts",
            label="Title",
            flags=_HISTORIZED | FieldFlag.REQUIRED_IN_POST_PUT | FieldFlag.SORTABLE,
        ),
        FieldHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_DESCRIPTION,
            name="description",
            tblname="ticket_texts",
            label="Description",
            flags=_HISTORIZED,
        ),
        FieldHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_PROJECT,
            name="project",
            tblname="ticket_ints",
            flags=_INT | FieldFlag.MAPPED_FROM_PROJECT,
        ),
        ProjectHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_KEYWORDS,
            name="keywords",
            tblname="ticket_keywords",
            flags=_HISTORIZED | FieldFlag.ARRAY,
        ),
        KeywordsHandler,
    ),
    (
        FieldDescriptor(id=FIELD_CATEGORY, name="category", tblname="ticket_ints", flags=_INT),
        CategoryHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_PRIORITY,
            name="priority",
            tblname="ticket_ints",
            flags=_INT | FieldFlag.REQUIRED_IN_POST_PUT | FieldFlag.SORTABLE | FieldFlag.DESCENDING,
        ),
        PriorityHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_STATUS,
            name="status",
            tblname="ticket_ints",
            flags=_INT | FieldFlag.REQUIRED_IN_POST_PUT | FieldFlag.SORTABLE,
        ),
        StatusHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_UIDASSIGN,
            name="assignee",
            tblname="ticket_ints",
            flags=_INT | FieldFlag.SORTABLE,
        ),
        AssigneeHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_PARENTS,
            name="parents",
            tblname="ticket_parents",
            flags=_HISTORIZED | FieldFlag.ARRAY | FieldFlag.ARRAY_HAS_REVERSE,
        ),
        ParentsHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_CHILDREN,
            name="children",
            tblname="ticket_parents",
            flags=_HISTORIZED | FieldFlag.ARRAY | FieldFlag.ARRAY_REVERSE,
        ),
        ChildrenHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_COMMENT,
            name="comment",
            tblname="ticket_texts",
            label="Comment",
            flags=FieldFlag.CHANGELOGONLY,
        ),
        CommentHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_COMMENT_UPDATED,
            name="comment_updated",
            tblname="ticket_texts",
            flags=FieldFlag.CHANGELOGONLY | FieldFlag.EMPTYTICKETEVENT,
        ),
        UpdatedCommentHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_COMMENT_DELETED,
            name="comment_deleted",
            tblname="ticket_texts",
            flags=FieldFlag.CHANGELOGONLY | FieldFlag.EMPTYTICKETEVENT,
        ),
        DeletedCommentHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_CREATED_DT,
            name="created",
            flags=FieldFlag.VIRTUAL_IGNORE_POST_PUT | FieldFlag.SORTABLE,
        ),
        CreatedDateTimeHandler,
    ),
    (
        FieldDescriptor(
            id=FIELD_LASTMOD_DT,
            name="changed",
            flags=FieldFlag.VIRTUAL_IGNORE_POST_PUT | FieldFlag.SORTABLE,
        ),
        LastModifiedDateTimeHandler,
    ),
]


class FieldEngine:
    """Registries, repositories and caches for one process."""

    def __init__(self, settings: Optional[EngineSettings] = None, register_core: bool = True):
        self.settings = settings or get_settings()
        self.cache = EntityCache()
        self.fields = FieldRegistry()
        self.handlers = HandlerRegistry(self)
        self.workflow_handlers = WorkflowHandlerRegistry(self)
        self.changelog = Changelog()
        self.categories = CategoryRepository(self.cache)
        self.keywords = KeywordRepository(self.cache)
        self.workflows = WorkflowRepository(self.cache)
        self.status_values = StatusValueRepository(self.cache)
        if register_core:
            self.register_core_fields()

    def register_core_fields(self) -> None:
        for field, factory in CORE_FIELDS:
            self.register_field(field, factory)

    def register_field(
        self,
        field: FieldDescriptor,
        factory: Optional[Callable[[Any, FieldDescriptor], Any]] = None,
    ) -> FieldDescriptor:
        """Register a field descriptor and, optionally, its handler factory.

        Fields registered without a factory use the plain FieldHandler.
        """
        self.fields.register(field)
        self.handlers.register(field.id, factory or FieldHandler)
        logger.debug("Registered field %d '%s'", field.id, field.name)
        return field

    def find_handler(self, field_id: int, required: bool = True):
        return self.handlers.find(field_id, required)

    def reset(self) -> None:
        """Drop every cached entity and handler instance. Registrations stay."""
        self.cache.reset()
        self.handlers.reset()
        self.workflow_handlers.reset()


_engine: Optional[FieldEngine] = None


def get_engine() -> FieldEngine:
    global _engine
    if _engine is None:
        _engine = FieldEngine()
    return _engine


def reset_engine() -> None:
    """Discard the process engine entirely, registrations included."""
    global _engine
    _engine = None


def _reset_caches_in_child() -> None:
    if _engine is not None:
        _engine.reset()


if hasattr(os, "register_at_fork"):
    os.register_at_fork(after_in_child=_reset_caches_in_child)
