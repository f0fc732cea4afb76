"""Doreen Fields - pluggable ticket field and workflow engine."""

from doreen_fields.engine import FieldEngine, get_engine, reset_engine
from doreen_fields.errors import (
    CommentNotFoundError,
    ConfigurationError,
    FieldValidationError,
    InvalidTransitionError,
    MissingFieldDataError,
    StaleCommentError,
)
from doreen_fields.fieldhandler import FieldHandler, SelectFromSetHandlerBase
from doreen_fields.models import (
    FieldDescriptor,
    FieldFlag,
    Ticket,
    TicketCreate,
    TicketMode,
    TicketResponse,
    TicketType,
    TicketUpdate,
)
from doreen_fields.schema import get_all_field_tables_sql
from doreen_fields.service import TicketFieldService
from doreen_fields.status import WorkflowHandler

__version__ = "0.1.0"

__all__ = [
    "FieldEngine",
    "get_engine",
    "reset_engine",
    "FieldHandler",
    "SelectFromSetHandlerBase",
    "WorkflowHandler",
    "TicketFieldService",
    "FieldDescriptor",
    "FieldFlag",
    "Ticket",
    "TicketCreate",
    "TicketUpdate",
    "TicketResponse",
    "TicketMode",
    "TicketType",
    "ConfigurationError",
    "FieldValidationError",
    "InvalidTransitionError",
    "MissingFieldDataError",
    "CommentNotFoundError",
    "StaleCommentError",
    "get_all_field_tables_sql",
]
