"""FastAPI REST API routes for doreen-fields.

Generic ticket create/read/update, changelog and comment endpoints, driven by the
field handlers of each ticket's type. The router is mounted at
/projects/{name}/tickets by the host application.

The router receives the DB connection via FastAPI dependency injection.
"""

from typing import Callable, List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from doreen_fields.engine import FieldEngine
from doreen_fields.errors import (
    CommentNotFoundError,
    ConfigurationError,
    FieldValidationError,
    StaleCommentError,
)
from doreen_fields.models import (
    ChangelogResponse,
    CommentBody,
    CommentResponse,
    TicketCreate,
    TicketResponse,
    TicketUpdate,
    WorkflowResponse,
)
from doreen_fields.service import SearchSink, TicketFieldService

router = APIRouter(prefix="/projects/{name}/tickets", tags=["Tickets"])

# Service singleton
_service = TicketFieldService()

# These will be set by the plugin registration to provide DB access.
# get_db_func(project) returns a context manager that yields a DB connection.
_get_db_for_project: Optional[Callable] = None
_resolve_schema: Optional[Callable] = None


def configure_routes(
    get_db_func: Callable,
    resolve_schema_func: Optional[Callable] = None,
    engine: Optional[FieldEngine] = None,
    search_sink: Optional[SearchSink] = None,
) -> None:
    """Configure the router with database access functions.

    Args:
        get_db_func: Function(project) -> context-manager DB connection.
        resolve_schema_func: Function(name) -> schema name. If None, uses name directly.
        engine: Field engine to use. If None, the process engine.
        search_sink: Optional receiver of searchable ticket text.
    """
    global _get_db_for_project, _resolve_schema, _service
    _get_db_for_project = get_db_func
    _resolve_schema = resolve_schema_func
    _service = TicketFieldService(engine=engine, search_sink=search_sink)


def _get_schema(name: str) -> str:
    """Resolve project name to schema name."""
    return _resolve_schema(name) if _resolve_schema else name


def _require_db():
    """Ensure DB access is configured."""
    if _get_db_for_project is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ticket field engine DB access not configured",
        )


def _field_error(e: FieldValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.to_dict()
    )


def _config_error(e: ConfigurationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
    )


# --------------------------------------------------------------------------- #
# Workflows                                                                   #
# --------------------------------------------------------------------------- #


@router.get("/workflows", response_model=List[WorkflowResponse])
async def list_workflows(name: str):
    """List workflows with their statuses and transition graphs."""
    _require_db()
    schema = _get_schema(name)
    with _get_db_for_project(name) as conn:
        return _service.list_workflows(conn, schema)


# --------------------------------------------------------------------------- #
# Tickets                                                                     #
# --------------------------------------------------------------------------- #


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    name: str,
    body: TicketCreate,
    changed_by: Optional[int] = Query(None),
):
    """Create a ticket; field values are keyed by field name."""
    _require_db()
    schema = _get_schema(name)
    with _get_db_for_project(name) as conn:
        ticket_type = _service.get_ticket_type(conn, schema, body.type_id)
        if not ticket_type:
            raise HTTPException(
                status_code=422, detail=f"Ticket type {body.type_id} not found"
            )
        try:
            ticket = _service.create_ticket(
                conn, schema, body, ticket_type, changed_by=changed_by
            )
            return _service.to_response(conn, schema, ticket)
        except FieldValidationError as e:
            raise _field_error(e)
        except ConfigurationError as e:
            raise _config_error(e)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(name: str, ticket_id: int):
    """Get a ticket with raw and formatted field values."""
    _require_db()
    schema = _get_schema(name)
    with _get_db_for_project(name) as conn:
        try:
            ticket = _service.load_ticket(conn, schema, ticket_id)
            if not ticket:
                raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
            return _service.to_response(conn, schema, ticket)
        except ConfigurationError as e:
            raise _config_error(e)


@router.put("/{ticket_id}", response_model=TicketResponse)
async def update_ticket(
    name: str,
    ticket_id: int,
    body: TicketUpdate,
    changed_by: Optional[int] = Query(None),
):
    """Update ticket fields. Fields not in the body are left alone."""
    _require_db()
    schema = _get_schema(name)
    with _get_db_for_project(name) as conn:
        try:
            ticket = _service.load_ticket(conn, schema, ticket_id)
            if not ticket:
                raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
            _service.update_ticket(conn, schema, ticket, body, changed_by=changed_by)
            return _service.to_response(conn, schema, ticket)
        except FieldValidationError as e:
            raise _field_error(e)
        except ConfigurationError as e:
            raise _config_error(e)


@router.get("/{ticket_id}/changelog", response_model=ChangelogResponse)
async def get_changelog(
    name: str,
    ticket_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Rendered change history of a ticket, newest first."""
    _require_db()
    schema = _get_schema(name)
    with _get_db_for_project(name) as conn:
        return _service.get_changelog(conn, schema, ticket_id, limit=limit, offset=offset)


# --------------------------------------------------------------------------- #
# Comments                                                                    #
# --------------------------------------------------------------------------- #


def _comment_error(e: Exception) -> HTTPException:
    if isinstance(e, StaleCommentError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=404, detail=str(e))


@router.post(
    "/{ticket_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    name: str,
    ticket_id: int,
    body: CommentBody,
    changed_by: Optional[int] = Query(None),
):
    """Add a comment; the returned ID is its changelog row."""
    _require_db()
    schema = _get_schema(name)
    with _get_db_for_project(name) as conn:
        try:
            ticket = _service.load_ticket(conn, schema, ticket_id)
            if not ticket:
                raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
            comment_id = _service.add_comment(
                conn, schema, ticket, body.text, changed_by=changed_by
            )
        except FieldValidationError as e:
            raise _field_error(e)
        except ConfigurationError as e:
            raise _config_error(e)
        return CommentResponse(id=comment_id, ticket_id=ticket_id, text=body.text)


@router.put("/{ticket_id}/comments/{comment_id}", response_model=CommentResponse)
async def update_comment(
    name: str,
    ticket_id: int,
    comment_id: int,
    body: CommentBody,
    changed_by: Optional[int] = Query(None),
):
    """Replace a comment's text. The response carries the comment's new ID."""
    _require_db()
    schema = _get_schema(name)
    with _get_db_for_project(name) as conn:
        try:
            new_id = _service.update_comment(
                conn, schema, ticket_id, comment_id, body.text, changed_by=changed_by
            )
        except FieldValidationError as e:
            raise _field_error(e)
        except (CommentNotFoundError, StaleCommentError) as e:
            raise _comment_error(e)
        return CommentResponse(id=new_id, ticket_id=ticket_id, text=body.text)


@router.delete("/{ticket_id}/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(
    name: str,
    ticket_id: int,
    comment_id: int,
    changed_by: Optional[int] = Query(None),
):
    """Retract a comment."""
    _require_db()
    schema = _get_schema(name)
    with _get_db_for_project(name) as conn:
        try:
            _service.delete_comment(conn, schema, ticket_id, comment_id, changed_by=changed_by)
        except (CommentNotFoundError, StaleCommentError) as e:
            raise _comment_error(e)
