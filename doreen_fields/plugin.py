"""Plugin registration entry point for doreen-fields.

Provides a single function to wire up REST API routes, custom workflow
handlers and the schema DDL into the host application.
"""

import logging
from typing import Any, Callable, Dict, Optional

from doreen_fields.api_routes import configure_routes, router
from doreen_fields.engine import FieldEngine, get_engine
from doreen_fields.schema import get_all_field_tables_sql
from doreen_fields.service import SearchSink
from doreen_fields.status import WorkflowHandlerFactory

logger = logging.getLogger(__name__)


def register_plugin(
    api_router: Any,
    get_db_func: Callable,
    resolve_schema_func: Optional[Callable] = None,
    workflow_handlers: Optional[Dict[int, WorkflowHandlerFactory]] = None,
    search_sink: Optional[SearchSink] = None,
    engine: Optional[FieldEngine] = None,
) -> Dict[str, Any]:
    """One-call plugin registration.

    Wires up:
    1. Custom workflow handlers on the field engine
    2. REST API routes on the api_router
    3. Returns the schema SQL function for new projects

    Args:
        api_router: FastAPI APIRouter to include ticket routes.
        get_db_func: Function(project=None) -> context-manager DB connection.
        resolve_schema_func: Optional function to resolve project name to schema.
        workflow_handlers: workflow ID -> WorkflowHandler factory. A workflow
            that already has a handler keeps it.
        search_sink: Optional receiver of searchable ticket text.
        engine: Field engine to configure. If None, the process engine.

    Returns:
        Dict with:
            - schema_sql_func: Function(schema) -> DDL SQL for new projects
    """
    engine = engine or get_engine()

    # 1. Register workflow handlers
    for workflow_id, factory in (workflow_handlers or {}).items():
        engine.workflow_handlers.register(workflow_id, factory)

    # 2. Configure and include REST API routes
    configure_routes(
        get_db_func=get_db_func,
        resolve_schema_func=resolve_schema_func,
        engine=engine,
        search_sink=search_sink,
    )
    api_router.include_router(router)
    logger.info("doreen_fields: REST API routes mounted")

    # 3. Return schema SQL
    return {
        "schema_sql_func": get_all_field_tables_sql,
    }
