"""Status field dispatch: StatusHandler -> per-workflow WorkflowHandler.

The status field has one ID globally, but its legal values depend on the
workflow of the ticket's type. StatusHandler is the handler registered for
FIELD_STATUS; on every call it resolves the WorkflowHandler for
context.ticket_type.workflow_id through the WorkflowHandlerRegistry and
forwards to it.

Plugins customize a workflow by registering a WorkflowHandler factory for
its ID before first use. Registration is first-write-wins.
"""

import html
import logging
from typing import Any, Callable, Dict, Optional

from doreen_fields.constants import FIELD_STATUS, STATUS_OPEN
from doreen_fields.context import TicketContext
from doreen_fields.errors import ConfigurationError, InvalidTransitionError
from doreen_fields.fieldhandler import FieldHandler, SelectFromSetHandlerBase
from doreen_fields.models import ChangelogRow, FieldDescriptor, Ticket, TicketMode

logger = logging.getLogger(__name__)


# =========================================================================== #
# WorkflowHandler                                                             #
# =========================================================================== #


class WorkflowHandler(SelectFromSetHandlerBase):
    """Status behavior for one workflow."""

    def __init__(self, engine, field: FieldDescriptor, workflow_id: int):
        super().__init__(engine, field)
        self.workflow_id = workflow_id

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Status"

    def get_workflow(self, context: TicketContext):
        return self.engine.workflows.find(context.store, self.workflow_id)

    def get_initial_value(self, context: TicketContext) -> int:
        wf = self.get_workflow(context)
        return wf.initial if wf else STATUS_OPEN

    def get_valid_values(self, context: TicketContext, current: Any) -> Dict[int, str]:
        """Statuses the ticket may take, mapped to their descriptions.

        New tickets may only take the initial status (any status when
        importing). Existing tickets may move along the workflow's transitions.
        """
        store = context.store
        initial = self.get_initial_value(context)
        valid = [initial]
        if context.mode == TicketMode.create:
            if context.importing:
                valid = list(self.engine.status_values.get_all(store)) + [initial]
        elif current not in (None, ""):
            wf = self.get_workflow(context)
            if wf:
                valid = self.engine.workflows.get_valid_state_transitions(
                    store, wf, int(current)
                )

        return {
            status: self.engine.status_values.get_description(store, status)
            for status in dict.fromkeys(valid)
        }

    def invalid_value_error(self, context: TicketContext, old_value: Any, new_value: Any):
        store = context.store
        describe = self.engine.status_values.get_description
        if old_value in (None, ""):
            message = (
                f"Status {describe(store, _as_int(new_value))} is not a valid "
                "initial status for this ticket"
            )
        else:
            message = (
                f"Cannot change status from {describe(store, _as_int(old_value))} "
                f"to {describe(store, _as_int(new_value))}"
            )
        return InvalidTransitionError(self.name, message)

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Any:
        value = super().validate_before_write(context, old_value, new_value)
        return _as_int(value)

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        if value in (None, ""):
            return ""
        return self.engine.status_values.get_description(context.store, _as_int(value))

    def format_value_html(self, context: TicketContext, value: Any) -> str:
        if value in (None, ""):
            return ""
        status = _as_int(value)
        if status is None:
            return "invalid status value"
        store = context.store
        description = html.escape(self.engine.status_values.get_description(store, status))
        color = self.engine.status_values.get_color(store, status)
        if color:
            return (
                f'<span class="drn-status" style="background-color: '
                f'{html.escape(color)}">{description}</span>'
            )
        return f'<span class="drn-status">{description}</span>'

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        describe = self.engine.status_values.get_description
        return "{} changed from {} to {}".format(
            self.get_label(context),
            describe(context.store, row.int_old),
            describe(context.store, row.int_new),
        )


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


WorkflowHandlerFactory = Callable[[Any, FieldDescriptor, int], Optional[WorkflowHandler]]


class WorkflowHandlerRegistry:
    """Resolves and caches one WorkflowHandler per workflow ID."""

    def __init__(self, engine):
        self.engine = engine
        self._factories: Dict[int, WorkflowHandlerFactory] = {}
        self._handlers: Dict[int, WorkflowHandler] = {}

    def register(self, workflow_id: int, factory: WorkflowHandlerFactory) -> bool:
        """Register a custom handler factory for a workflow.

        Returns:
            False if the workflow already has a registration or a cached
            handler; the earlier one stays in effect.
        """
        if workflow_id in self._factories or workflow_id in self._handlers:
            logger.warning(
                "Workflow handler for workflow %s already registered; ignoring", workflow_id
            )
            return False
        self._factories[workflow_id] = factory
        logger.info("Registered workflow handler for workflow %s", workflow_id)
        return True

    def find(self, workflow_id: Optional[int]) -> WorkflowHandler:
        """Return the handler for a workflow, constructing it on first use.

        Raises:
            ConfigurationError: If no handler can be resolved.
        """
        if workflow_id is None:
            raise ConfigurationError("Ticket type has no workflow; cannot handle status")
        handler = self._handlers.get(workflow_id)
        if handler is None:
            field = self.engine.fields.find(FIELD_STATUS)
            factory = self._factories.get(workflow_id, WorkflowHandler)
            handler = factory(self.engine, field, workflow_id)
            if not isinstance(handler, WorkflowHandler):
                raise ConfigurationError(
                    f"Missing workflow handler for workflow ID {workflow_id}"
                )
            self._handlers[workflow_id] = handler
        return handler

    def reset(self) -> None:
        self._handlers.clear()


# =========================================================================== #
# StatusHandler                                                               #
# =========================================================================== #


class StatusHandler(FieldHandler):
    """Globally registered handler for FIELD_STATUS; forwards to the workflow."""

    def get_workflow_handler(self, context: TicketContext) -> WorkflowHandler:
        ticket_type = context.ticket_type
        workflow_id = ticket_type.workflow_id if ticket_type else None
        return self.engine.workflow_handlers.find(workflow_id)

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        if context is None:
            return self.field.label or "Status"
        return self.get_workflow_handler(context).get_label(context)

    def get_initial_value(self, context: TicketContext) -> Any:
        return self.get_workflow_handler(context).get_initial_value(context)

    def get_valid_values(self, context: TicketContext, current: Any) -> Dict[int, str]:
        return self.get_workflow_handler(context).get_valid_values(context, current)

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Any:
        return self.get_workflow_handler(context).validate_before_write(
            context, old_value, new_value
        )

    def on_create_or_update(
        self, context: TicketContext, ticket: Ticket, flags: int = 0
    ) -> bool:
        if context.ticket_type and context.ticket_type.automatic_status:
            return False
        if context.mode == TicketMode.create and context.variable_data.get(self.name) in (None, ""):
            context.variable_data[self.name] = self.get_initial_value(context)
        return super().on_create_or_update(context, ticket, flags)

    def write_to_database(
        self,
        context: TicketContext,
        ticket: Ticket,
        old_value: Any,
        new_value: Any,
        write_changelog: bool,
    ) -> None:
        self.get_workflow_handler(context).write_to_database(
            context, ticket, old_value, new_value, write_changelog
        )

    def add_to_changelog(self, context: TicketContext, ticket_id: int, *args, **kwargs) -> int:
        return self.get_workflow_handler(context).add_to_changelog(
            context, ticket_id, *args, **kwargs
        )

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        return self.get_workflow_handler(context).format_value_plain(context, value)

    def format_value_html(self, context: TicketContext, value: Any) -> str:
        return self.get_workflow_handler(context).format_value_html(context, value)

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        return self.engine.workflow_handlers.find(row.workflow_id).format_changelog_item(
            context, row
        )
