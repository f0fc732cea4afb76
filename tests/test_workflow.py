"""Tests for workflows, the status field and workflow handler registration.

Workflows and status values are preloaded into the engine cache, so
handler tests only touch the database for field rows.
"""

from unittest.mock import MagicMock

import pytest
from psycopg2 import sql as psql
from pydantic import ValidationError

from doreen_fields.config import EngineSettings
from doreen_fields.constants import (
    FIELD_STATUS,
    STATUS_CLOSED,
    STATUS_CONFIRMED,
    STATUS_IN_PROGRESS,
    STATUS_NEW,
    STATUS_RESOLVED,
)
from doreen_fields.context import TicketContext
from doreen_fields.engine import FieldEngine
from doreen_fields.errors import ConfigurationError, InvalidTransitionError
from doreen_fields.models import ChangelogRow, StatusValue, Ticket, TicketMode, TicketType
from doreen_fields.status import WorkflowHandler
from doreen_fields.workflow import TicketWorkflow

FIXED_TIME = 1700000000.0
WORKFLOW_ID = 1

STATUSES = [STATUS_NEW, STATUS_CONFIRMED, STATUS_IN_PROGRESS, STATUS_RESOLVED, STATUS_CLOSED]
TRANSITIONS = {
    STATUS_NEW: [STATUS_CONFIRMED, STATUS_CLOSED],
    STATUS_CONFIRMED: [STATUS_IN_PROGRESS],
    STATUS_IN_PROGRESS: [STATUS_RESOLVED],
    STATUS_RESOLVED: [STATUS_CLOSED],
}
NAMES = {
    STATUS_NEW: "New",
    STATUS_CONFIRMED: "Confirmed",
    STATUS_IN_PROGRESS: "In progress",
    STATUS_RESOLVED: "Resolved",
    STATUS_CLOSED: "Closed",
}


def _mock_store():
    store = MagicMock()
    store.insert.side_effect = lambda table, values: {
        "ticket_ints": 51,
        "changelog": 500,
        "workflows": 2,
    }.get(table, 99)
    store.table.side_effect = lambda name: psql.Identifier("test_project", name)
    store.fetch_all.return_value = []
    store.select.return_value = []
    return store


def _workflow(**overrides):
    data = {
        "id": WORKFLOW_ID,
        "name": "Bug",
        "initial": STATUS_NEW,
        "statuses": STATUSES,
        "transitions": TRANSITIONS,
    }
    data.update(overrides)
    return TicketWorkflow(**data)


def _ticket_type(**overrides):
    data = {"id": 1, "name": "Bug", "workflow_id": WORKFLOW_ID, "field_ids": [FIELD_STATUS]}
    data.update(overrides)
    return TicketType(**data)


class TestTicketWorkflow:
    def test_initial_must_be_a_member(self):
        with pytest.raises(ValidationError, match="Initial status"):
            _workflow(initial=STATUS_CLOSED, statuses=[STATUS_NEW])

    def test_valid_transitions_include_current_first(self):
        wf = _workflow()
        assert wf.get_valid_state_transitions(STATUS_NEW) == [
            STATUS_NEW, STATUS_CONFIRMED, STATUS_CLOSED
        ]
        assert wf.get_valid_state_transitions(STATUS_CLOSED) == [STATUS_CLOSED]

    def test_terminal_statuses(self):
        assert _workflow().terminal_statuses() == [STATUS_CLOSED]


class TestWorkflowRepository:
    def setup_method(self):
        self.engine = FieldEngine(settings=EngineSettings())
        self.store = _mock_store()

    def test_create_inserts_statuses_and_graph(self):
        wf = self.engine.workflows.create(
            self.store, "Simple", STATUS_NEW, [STATUS_NEW, STATUS_CLOSED],
            {STATUS_NEW: [STATUS_CLOSED]},
        )

        assert wf.id == 2
        tables = [c.args[0] for c in self.store.insert.call_args_list]
        assert tables == ["workflows", "workflow_statuses", "workflow_statuses", "state_transitions"]
        self.store.insert.assert_any_call(
            "state_transitions",
            {"workflow_id": 2, "from_status": STATUS_NEW, "to_status": STATUS_CLOSED},
        )
        self.store.transaction.assert_called_once()
        assert self.engine.workflows.find(self.store, 2) is wf

    def test_create_rejects_transition_outside_status_set(self):
        with pytest.raises(ConfigurationError, match="outside"):
            self.engine.workflows.create(
                self.store, "Broken", STATUS_NEW, [STATUS_NEW], {STATUS_NEW: [STATUS_CLOSED]}
            )
        self.store.insert.assert_not_called()

    def test_transitions_are_loaded_on_first_use(self):
        self.store.select.return_value = [
            {"from_status": STATUS_NEW, "to_status": STATUS_CONFIRMED},
        ]
        wf = _workflow(transitions=None)

        targets = self.engine.workflows.get_valid_state_transitions(self.store, wf, STATUS_NEW)

        assert targets == [STATUS_NEW, STATUS_CONFIRMED]
        self.store.select.assert_called_once_with(
            "state_transitions",
            ("from_status", "to_status"),
            {"workflow_id": WORKFLOW_ID},
            order_by="i",
        )

    def test_update_replaces_graph(self):
        wf = _workflow()

        updated = self.engine.workflows.update(
            self.store, wf, [STATUS_NEW, STATUS_CLOSED], {STATUS_NEW: [STATUS_CLOSED]}
        )

        self.store.delete.assert_any_call("state_transitions", {"workflow_id": WORKFLOW_ID})
        self.store.delete.assert_any_call("workflow_statuses", {"workflow_id": WORKFLOW_ID})
        assert updated.statuses == [STATUS_NEW, STATUS_CLOSED]
        assert updated.terminal_statuses() == [STATUS_CLOSED]

    def test_unknown_status_description(self):
        assert self.engine.status_values.get_description(self.store, 12345) == "unknown"

    def test_create_status_value_with_fixed_id(self):
        self.store.insert.side_effect = lambda table, values: values["i"]

        sv = self.engine.status_values.create(self.store, "Closed", status_id=STATUS_CLOSED)

        self.store.insert.assert_called_once_with(
            "status_values", {"i": STATUS_CLOSED, "name": "Closed", "html_color": None}
        )
        assert self.engine.status_values.get_description(self.store, STATUS_CLOSED) == "Closed"
        assert sv.id == STATUS_CLOSED


class StatusTestBase:
    def setup_method(self):
        self.engine = FieldEngine(settings=EngineSettings())
        self.engine.cache.put(_workflow())
        self.engine.cache.mark_loaded(TicketWorkflow)
        for status_id, name in NAMES.items():
            color = "#f00" if status_id == STATUS_NEW else None
            self.engine.cache.put(StatusValue(id=status_id, name=name, html_color=color))
        self.engine.cache.mark_loaded(StatusValue)
        self.handler = self.engine.find_handler(FIELD_STATUS)
        self.store = _mock_store()

    def _context(self, mode, ticket=None, importing=None, **values):
        return TicketContext(
            self.engine,
            self.store,
            mode,
            ticket_type=_ticket_type(),
            ticket=ticket,
            chg_uid=9,
            variable_data=values,
            importing=importing,
            now=FIXED_TIME,
        )

    def _existing_ticket(self, status):
        return Ticket(
            id=7,
            type=_ticket_type(),
            field_data={FIELD_STATUS: status},
            field_row_ids={FIELD_STATUS: 50},
        )


class TestStatusHandler(StatusTestBase):
    def test_new_ticket_gets_initial_status(self):
        ticket = Ticket(id=7, type=_ticket_type())

        assert self.handler.on_create_or_update(self._context(TicketMode.create, ticket), ticket)

        self.store.insert.assert_any_call(
            "ticket_ints", {"ticket_id": 7, "field_id": FIELD_STATUS, "value": STATUS_NEW}
        )
        assert ticket.field_data[FIELD_STATUS] == STATUS_NEW

    def test_new_ticket_cannot_skip_initial_status(self):
        ticket = Ticket(id=7, type=_ticket_type())
        ctx = self._context(TicketMode.create, ticket, status=STATUS_CLOSED)

        with pytest.raises(InvalidTransitionError, match="not a valid initial status"):
            self.handler.on_create_or_update(ctx, ticket)

    def test_import_bypasses_initial_status(self):
        ticket = Ticket(id=7, type=_ticket_type())
        ctx = self._context(TicketMode.create, ticket, importing=True, status=STATUS_CLOSED)

        assert self.handler.on_create_or_update(ctx, ticket)
        assert ticket.field_data[FIELD_STATUS] == STATUS_CLOSED

    def test_permitted_transition(self):
        ticket = self._existing_ticket(STATUS_NEW)
        ctx = self._context(TicketMode.edit, ticket, status=str(STATUS_CONFIRMED))

        assert self.handler.on_create_or_update(ctx, ticket)

        self.store.update.assert_called_once_with("ticket_ints", {"ticket_id": None}, {"i": 50})
        assert ticket.field_data[FIELD_STATUS] == STATUS_CONFIRMED
        assert ticket.field_row_ids[FIELD_STATUS] == 51

    def test_forbidden_transition(self):
        ticket = self._existing_ticket(STATUS_NEW)
        ctx = self._context(TicketMode.edit, ticket, status=STATUS_IN_PROGRESS)

        with pytest.raises(InvalidTransitionError) as exc:
            self.handler.on_create_or_update(ctx, ticket)

        assert exc.value.to_dict() == {
            "field": "status",
            "message": "Cannot change status from New to In progress",
        }
        self.store.insert.assert_not_called()

    def test_import_bypasses_forbidden_transition(self):
        ticket = self._existing_ticket(STATUS_NEW)
        ctx = self._context(TicketMode.edit, ticket, importing=True, status=STATUS_IN_PROGRESS)

        assert self.handler.on_create_or_update(ctx, ticket)

        self.store.insert.assert_any_call(
            "ticket_ints", {"ticket_id": 7, "field_id": FIELD_STATUS, "value": STATUS_IN_PROGRESS}
        )
        self.store.update.assert_called_once_with("ticket_ints", {"ticket_id": None}, {"i": 50})
        assert ticket.field_data[FIELD_STATUS] == STATUS_IN_PROGRESS

    def test_automatic_status_types_are_skipped(self):
        ticket = Ticket(id=7, type=_ticket_type(automatic_status=True))
        ctx = TicketContext(
            self.engine, self.store, TicketMode.create, ticket=ticket,
            variable_data={"status": STATUS_CLOSED},
        )

        assert self.handler.on_create_or_update(ctx, ticket) is False
        self.store.insert.assert_not_called()

    def test_html_uses_status_color(self):
        ctx = self._context(TicketMode.readonly_details)

        assert self.handler.format_value_html(ctx, STATUS_NEW) == (
            '<span class="drn-status" style="background-color: #f00">New</span>'
        )
        assert self.handler.format_value_html(ctx, STATUS_CLOSED) == (
            '<span class="drn-status">Closed</span>'
        )
        assert self.handler.format_value_html(ctx, None) == ""
        assert self.handler.format_value_html(ctx, "") == ""
        assert self.handler.format_value_html(ctx, "bogus") == "invalid status value"

    def test_changelog_uses_workflow_of_row(self):
        ctx = TicketContext(self.engine, self.store, TicketMode.readonly_details)
        row = ChangelogRow(
            id=1, field_id=FIELD_STATUS, chg_dt=FIXED_TIME,
            int_old=STATUS_NEW, int_new=STATUS_CONFIRMED, workflow_id=WORKFLOW_ID,
        )

        assert self.handler.format_changelog_item(ctx, row) == (
            "Status changed from New to Confirmed"
        )


class LenientWorkflowHandler(WorkflowHandler):
    def get_label(self, context=None):
        return "State"


class OtherWorkflowHandler(WorkflowHandler):
    pass


class TestWorkflowHandlerRegistry(StatusTestBase):
    def test_first_registration_wins(self):
        registry = self.engine.workflow_handlers

        assert registry.register(WORKFLOW_ID, LenientWorkflowHandler) is True
        assert registry.register(WORKFLOW_ID, OtherWorkflowHandler) is False
        assert isinstance(registry.find(WORKFLOW_ID), LenientWorkflowHandler)

    def test_custom_handler_is_used_by_status_field(self):
        self.engine.workflow_handlers.register(WORKFLOW_ID, LenientWorkflowHandler)

        assert self.handler.get_label(self._context(TicketMode.edit)) == "State"

    def test_default_handler_is_cached(self):
        registry = self.engine.workflow_handlers
        first = registry.find(WORKFLOW_ID)

        assert type(first) is WorkflowHandler
        assert registry.find(WORKFLOW_ID) is first
        assert registry.register(WORKFLOW_ID, OtherWorkflowHandler) is False

    def test_reset_keeps_registrations(self):
        registry = self.engine.workflow_handlers
        registry.register(WORKFLOW_ID, LenientWorkflowHandler)
        first = registry.find(WORKFLOW_ID)

        self.engine.reset()

        second = registry.find(WORKFLOW_ID)
        assert second is not first
        assert isinstance(second, LenientWorkflowHandler)

    def test_type_without_workflow(self):
        with pytest.raises(ConfigurationError, match="no workflow"):
            self.engine.workflow_handlers.find(None)

    def test_factory_returning_nothing(self):
        self.engine.workflow_handlers.register(5, lambda engine, field, workflow_id: None)

        with pytest.raises(ConfigurationError, match="Missing workflow handler"):
            self.engine.workflow_handlers.find(5)
