"""Tests for the base FieldHandler: historized scalars, arrays and formatting.

Storage is a MagicMock FieldStore; insert() returns fixed row IDs per table.
"""

from unittest.mock import MagicMock, call

import pytest
from psycopg2 import sql as psql

from doreen_fields.changelog import format_delta, parse_delta
from doreen_fields.config import EngineSettings
from doreen_fields.constants import (
    CREATEFL_IGNOREMISSING,
    CREATEFL_NOCHANGELOG,
    FIELD_CHILDREN,
    FIELD_PARENTS,
    FIELD_TITLE,
)
from doreen_fields.context import TicketContext
from doreen_fields.engine import FieldEngine
from doreen_fields.errors import FieldValidationError, MissingFieldDataError
from doreen_fields.fieldhandler import FieldHandler
from doreen_fields.models import (
    ChangelogRow,
    FieldDescriptor,
    FieldFlag,
    Ticket,
    TicketMode,
    TicketType,
)

FIXED_TIME = 1700000000.0
ESTIMATE_FIELD = 200
LINKS_FIELD = 210


def _mock_store(row_ids=None):
    ids = {"changelog": 500}
    ids.update(row_ids or {})
    store = MagicMock()
    store.insert.side_effect = lambda table, values: ids[table]
    store.table.side_effect = lambda name: psql.Identifier("test_project", name)
    return store


def _ticket(**overrides):
    data = {
        "id": 7,
        "type": TicketType(id=1, name="Task", field_ids=[FIELD_TITLE]),
        "lastmod_uid": 3,
    }
    data.update(overrides)
    return Ticket(**data)


def _changelog_values(ticket_id, field_id, value_1=None, value_2=None, value_str=None):
    return {
        "field_id": field_id,
        "what": ticket_id,
        "chg_uid": 9,
        "chg_dt": FIXED_TIME,
        "value_1": value_1,
        "value_2": value_2,
        "value_str": value_str,
    }


class HandlerTestBase:
    def setup_method(self):
        self.engine = FieldEngine(settings=EngineSettings())
        self.engine.register_field(
            FieldDescriptor(
                id=ESTIMATE_FIELD,
                name="estimate",
                tblname="ticket_floats",
                flags=FieldFlag.STD_DATA_OLD_NEW,
            )
        )
        self.engine.register_field(
            FieldDescriptor(
                id=LINKS_FIELD,
                name="links",
                tblname="ticket_parents",
                flags=FieldFlag.ARRAY | FieldFlag.ARRAY_COUNT,
            )
        )

    def _context(self, store, ticket=None, mode=TicketMode.edit, **values):
        return TicketContext(
            self.engine,
            store,
            mode,
            ticket=ticket,
            chg_uid=9,
            variable_data=values,
            now=FIXED_TIME,
        )


# --------------------------------------------------------------------------- #
# Historized scalars                                                          #
# --------------------------------------------------------------------------- #


class TestHistorizedScalar(HandlerTestBase):
    def test_update_detaches_old_row_and_logs_both_ids(self):
        store = _mock_store({"ticket_texts": 101})
        ticket = _ticket(field_data={FIELD_TITLE: "Old"}, field_row_ids={FIELD_TITLE: 100})
        handler = self.engine.find_handler(FIELD_TITLE)

        changed = handler.on_create_or_update(self._context(store, ticket, title="New"), ticket)

        assert changed is True
        store.insert.assert_any_call(
            "ticket_texts", {"ticket_id": 7, "field_id": FIELD_TITLE, "value": "New"}
        )
        store.update.assert_called_once_with("ticket_texts", {"ticket_id": None}, {"i": 100})
        store.delete.assert_not_called()
        store.insert.assert_any_call("changelog", _changelog_values(7, FIELD_TITLE, 100, 101))
        assert ticket.field_data[FIELD_TITLE] == "New"
        assert ticket.field_row_ids[FIELD_TITLE] == 101

    def test_unchanged_value_writes_nothing(self):
        store = _mock_store()
        ticket = _ticket(field_data={FIELD_TITLE: "Same"}, field_row_ids={FIELD_TITLE: 100})
        handler = self.engine.find_handler(FIELD_TITLE)

        assert handler.on_create_or_update(self._context(store, ticket, title="Same"), ticket) is False
        store.insert.assert_not_called()

    def test_clearing_numeric_field_inserts_no_row(self):
        store = _mock_store()
        ticket = _ticket(field_data={ESTIMATE_FIELD: 3.5}, field_row_ids={ESTIMATE_FIELD: 40})
        handler = self.engine.find_handler(ESTIMATE_FIELD)

        handler.on_create_or_update(self._context(store, ticket, estimate=""), ticket)

        store.update.assert_called_once_with("ticket_floats", {"ticket_id": None}, {"i": 40})
        assert store.insert.call_args_list == [
            call("changelog", _changelog_values(7, ESTIMATE_FIELD, 40, None))
        ]
        assert ticket.field_data[ESTIMATE_FIELD] is None
        assert ticket.field_row_ids[ESTIMATE_FIELD] is None

    def test_nochangelog_flag(self):
        store = _mock_store({"ticket_texts": 101})
        ticket = _ticket()
        handler = self.engine.find_handler(FIELD_TITLE)
        ctx = self._context(store, ticket, mode=TicketMode.create, title="Hello")

        handler.on_create_or_update(ctx, ticket, CREATEFL_NOCHANGELOG)

        assert [c.args[0] for c in store.insert.call_args_list] == ["ticket_texts"]


class TestRequiredFields(HandlerTestBase):
    def test_missing_required_value_on_create(self):
        ticket = _ticket()
        handler = self.engine.find_handler(FIELD_TITLE)
        ctx = self._context(_mock_store(), ticket, mode=TicketMode.create)

        with pytest.raises(MissingFieldDataError) as exc:
            handler.on_create_or_update(ctx, ticket)
        assert exc.value.to_dict() == {
            "field": "title",
            "message": "Missing data for field 'title'",
        }

    def test_empty_required_value_is_rejected(self):
        ticket = _ticket(field_data={FIELD_TITLE: "Old"}, field_row_ids={FIELD_TITLE: 100})
        handler = self.engine.find_handler(FIELD_TITLE)

        with pytest.raises(MissingFieldDataError):
            handler.on_create_or_update(self._context(_mock_store(), ticket, title=""), ticket)

    def test_ignoremissing_allows_partial_update(self):
        ticket = _ticket(field_data={FIELD_TITLE: "Old"})
        handler = self.engine.find_handler(FIELD_TITLE)
        ctx = self._context(_mock_store(), ticket)

        assert handler.on_create_or_update(ctx, ticket, CREATEFL_IGNOREMISSING) is False

    def test_fixed_createonly_is_only_required_on_create(self):
        field = FieldDescriptor(
            id=220,
            name="origin",
            tblname="ticket_texts",
            flags=FieldFlag.REQUIRED_IN_POST_PUT | FieldFlag.FIXED_CREATEONLY,
        )
        handler = FieldHandler(self.engine, field)
        ticket = _ticket()

        assert handler.on_create_or_update(self._context(_mock_store(), ticket), ticket) is False
        with pytest.raises(MissingFieldDataError):
            handler.on_create_or_update(
                self._context(_mock_store(), ticket, mode=TicketMode.create), ticket
            )


# --------------------------------------------------------------------------- #
# Arrays                                                                      #
# --------------------------------------------------------------------------- #


class TestArrayFields(HandlerTestBase):
    def test_forward_diff_with_companion_mirror(self):
        store = _mock_store({"ticket_parents": 23})
        ticket = _ticket(
            field_data={FIELD_PARENTS: ["3", "5"]},
            field_row_ids={FIELD_PARENTS: [21, 22]},
        )
        handler = self.engine.find_handler(FIELD_PARENTS)

        handler.on_create_or_update(self._context(store, ticket, parents="#5, #8"), ticket)

        store.insert.assert_any_call(
            "ticket_parents", {"ticket_id": 7, "field_id": FIELD_PARENTS, "value": "8"}
        )
        store.delete.assert_called_once_with("ticket_parents", {"i": 21})
        changelog = [c.args[1] for c in store.insert.call_args_list if c.args[0] == "changelog"]
        assert changelog == [
            _changelog_values(7, FIELD_PARENTS, value_str="+8,-3"),
            _changelog_values(8, FIELD_CHILDREN, value_str="+7"),
            _changelog_values(3, FIELD_CHILDREN, value_str="-7"),
        ]
        assert ticket.field_data[FIELD_PARENTS] == ["5", "8"]
        assert ticket.field_row_ids[FIELD_PARENTS] == [22, 23]

    def test_reverse_field_writes_row_on_other_ticket(self):
        store = _mock_store({"ticket_parents": 30})
        ticket = _ticket()
        handler = self.engine.find_handler(FIELD_CHILDREN)

        handler.on_create_or_update(self._context(store, ticket, children="9"), ticket)

        store.insert.assert_any_call(
            "ticket_parents", {"ticket_id": "9", "field_id": FIELD_PARENTS, "value": 7}
        )
        changelog = [c.args[1] for c in store.insert.call_args_list if c.args[0] == "changelog"]
        assert changelog == [
            _changelog_values(7, FIELD_CHILDREN, value_str="+9"),
            _changelog_values(9, FIELD_PARENTS, value_str="+7"),
        ]

    def test_self_reference_is_rejected(self):
        ticket = _ticket()
        handler = self.engine.find_handler(FIELD_PARENTS)
        ctx = self._context(_mock_store(), ticket, parents="#7")

        with pytest.raises(FieldValidationError, match="cannot be related to itself"):
            handler.on_create_or_update(ctx, ticket)

    def test_array_count_rows(self):
        store = _mock_store({"ticket_parents": 31})
        ticket = _ticket()
        handler = self.engine.find_handler(LINKS_FIELD)

        handler.on_create_or_update(self._context(store, ticket, links="12:3"), ticket)

        store.insert.assert_any_call(
            "ticket_parents",
            {"ticket_id": 7, "field_id": LINKS_FIELD, "value": 12, "count": 3},
        )
        assert handler.stored_to_value(store, {"i": 31, "value": 12, "count": 3}) == "12:3"

    def test_array_count_syntax_error(self):
        ticket = _ticket()
        handler = self.engine.find_handler(LINKS_FIELD)
        ctx = self._context(_mock_store(), ticket, links="12")

        with pytest.raises(FieldValidationError, match="Invalid syntax"):
            handler.on_create_or_update(ctx, ticket)


# --------------------------------------------------------------------------- #
# Formatting                                                                  #
# --------------------------------------------------------------------------- #


class TestFormatting(HandlerTestBase):
    def test_scalar_changelog_message(self):
        store = _mock_store()
        store.fetch_one.side_effect = [{"value": "Old"}, {"value": "New"}]
        handler = self.engine.find_handler(FIELD_TITLE)
        row = ChangelogRow(id=1, field_id=FIELD_TITLE, chg_dt=FIXED_TIME, value_1=100, value_2=101)

        message = handler.format_changelog_item(self._context(store), row)

        assert message == "Title changed from “Old” to “New”"

    def test_changelog_message_for_first_value(self):
        store = _mock_store()
        store.fetch_one.return_value = {"value": "New"}
        handler = self.engine.find_handler(FIELD_TITLE)
        row = ChangelogRow(id=1, field_id=FIELD_TITLE, chg_dt=FIXED_TIME, value_2=101)

        assert handler.format_changelog_item(self._context(store), row) == (
            "Title changed from nothing to “New”"
        )

    def test_formatting_errors_are_reported_inline(self):
        store = _mock_store()
        store.fetch_one.side_effect = RuntimeError("gone")
        handler = self.engine.find_handler(FIELD_TITLE)
        row = ChangelogRow(id=1, field_id=FIELD_TITLE, chg_dt=FIXED_TIME, value_1=1)

        assert handler.try_format_changelog_item(self._context(store), row) == (
            "Error formatting changelog message: gone"
        )

    def test_html_is_escaped(self):
        handler = self.engine.find_handler(FIELD_TITLE)
        ctx = self._context(_mock_store())
        assert handler.format_value_html(ctx, "<b>x</b>") == "&lt;b&gt;x&lt;/b&gt;"
        assert handler.format_value_html(ctx, None) == ""

    def test_parents_changelog_message(self):
        handler = self.engine.find_handler(FIELD_PARENTS)
        row = ChangelogRow(id=1, field_id=FIELD_PARENTS, chg_dt=FIXED_TIME, value_str="+12,-7")

        assert handler.format_changelog_item(self._context(_mock_store()), row) == (
            "Parent tickets changed: added #12, removed #7"
        )

    def test_serialize_to_dict(self):
        handler = self.engine.find_handler(FIELD_PARENTS)
        ticket = _ticket(field_data={FIELD_PARENTS: ["3", "5"]})

        assert handler.serialize_to_dict(self._context(_mock_store(), ticket), ticket) == {
            "parents": ["3", "5"],
            "parents_formatted": "#3, #5",
        }


class TestLoading(HandlerTestBase):
    def test_scalar_takes_live_row(self):
        store = _mock_store()
        store.select.return_value = [{"i": 101, "value": "Title"}]
        ticket = _ticket()

        self.engine.find_handler(FIELD_TITLE).load_into(store, ticket)

        store.select.assert_called_once_with(
            "ticket_texts", ("i", "value"), {"ticket_id": 7, "field_id": FIELD_TITLE}, order_by="i"
        )
        assert ticket.field_data[FIELD_TITLE] == "Title"
        assert ticket.field_row_ids[FIELD_TITLE] == 101

    def test_reverse_array_reads_companion_rows(self):
        store = _mock_store()
        store.fetch_all.return_value = [{"i": 21, "value": 3}, {"i": 25, "value": 4}]
        ticket = _ticket()

        self.engine.find_handler(FIELD_CHILDREN).load_into(store, ticket)

        assert store.fetch_all.call_args[0][1] == (FIELD_PARENTS, 7)
        assert ticket.field_data[FIELD_CHILDREN] == ["3", "4"]
        assert ticket.field_row_ids[FIELD_CHILDREN] == [21, 25]

    def test_no_rows_leaves_field_absent(self):
        store = _mock_store()
        store.select.return_value = []
        ticket = _ticket()

        self.engine.find_handler(FIELD_TITLE).load_into(store, ticket)

        assert FIELD_TITLE not in ticket.field_data


class TestDelta:
    def test_format(self):
        assert format_delta([8, 9], [3]) == "+8,+9,-3"
        assert format_delta([], []) == ""

    def test_parse_strips_only_the_leading_sign(self):
        assert parse_delta("+8, -3,+-5,x,") == (["8", "-5"], ["3"])
        assert parse_delta(None) == ([], [])
