"""Tests for FieldStore SQL composition and transaction handling.

Uses a mock DB connection; SQL is rendered from psycopg2.sql objects.
"""

from unittest.mock import MagicMock

import pytest
from psycopg2 import sql as psql

from doreen_fields.storage import FieldStore

SCHEMA = "test_project"


def _mock_conn_and_cursor(rows=None, fetchone_value=None):
    conn = MagicMock()
    cur = MagicMock()
    conn.cursor.return_value = cur
    cur.fetchall.return_value = rows if rows is not None else []
    cur.fetchone.return_value = fetchone_value
    return conn, cur


def _sql_to_str(query) -> str:
    """Convert a psycopg2 sql object to a plain string for assertions.

    Uses recursive extraction since as_string() requires a real psycopg2 connection.
    """
    if isinstance(query, psql.Composed):
        return "".join(_sql_to_str(part) for part in query._wrapped)
    if isinstance(query, psql.SQL):
        return query._wrapped
    if isinstance(query, psql.Identifier):
        return ".".join(query._wrapped)
    if isinstance(query, psql.Placeholder):
        return "%s"
    return str(query)


class TestFieldStoreStatements:
    def setup_method(self):
        self.conn, self.cur = _mock_conn_and_cursor(fetchone_value={"i": 42})
        self.store = FieldStore(self.conn, SCHEMA)

    def test_insert_returns_primary_key(self):
        new_id = self.store.insert("ticket_texts", {"ticket_id": 1, "field_id": -1, "value": "x"})

        assert new_id == 42
        query, params = self.cur.execute.call_args[0]
        assert _sql_to_str(query) == (
            "INSERT INTO test_project.ticket_texts (ticket_id, field_id, value) "
            "VALUES (%s, %s, %s) RETURNING i"
        )
        assert params == (1, -1, "x")

    def test_update_binds_values_then_where(self):
        self.store.update("ticket_ints", {"ticket_id": None}, {"i": 7})

        query, params = self.cur.execute.call_args[0]
        assert _sql_to_str(query) == "UPDATE test_project.ticket_ints SET ticket_id = %s WHERE i = %s"
        assert params == (None, 7)

    def test_delete(self):
        self.store.delete("ticket_parents", {"i": 9})

        query, params = self.cur.execute.call_args[0]
        assert _sql_to_str(query) == "DELETE FROM test_project.ticket_parents WHERE i = %s"
        assert params == (9,)

    def test_select_with_where_and_order(self):
        self.cur.fetchall.return_value = [{"i": 1, "value": 3}]

        rows = self.store.select(
            "ticket_ints", ("i", "value"), {"ticket_id": 5, "field_id": -7}, order_by="i"
        )

        assert rows == [{"i": 1, "value": 3}]
        query, params = self.cur.execute.call_args[0]
        assert _sql_to_str(query) == (
            "SELECT i, value FROM test_project.ticket_ints "
            "WHERE ticket_id = %s AND field_id = %s ORDER BY i"
        )
        assert params == (5, -7)

    def test_select_without_where(self):
        self.store.select("categories", ("i", "name"))

        query, params = self.cur.execute.call_args[0]
        assert _sql_to_str(query) == "SELECT i, name FROM test_project.categories"
        assert params == ()

    def test_schema_is_an_identifier(self):
        store = FieldStore(self.conn, 'evil"; DROP TABLE x; --')
        table = store.table("tickets")
        assert isinstance(table, psql.Identifier)
        assert table._wrapped == ('evil"; DROP TABLE x; --', "tickets")

    def test_single_cursor_is_reused(self):
        self.store.delete("a", {"i": 1})
        self.store.delete("b", {"i": 2})
        self.conn.cursor.assert_called_once()


class TestFieldStoreTransaction:
    def test_commit_on_success(self):
        conn, cur = _mock_conn_and_cursor()
        store = FieldStore(conn, SCHEMA)

        with store.transaction():
            store.delete("ticket_texts", {"i": 1})

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

    def test_rollback_on_error(self):
        conn, cur = _mock_conn_and_cursor()
        store = FieldStore(conn, SCHEMA)

        with pytest.raises(ValueError, match="boom"):
            with store.transaction():
                store.delete("ticket_texts", {"i": 1})
                raise ValueError("boom")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_rollback_hooks_run_in_reverse_order(self):
        conn, cur = _mock_conn_and_cursor()
        store = FieldStore(conn, SCHEMA)
        calls = []

        with pytest.raises(ValueError):
            with store.transaction():
                store.on_rollback(lambda: calls.append("first"))
                store.on_rollback(lambda: calls.append("second"))
                raise ValueError("boom")

        assert calls == ["second", "first"]

    def test_rollback_hooks_dropped_on_commit(self):
        conn, cur = _mock_conn_and_cursor()
        store = FieldStore(conn, SCHEMA)
        calls = []

        with store.transaction():
            store.on_rollback(lambda: calls.append("committed"))

        with pytest.raises(ValueError):
            with store.transaction():
                raise ValueError("boom")

        assert calls == []
