"""Schema-scoped storage helpers on top of a psycopg2 connection.

Every statement is composed with psycopg2.sql so that schema, table and
column names are always quoted identifiers and values are always bound
parameters. Rows are expected as dicts (RealDictCursor).
"""

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence

from psycopg2 import sql


class DBConnection(Protocol):
    """Protocol for database connections used by the field engine.

    This matches the psycopg2 connection interface.
    The caller is responsible for connection lifecycle.
    """

    def cursor(self, **kwargs) -> Any: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


class FieldStore:
    """Parameterized insert/update/delete/select by table name.

    One store wraps one connection and one schema, and reuses a single
    cursor for all statements of a request.
    """

    def __init__(self, conn: DBConnection, schema: str):
        self.conn = conn
        self.schema = schema
        self._cur = None
        self._rollback_hooks: List[Callable[[], None]] = []

    @property
    def cursor(self) -> Any:
        if self._cur is None:
            self._cur = self.conn.cursor()
        return self._cur

    def table(self, name: str) -> sql.Identifier:
        return sql.Identifier(self.schema, name)

    def on_rollback(self, hook: Callable[[], None]) -> None:
        """Run `hook` if the current transaction is rolled back.

        Used to evict cache entries for rows that never got committed.
        """
        self._rollback_hooks.append(hook)

    @contextmanager
    def transaction(self) -> Iterator["FieldStore"]:
        """Commit on success, roll back on any exception."""
        try:
            yield self
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            hooks, self._rollback_hooks = self._rollback_hooks, []
            for hook in reversed(hooks):
                hook()
            raise
        self._rollback_hooks = []

    # ------------------------------------------------------------------- #
    # Raw access                                                          #
    # ------------------------------------------------------------------- #

    def execute(self, query: sql.Composable, params: Optional[Sequence] = None) -> None:
        self.cursor.execute(query, params)

    def fetch_all(
        self, query: sql.Composable, params: Optional[Sequence] = None
    ) -> List[Dict[str, Any]]:
        self.cursor.execute(query, params)
        return list(self.cursor.fetchall() or [])

    def fetch_one(
        self, query: sql.Composable, params: Optional[Sequence] = None
    ) -> Optional[Dict[str, Any]]:
        self.cursor.execute(query, params)
        return self.cursor.fetchone()

    # ------------------------------------------------------------------- #
    # Table helpers                                                       #
    # ------------------------------------------------------------------- #

    def insert(self, table: str, values: Dict[str, Any]) -> int:
        """INSERT one row and return its primary key (column ``i``)."""
        columns = list(values.keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING i").format(
            self.table(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        row = self.fetch_one(query, tuple(values[c] for c in columns))
        return row["i"]

    def update(self, table: str, values: Dict[str, Any], where: Dict[str, Any]) -> None:
        query = sql.SQL("UPDATE {} SET {} WHERE {}").format(
            self.table(table),
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values
            ),
            self._where(where),
        )
        self.execute(query, tuple(values.values()) + tuple(where.values()))

    def delete(self, table: str, where: Dict[str, Any]) -> None:
        query = sql.SQL("DELETE FROM {} WHERE {}").format(
            self.table(table), self._where(where)
        )
        self.execute(query, tuple(where.values()))

    def select_query(
        self,
        table: str,
        columns: Sequence[str],
        where_columns: Sequence[str] = (),
        order_by: Optional[str] = None,
    ) -> sql.Composed:
        """Build ``SELECT columns FROM table [WHERE c = %s AND ...] [ORDER BY c]``."""
        query = sql.SQL("SELECT {} FROM {}").format(
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            self.table(table),
        )
        if where_columns:
            query = query + sql.SQL(" WHERE ") + self._where(dict.fromkeys(where_columns))
        if order_by:
            query = query + sql.SQL(" ORDER BY ") + sql.Identifier(order_by)
        return query

    def select(
        self,
        table: str,
        columns: Sequence[str],
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        where = where or {}
        query = self.select_query(table, columns, list(where), order_by)
        return self.fetch_all(query, tuple(where.values()))

    @staticmethod
    def _where(where: Dict[str, Any]) -> sql.Composed:
        return sql.SQL(" AND ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in where
        )
