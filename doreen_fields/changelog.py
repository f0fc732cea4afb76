"""Changelog writer and reader.

The changelog is append-only. Each row records one field-level change of one
ticket:

- value_1 / value_2 reference the old and new storage rows of historized
  scalar fields (either may be NULL).
- value_str carries free-form delta text, for array fields a comma list of
  signed tokens such as ``+12,-7``.
- Comment rows reference ticket_texts rows; an edited or deleted comment
  keeps its text row under FIELD_OLDCOMMENT, so only the live version joins.
"""

from typing import Iterable, List, Optional, Tuple

from psycopg2 import sql

from doreen_fields.constants import FIELD_COMMENT, FIELD_COMMENT_UPDATED
from doreen_fields.models import ChangelogRow
from doreen_fields.storage import FieldStore


# =========================================================================== #
# Delta tokens                                                                #
# =========================================================================== #


def format_delta(added: Iterable, removed: Iterable) -> str:
    """Encode added/removed values as ``+a,+b,-c``."""
    tokens = [f"+{v}" for v in added] + [f"-{v}" for v in removed]
    return ",".join(tokens)


def parse_delta(value_str: Optional[str]) -> Tuple[List[str], List[str]]:
    """Decode a ``+a,-b`` token list into (added, removed).

    Only the leading sign is stripped, so ``+-5`` decodes to ``-5``.
    Tokens without a sign are ignored.
    """
    added: List[str] = []
    removed: List[str] = []
    for token in (value_str or "").split(","):
        token = token.strip()
        if len(token) < 2:
            continue
        if token[0] == "+":
            added.append(token[1:])
        elif token[0] == "-":
            removed.append(token[1:])
    return added, removed


# =========================================================================== #
# Changelog                                                                   #
# =========================================================================== #

# Parameters of the comment join in Changelog._select_rows().
JOIN_PARAMS = [FIELD_COMMENT, FIELD_COMMENT, FIELD_COMMENT_UPDATED]


class Changelog:
    """Reads and appends rows of the changelog table."""

    def add_ticket_change(
        self,
        store: FieldStore,
        field_id: int,
        ticket_id: int,
        chg_uid: Optional[int],
        chg_dt: float,
        value_1: Optional[int] = None,
        value_2: Optional[int] = None,
        value_str: Optional[str] = None,
    ) -> int:
        """Append a change of one field of one ticket.

        Returns:
            ID of the new changelog row.
        """
        return store.insert(
            "changelog",
            {
                "field_id": field_id,
                "what": ticket_id,
                "chg_uid": chg_uid,
                "chg_dt": chg_dt,
                "value_1": value_1,
                "value_2": value_2,
                "value_str": value_str,
            },
        )

    def add_system_change(
        self,
        store: FieldStore,
        field_id: int,
        what: Optional[int],
        chg_uid: Optional[int],
        chg_dt: float,
        value_str: Optional[str] = None,
    ) -> int:
        """Append a system event such as ticket creation."""
        return self.add_ticket_change(
            store, field_id, what, chg_uid, chg_dt, value_str=value_str
        )

    def _select_rows(self, store: FieldStore, where: sql.Composable) -> sql.Composed:
        """Changelog rows joined with old/new ints, comment text and workflow.

        The query takes the JOIN_PARAMS first, then those of `where`.
        """
        return sql.SQL("""
            SELECT c.i, c.field_id, c.what, c.chg_uid, c.chg_dt,
                   c.value_1, c.value_2, c.value_str,
                   old_int.value AS int_old, new_int.value AS int_new,
                   cmt.value AS comment,
                   tt.workflow_id
            FROM {changelog} c
            LEFT JOIN {ints} old_int ON old_int.i = c.value_1
            LEFT JOIN {ints} new_int ON new_int.i = c.value_2
            LEFT JOIN {texts} cmt ON cmt.field_id = %s
                AND ((c.field_id = %s AND cmt.i = c.value_1)
                     OR (c.field_id = %s AND cmt.i = c.value_2))
            LEFT JOIN {tickets} t ON t.i = c.what
            LEFT JOIN {types} tt ON tt.i = t.type_id
            WHERE {where}
        """).format(
            changelog=store.table("changelog"),
            ints=store.table("ticket_ints"),
            texts=store.table("ticket_texts"),
            tickets=store.table("tickets"),
            types=store.table("ticket_types"),
            where=where,
        )

    def load_for_ticket(
        self,
        store: FieldStore,
        ticket_id: int,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ChangelogRow]:
        """Load the changelog of one ticket, newest first.

        Joins the old/new integer values for int-backed fields, the live text
        of comment rows and the workflow ID of the ticket's type, so entries
        can be rendered without further queries.
        """
        query = self._select_rows(store, sql.SQL("c.what = %s")) + sql.SQL(
            " ORDER BY c.chg_dt DESC, c.i DESC"
        )
        params: list = JOIN_PARAMS + [ticket_id]
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s OFFSET %s")
            params.extend([limit, offset])

        return [_to_row(row) for row in store.fetch_all(query, params)]

    def find_row(
        self, store: FieldStore, ticket_id: int, row_id: int
    ) -> Optional[ChangelogRow]:
        """One changelog row of a ticket, or None."""
        query = self._select_rows(store, sql.SQL("c.i = %s AND c.what = %s"))
        row = store.fetch_one(query, JOIN_PARAMS + [row_id, ticket_id])
        return _to_row(row) if row else None

    def count_rows(self, store: FieldStore, ticket_id: Optional[int] = None) -> int:
        query = sql.SQL("SELECT COUNT(*) AS count FROM {}").format(
            store.table("changelog")
        )
        params: tuple = ()
        if ticket_id is not None:
            query = query + sql.SQL(" WHERE what = %s")
            params = (ticket_id,)
        row = store.fetch_one(query, params)
        return row["count"] if row else 0


def _to_row(row) -> ChangelogRow:
    return ChangelogRow(
        id=row["i"],
        field_id=row["field_id"],
        what=row["what"],
        chg_uid=row["chg_uid"],
        chg_dt=row["chg_dt"],
        value_1=row["value_1"],
        value_2=row["value_2"],
        value_str=row["value_str"],
        int_old=row.get("int_old"),
        int_new=row.get("int_new"),
        comment=row.get("comment"),
        workflow_id=row.get("workflow_id"),
    )
