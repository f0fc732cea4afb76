"""FieldHandler: read/validate/write/format behavior for one ticket field.

Each registered field has one handler instance, looked up through
FieldEngine.find_handler(). The generic ticket create/update loop calls
on_create_or_update() on every handler of the ticket's type; the handler
decides whether the submitted value differs from the stored one, validates
it and writes it back.

How a write reaches the database depends on the handler's storage shape:

- scalar / json: historized. The old row is detached (ticket_id set to
  NULL) and a new row inserted; the changelog references both row IDs.
- array: one row per element. Added elements are inserted, removed
  elements deleted; the changelog gets one row of ``+v,-v`` tokens, and
  companion fields get mirrored rows on the other tickets.
- m2m and sum_with_subrows are written by their own handlers.
"""

import html
import logging
import re
from typing import Any, Dict, Optional, Tuple

from psycopg2 import sql

from doreen_fields.changelog import format_delta
from doreen_fields.constants import (
    CREATEFL_IGNOREMISSING,
    CREATEFL_NOCHANGELOG,
    NUMERIC_TABLES,
)
from doreen_fields.context import TicketContext
from doreen_fields.errors import (
    ConfigurationError,
    FieldValidationError,
    MissingFieldDataError,
)
from doreen_fields.models import (
    ChangelogRow,
    FieldDescriptor,
    FieldFlag,
    StorageShape,
    Ticket,
    TicketMode,
)
from doreen_fields.storage import FieldStore
from doreen_fields.util import split_list

logger = logging.getLogger(__name__)

ARRAY_COUNT_RE = re.compile(r"^(\d+):(\d+)$")


def _normalize(value: Any) -> Any:
    """Comparable form of a field value: None for empty, strings otherwise."""
    if value is None or value == "" or value == []:
        return None
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return str(value)


class FieldHandler:
    """Base handler for a plain historized field (title, description, ...)."""

    shape: StorageShape = StorageShape.scalar

    def __init__(self, engine, field: FieldDescriptor):
        self.engine = engine
        self.field = field
        if field.is_array and self.shape == StorageShape.scalar:
            self.shape = StorageShape.array

    @property
    def field_id(self) -> int:
        return self.field.id

    @property
    def name(self) -> str:
        return self.field.name

    def __repr__(self) -> str:
        return f"{type(self).__name__}(field={self.field.name!r})"

    # ------------------------------------------------------------------- #
    # Values                                                              #
    # ------------------------------------------------------------------- #

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or self.field.name.replace("_", " ").capitalize()

    def get_initial_value(self, context: TicketContext) -> Any:
        return None

    def get_value(self, context: TicketContext) -> Any:
        """Current value for the context's ticket.

        In create mode this is the initial value. Array fields return a list
        (None when empty); scalar fields the stored value or None.
        """
        if context.mode == TicketMode.create:
            return self.get_initial_value(context)
        value = context.ticket.field_data.get(self.field_id) if context.ticket else None
        if self.field.is_array:
            return split_list(value) or None
        return value

    def is_new_value_different(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> bool:
        if self.field.is_array:
            return set(split_list(old_value)) != set(split_list(new_value))
        return _normalize(old_value) != _normalize(new_value)

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Any:
        """Check and transform a value before it is written.

        Raises:
            MissingFieldDataError: If the field is required and the value empty.
        """
        if new_value == "" and self.field.tblname in NUMERIC_TABLES:
            new_value = None
        if self.field.is_required and (new_value is None or new_value == ""):
            raise MissingFieldDataError(self.name)
        return new_value

    # ------------------------------------------------------------------- #
    # Create / update                                                     #
    # ------------------------------------------------------------------- #

    def on_create_or_update(
        self, context: TicketContext, ticket: Ticket, flags: int = 0
    ) -> bool:
        """Apply the submitted value of this field to the ticket.

        Returns:
            True if the field was written.

        Raises:
            MissingFieldDataError: If a required value was not submitted.
            FieldValidationError: If the submitted value is invalid.
        """
        new_value = context.variable_data.get(self.name)
        if new_value is not None:
            old_value = (
                None
                if context.mode == TicketMode.create
                else ticket.field_data.get(self.field_id)
            )
            if self.is_new_value_different(context, old_value, new_value):
                logger.debug("Field '%s' of ticket #%s needs update", self.name, ticket.id)
                self.write_to_database(
                    context,
                    ticket,
                    old_value,
                    new_value,
                    not (flags & CREATEFL_NOCHANGELOG),
                )
                return True
            return False

        if (
            self.field.is_required
            and (
                not self.field.has(FieldFlag.FIXED_CREATEONLY)
                or context.mode == TicketMode.create
            )
            and not (flags & CREATEFL_IGNOREMISSING)
        ):
            raise MissingFieldDataError(self.name)
        return False

    def write_to_database(
        self,
        context: TicketContext,
        ticket: Ticket,
        old_value: Any,
        new_value: Any,
        write_changelog: bool,
    ) -> None:
        """Validate, then persist the change according to the storage shape."""
        insert_value = self.validate_before_write(context, old_value, new_value)

        if self.shape in (StorageShape.scalar, StorageShape.json):
            new_row_id = self.insert_row_with_changelog(
                context, ticket, old_value, insert_value, write_changelog
            )
            ticket.field_data[self.field_id] = insert_value
            ticket.field_row_ids[self.field_id] = new_row_id
        elif self.shape == StorageShape.array:
            self.write_array(context, ticket, old_value, insert_value, write_changelog)
        else:
            raise ConfigurationError(
                f"{type(self).__name__} must implement writes for shape {self.shape.value}"
            )

    # ------------------------------------------------------------------- #
    # Historized scalar rows                                              #
    # ------------------------------------------------------------------- #

    @staticmethod
    def insert_row(
        store: FieldStore,
        ticket: Ticket,
        field: FieldDescriptor,
        old_value: Any,
        insert_value: Any,
    ) -> Tuple[Optional[int], Optional[int]]:
        """Insert the new value row and detach the old one.

        A None value means "no row". The old row is never deleted, only
        unlinked from the ticket, so history can still reference it.

        Returns:
            (old_row_id, new_row_id); either may be None.
        """
        if not field.tblname:
            raise ConfigurationError(f"Field '{field.name}' has no storage table")

        new_row_id = None
        if insert_value is not None:
            new_row_id = store.insert(
                field.tblname,
                {"ticket_id": ticket.id, "field_id": field.id, "value": insert_value},
            )

        old_row_id = ticket.field_row_ids.get(field.id)
        if old_value is not None and old_row_id is not None:
            store.update(field.tblname, {"ticket_id": None}, {"i": old_row_id})
        else:
            old_row_id = None

        return old_row_id, new_row_id

    def insert_row_with_changelog(
        self,
        context: TicketContext,
        ticket: Ticket,
        old_value: Any,
        insert_value: Any,
        write_changelog: bool,
    ) -> Optional[int]:
        """insert_row() plus the (old, new) changelog row. Returns the new row ID."""
        old_row_id, new_row_id = self.insert_row(
            context.store, ticket, self.field, old_value, insert_value
        )
        if write_changelog:
            self.add_to_changelog(context, ticket.id, old_row_id, new_row_id)
        return new_row_id

    def add_to_changelog(
        self,
        context: TicketContext,
        ticket_id: int,
        old_row_id: Optional[int],
        new_row_id: Optional[int],
        value_str: Optional[str] = None,
        field_id: Optional[int] = None,
    ) -> int:
        return self.engine.changelog.add_ticket_change(
            context.store,
            self.field_id if field_id is None else field_id,
            ticket_id,
            context.chg_uid,
            context.now,
            old_row_id,
            new_row_id,
            value_str,
        )

    # ------------------------------------------------------------------- #
    # Array rows                                                          #
    # ------------------------------------------------------------------- #

    def write_array(
        self,
        context: TicketContext,
        ticket: Ticket,
        old_value: Any,
        insert_value: Any,
        write_changelog: bool,
    ) -> None:
        """Diff old and new element sets and insert/delete rows accordingly.

        For a forward field F on ticket T, adding V inserts (T, F, V). For a
        reverse field R, adding V inserts (V, companion(R), T): the row lives
        on the other ticket. Removed elements are deleted by row ID in both
        cases.
        """
        field = self.field
        store = context.store
        reverse = field.has(FieldFlag.ARRAY_REVERSE)
        companion = field.companion_id
        if not field.tblname:
            raise ConfigurationError(f"Field '{field.name}' has no storage table")

        old_items = list(dict.fromkeys(split_list(old_value)))
        new_items = list(dict.fromkeys(split_list(insert_value)))
        old_row_ids = split_list(ticket.field_row_ids.get(field.id)) if old_items else []

        row_id_for: Dict[str, Any] = {}
        to_remove: Dict[str, Any] = {}
        for index, value in enumerate(old_items):
            row_id = int(old_row_ids[index]) if index < len(old_row_ids) else None
            if value in new_items:
                row_id_for[value] = row_id
            else:
                to_remove[value] = row_id
        to_add = [v for v in new_items if v not in old_items]

        mirrored: Dict[str, bool] = {}  # other ticket ID -> added

        for value in to_add:
            if reverse:
                row_ticket, row_field, row_value = value, companion, ticket.id
            else:
                row_ticket, row_field, row_value = ticket.id, field.id, value
            row_id_for[value] = self._insert_array_row(
                store, row_ticket, row_field, row_value
            )
            if companion is not None:
                mirrored[value] = True

        for value, row_id in to_remove.items():
            if row_id is None:
                raise ConfigurationError(
                    f"No storage row for value {value!r} of field '{field.name}' "
                    f"on ticket #{ticket.id}"
                )
            store.delete(field.tblname, {"i": row_id})
            if companion is not None:
                mirrored[value] = False

        if write_changelog and (to_add or to_remove):
            self.add_to_changelog(
                context, ticket.id, None, None, format_delta(to_add, to_remove)
            )
            for other_ticket, added in mirrored.items():
                delta = format_delta([ticket.id], []) if added else format_delta([], [ticket.id])
                self.add_to_changelog(
                    context, int(other_ticket), None, None, delta, field_id=companion
                )

        logger.debug(
            "Field '%s' of ticket #%s: added %s, removed %s",
            field.name, ticket.id, to_add, list(to_remove),
        )
        ticket.field_data[field.id] = new_items or None
        ticket.field_row_ids[field.id] = [row_id_for[v] for v in new_items] or None

    def _insert_array_row(
        self, store: FieldStore, row_ticket: Any, row_field: int, value: Any
    ) -> int:
        if not self.field.has(FieldFlag.ARRAY_COUNT):
            return store.insert(
                self.field.tblname,
                {"ticket_id": row_ticket, "field_id": row_field, "value": value},
            )
        match = ARRAY_COUNT_RE.match(str(value))
        if not match:
            raise FieldValidationError(
                self.name, f"Invalid syntax in field value \"{value}\""
            )
        return store.insert(
            self.field.tblname,
            {
                "ticket_id": row_ticket,
                "field_id": row_field,
                "value": int(match.group(1)),
                "count": int(match.group(2)),
            },
        )

    # ------------------------------------------------------------------- #
    # Formatting                                                          #
    # ------------------------------------------------------------------- #

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    def format_value_html(self, context: TicketContext, value: Any) -> str:
        """Escaped HTML for the value. Never None; empty values give ''."""
        return html.escape(self.format_value_plain(context, value))

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        """Render "<label> changed from A to B" using the referenced rows."""
        old = self._fetch_row_value(context.store, row.value_1)
        new = self._fetch_row_value(context.store, row.value_2)
        return "{} changed from {} to {}".format(
            self.get_label(context),
            self._quote(context, old, row.value_1),
            self._quote(context, new, row.value_2),
        )

    def try_format_changelog_item(
        self, context: TicketContext, row: ChangelogRow
    ) -> str:
        try:
            return self.format_changelog_item(context, row)
        except Exception as e:
            return f"Error formatting changelog message: {e}"

    def _fetch_row_value(self, store: FieldStore, row_id: Optional[int]) -> Any:
        if row_id is None or not self.field.tblname:
            return None
        row = store.fetch_one(
            store.select_query(self.field.tblname, ("value",), ("i",)), (row_id,)
        )
        return row["value"] if row else None

    def _quote(self, context: TicketContext, value: Any, row_id: Optional[int]) -> str:
        if row_id is None:
            return "nothing"
        if value is None:
            return "unknown"
        return "“{}”".format(self.format_value_plain(context, value))

    # ------------------------------------------------------------------- #
    # Loading                                                             #
    # ------------------------------------------------------------------- #

    def load_into(self, store: FieldStore, ticket: Ticket) -> None:
        """Read this field's live rows into ticket.field_data / field_row_ids.

        Reverse array fields read the companion's rows that point at this
        ticket.
        """
        field = self.field
        if not field.tblname:
            return
        if field.has(FieldFlag.ARRAY_REVERSE):
            query = sql.SQL(
                "SELECT i, ticket_id AS value FROM {} "
                "WHERE field_id = %s AND value = %s ORDER BY i"
            ).format(store.table(field.tblname))
            rows = store.fetch_all(query, (field.companion_id, ticket.id))
        else:
            columns = ("i", "value", "count") if field.has(FieldFlag.ARRAY_COUNT) else ("i", "value")
            rows = store.select(
                field.tblname,
                columns,
                {"ticket_id": ticket.id, "field_id": field.id},
                order_by="i",
            )
        if not rows:
            return
        if self.shape in (StorageShape.array, StorageShape.m2m):
            ticket.field_data[field.id] = [self.stored_to_value(store, r) for r in rows]
            ticket.field_row_ids[field.id] = [r["i"] for r in rows]
        else:
            ticket.field_data[field.id] = rows[-1]["value"]
            ticket.field_row_ids[field.id] = rows[-1]["i"]

    def stored_to_value(self, store: FieldStore, row: Dict[str, Any]) -> Any:
        """In-memory form of one array element row."""
        if self.field.has(FieldFlag.ARRAY_COUNT):
            return f"{row['value']}:{row['count']}"
        return str(row["value"])

    # ------------------------------------------------------------------- #
    # Export                                                              #
    # ------------------------------------------------------------------- #

    def make_searchable(self, context: TicketContext, ticket: Ticket) -> Optional[str]:
        """Text handed to the search sink, or None if nothing to index."""
        value = ticket.field_data.get(self.field_id)
        if value is None:
            return None
        return self.format_value_plain(context, value) or None

    def serialize_to_dict(self, context: TicketContext, ticket: Ticket) -> Dict[str, Any]:
        value = ticket.field_data.get(self.field_id)
        if self.field.is_array:
            value = split_list(value) or None
        return {
            self.name: value,
            f"{self.name}_formatted": self.format_value_plain(context, value),
        }


# =========================================================================== #
# Select from set                                                             #
# =========================================================================== #


def find_key(pairs: Dict[Any, Any], value: Any) -> Any:
    """Return the key of `pairs` equal to `value`, comparing as strings.

    Submitted form values arrive as strings while keys are often ints.
    Returns None if there is no match.
    """
    if value in pairs:
        return value
    text = str(value).strip()
    for key in pairs:
        if str(key) == text:
            return key
    return None


class SelectFromSetHandlerBase(FieldHandler):
    """Handler whose value must be one of a handler-supplied set."""

    def get_valid_values(self, context: TicketContext, current: Any) -> Dict[Any, str]:
        raise NotImplementedError

    def invalid_value_error(self, context: TicketContext, old_value: Any, new_value: Any):
        return FieldValidationError(
            self.name,
            f"The value {new_value} is invalid for field {self.get_label(context)}",
        )

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Any:
        if new_value is None or new_value == "":
            raise MissingFieldDataError(self.name)

        pairs = self.get_valid_values(context, old_value)
        if pairs:
            key = find_key(pairs, new_value)
            if key is not None:
                new_value = key
            elif not context.importing:
                raise self.invalid_value_error(context, old_value, new_value)

        return super().validate_before_write(context, old_value, new_value)

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        return "{} changed from {} to {}".format(
            self.get_label(context),
            self._quote_value(context, row.int_old, row.value_1),
            self._quote_value(context, row.int_new, row.value_2),
        )

    def _quote_value(self, context: TicketContext, value: Any, row_id: Optional[int]) -> str:
        if value is None:
            return "nothing" if row_id is None else "unknown"
        return "“{}”".format(self.format_value_plain(context, value))
