"""Specialized field handlers.

Storage shapes per handler:

    PriorityHandler, AssigneeHandler     scalar int, select from set
    CategoryHandler, ProjectHandler      scalar int, or array ancestor closure
    KeywordsHandler                      m:n join rows into keyword_defs
    MonetaryAmountHandler                scalar float, or sum plus sub-amount rows
    JsonHandler                          scalar JSON text
    TicketReferenceHandler               scalar int from a "#N" token
    ParentsHandler / ChildrenHandler     array of ticket IDs, companion pair
    DateHandler                          scalar YYYY-MM-DD text
    Created/LastModifiedDateTimeHandler  display only, columns of the tickets row
    CommentHandler and friends           changelog only, text rows in ticket_texts
"""

import json
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg2 import sql

from doreen_fields.categories import build_display_order
from doreen_fields.changelog import format_delta, parse_delta
from doreen_fields.constants import (
    CREATEFL_NOCHANGELOG,
    FIELD_TITLE,
)
from doreen_fields.context import TicketContext
from doreen_fields.errors import (
    ConfigurationError,
    FieldValidationError,
    MissingFieldDataError,
)
from doreen_fields.fieldhandler import (
    FieldHandler,
    SelectFromSetHandlerBase,
    _normalize,
)
from doreen_fields.keywords import split_keywords
from doreen_fields.models import (
    Category,
    ChangelogRow,
    FieldDescriptor,
    StorageShape,
    Ticket,
    TicketMode,
)
from doreen_fields.storage import FieldStore
from doreen_fields.util import is_int_string, split_list

logger = logging.getLogger(__name__)


# =========================================================================== #
# Priority                                                                    #
# =========================================================================== #


class PriorityHandler(SelectFromSetHandlerBase):
    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Priority"

    def get_initial_value(self, context: TicketContext) -> int:
        return self.engine.settings.default_priority

    def get_valid_values(self, context: TicketContext, current: Any) -> Dict[int, str]:
        return {p: str(p) for p in range(1, self.engine.settings.max_priority + 1)}


# =========================================================================== #
# Assignee                                                                    #
# =========================================================================== #


NOBODY = "Nobody"


class AssigneeHandler(SelectFromSetHandlerBase):
    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Assignee"

    def get_initial_value(self, context: TicketContext) -> Optional[int]:
        """Last modifier if assignable, else the user's last chosen assignee."""
        ticket = context.ticket
        if ticket and ticket.lastmod_uid in context.assignable_users:
            return ticket.lastmod_uid
        if context.last_assignee is not None:
            return context.last_assignee
        return None

    def get_valid_values(self, context: TicketContext, current: Any) -> Dict[int, str]:
        if context.importing and not current:
            users = context.all_users
        else:
            users = context.assignable_users
        pairs: Dict[int, str] = {0: NOBODY}
        for uid, name in sorted(users.items(), key=lambda kv: (kv[1].lower(), kv[0])):
            pairs[uid] = name
        return pairs

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Any:
        value = super().validate_before_write(context, old_value, new_value)
        if is_int_string(value):
            value = int(value)
            context.last_assignee = value
        return value

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        if not value or value == "0":
            return NOBODY
        uid = int(value)
        name = context.all_users.get(uid) or context.assignable_users.get(uid)
        return name or f"[Unknown user ID {uid}]"


# =========================================================================== #
# Categories                                                                  #
# =========================================================================== #


class CategoryHandler(SelectFromSetHandlerBase):
    """Category field backed by the categories table.

    If the field is an ARRAY field, storing a leaf stores its whole ancestor
    closure; display collapses the closure back to the leaf.
    """

    filter_by_project = True

    @property
    def repo(self):
        return self.engine.categories

    def get_categories(self, context: TicketContext) -> List[Category]:
        cats = self.repo.get_all_for_field(context.store, self.field_id)
        project_id = context.project_id
        if not self.filter_by_project or project_id is None:
            return cats
        return [
            c
            for c in cats
            if c.get_extra("for_project_id") is None
            or str(c.get_extra("for_project_id")) == str(project_id)
        ]

    def get_valid_values(self, context: TicketContext, current: Any) -> Dict[int, str]:
        cats = self.get_categories(context)
        if context.mode.is_editor:
            return build_display_order(cats)
        return {c.id: c.name for c in cats}

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Any:
        if new_value not in (None, "") and (
            isinstance(new_value, (list, tuple)) or not is_int_string(new_value)
        ):
            raise FieldValidationError(
                self.name,
                f"Invalid category value {new_value!r} for field "
                f"{self.get_label(context)}: a category must be a single integer value",
            )
        value = super().validate_before_write(context, old_value, new_value)
        value = int(value)
        if self.field.is_array:
            cat = self.repo.find_by_id(context.store, value, required=True)
            return [str(c.id) for c in self.repo.get_parents(context.store, cat)]
        return value

    def is_new_value_different(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> bool:
        if self.field.is_array and split_list(old_value):
            leaf = self.repo.collapse_to_leaf(context.store, old_value)
            return str(leaf.id) != str(new_value).strip()
        return super().is_new_value_different(context, old_value, new_value)

    def get_leaf(self, context: TicketContext, value: Any) -> Optional[Category]:
        if value in (None, "", []):
            return None
        if self.field.is_array:
            return self.repo.collapse_to_leaf(context.store, value)
        return self.repo.find_by_id(context.store, value, required=True)

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        leaf = self.get_leaf(context, value)
        if leaf is None:
            return ""
        return " > ".join(c.name for c in self.repo.get_parents(context.store, leaf))

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        if not self.field.is_array:
            return super().format_changelog_item(context, row)
        added, removed = parse_delta(row.value_str)
        return _format_added_removed(
            self.get_label(context),
            [self._category_name(context, v) for v in added],
            [self._category_name(context, v) for v in removed],
        )

    def _category_name(self, context: TicketContext, value: str) -> str:
        cat = self.repo.find_by_id(context.store, value)
        return cat.name if cat else "unknown"


class ProjectHandler(CategoryHandler):
    filter_by_project = False

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Project"


def _format_added_removed(label: str, added: List[str], removed: List[str]) -> str:
    parts = []
    if added:
        parts.append("added " + ", ".join(added))
    if removed:
        parts.append("removed " + ", ".join(removed))
    return f"{label} changed: " + ", ".join(parts)


# =========================================================================== #
# Keywords                                                                    #
# =========================================================================== #


class KeywordsHandler(FieldHandler):
    """Keywords stored as join rows (ticket_id, field_id, keyword ID)."""

    shape = StorageShape.m2m

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Keywords"

    def get_value(self, context: TicketContext) -> Optional[List[str]]:
        if context.mode == TicketMode.create:
            return self.get_initial_value(context)
        value = context.ticket.field_data.get(self.field_id) if context.ticket else None
        return split_keywords(value) or None

    def is_new_value_different(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> bool:
        return set(split_keywords(old_value)) != set(split_keywords(new_value))

    def write_to_database(
        self,
        context: TicketContext,
        ticket: Ticket,
        old_value: Any,
        new_value: Any,
        write_changelog: bool,
    ) -> None:
        store = context.store
        repo = self.engine.keywords
        new_keywords = repo.string_to_keywords(store, new_value, self.name)
        if self.field.is_required and not new_keywords:
            raise MissingFieldDataError(self.name)
        old_keywords = repo.string_to_keywords(store, old_value, self.name)

        old_row_ids = split_list(ticket.field_row_ids.get(self.field_id))
        row_id_for: Dict[int, Optional[int]] = {}
        for index, keyword_id in enumerate(old_keywords):
            row_id_for[keyword_id] = (
                int(old_row_ids[index]) if index < len(old_row_ids) else None
            )

        to_add = [k for k in new_keywords if k not in old_keywords]
        to_remove = [k for k in old_keywords if k not in new_keywords]

        for keyword_id in to_add:
            row_id_for[keyword_id] = store.insert(
                self.field.tblname,
                {"ticket_id": ticket.id, "field_id": self.field_id, "value": keyword_id},
            )
        for keyword_id in to_remove:
            row_id = row_id_for.pop(keyword_id)
            if row_id is not None:
                store.delete(self.field.tblname, {"i": row_id})
            else:
                store.delete(
                    self.field.tblname,
                    {"ticket_id": ticket.id, "field_id": self.field_id, "value": keyword_id},
                )

        if write_changelog and (to_add or to_remove):
            self.add_to_changelog(
                context, ticket.id, None, None, format_delta(to_add, to_remove)
            )

        ticket.field_data[self.field_id] = [
            kw.keyword for kw in new_keywords.values()
        ] or None
        ticket.field_row_ids[self.field_id] = [
            row_id_for[k] for k in new_keywords
        ] or None

    def stored_to_value(self, store: FieldStore, row: Dict[str, Any]) -> Any:
        kw = self.engine.keywords.get(store, int(row["value"]))
        return kw.keyword if kw else str(row["value"])

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        return ", ".join(split_keywords(value))

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        added, removed = parse_delta(row.value_str)
        parts = []
        if added:
            parts.append("added " + ", ".join(self._keyword_text(context, k) for k in added))
        if removed:
            parts.append(
                "removed " + ", ".join(self._keyword_text(context, k) for k in removed)
            )
        return f"{self.get_label(context)}: " + "; ".join(parts)

    def _keyword_text(self, context: TicketContext, keyword_id: str) -> str:
        kw = None
        if is_int_string(keyword_id):
            kw = self.engine.keywords.get(context.store, int(keyword_id))
        return kw.keyword if kw else "unknown"


# =========================================================================== #
# Monetary amounts                                                            #
# =========================================================================== #


class MonetaryAmountHandler(FieldHandler):
    """Monetary amount, optionally split into sub-amounts by category.

    When categories are registered for the field, the form submits one value
    per category under "<fieldname>-<category ID>". The total is written as a
    historized row in ticket_amounts and each sub-amount as a row in
    ticket_subamounts that points at the total row.
    """

    FL_CANNOT_BE_NEGATIVE = 1 << 10

    def __init__(self, engine, field: FieldDescriptor, flags: int = 0):
        super().__init__(engine, field)
        self.flags = flags
        self._sub_amount_categories: Optional[List[Category]] = None

    def get_sub_amount_categories(self, store: FieldStore) -> List[Category]:
        if self._sub_amount_categories is None:
            cats = self.engine.categories.get_all_for_field(store, self.field_id)
            if cats and self.field.is_array:
                raise ConfigurationError(
                    f"Monetary field '{self.name}' with sub-amounts must not be an array field"
                )
            self._sub_amount_categories = cats
        return self._sub_amount_categories

    def parse_amount(self, value: Any) -> Optional[float]:
        """Parse user input honoring the configured separators. '' gives None."""
        if value is None:
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        text = str(value).strip().replace(" ", "")
        if not text:
            return None
        settings = self.engine.settings
        if settings.thousands_separator and settings.thousands_separator != settings.decimal_separator:
            text = text.replace(settings.thousands_separator, "")
        text = text.replace(settings.decimal_separator, ".")
        try:
            return float(text)
        except ValueError:
            raise FieldValidationError(
                self.name, f"Invalid monetary amount {value!r} for field {self.get_label()}"
            )

    def check_amount(self, context: TicketContext, amount: Optional[float]) -> Optional[float]:
        if (
            amount is not None
            and amount < 0
            and self.flags & self.FL_CANNOT_BE_NEGATIVE
            and not context.importing
        ):
            raise FieldValidationError(
                self.name, f"The amount for field {self.get_label(context)} cannot be negative"
            )
        return amount

    def is_new_value_different(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> bool:
        """Compare by amount, so "10.50" equals a stored 10.5."""
        try:
            return self.parse_amount(old_value) != self.parse_amount(new_value)
        except FieldValidationError:
            return True

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Any:
        amount = self.check_amount(context, self.parse_amount(new_value))
        return super().validate_before_write(context, old_value, amount)

    def get_subamounts(self, store: FieldStore, ticket: Ticket) -> Dict[int, float]:
        row_id = ticket.field_row_ids.get(self.field_id)
        if row_id is None:
            return {}
        rows = store.select(
            "ticket_subamounts", ("cat", "value"), {"amount_id": row_id}, order_by="cat"
        )
        return {row["cat"]: float(row["value"]) for row in rows}

    def on_create_or_update(
        self, context: TicketContext, ticket: Ticket, flags: int = 0
    ) -> bool:
        cats = self.get_sub_amount_categories(context.store)
        if not cats:
            return super().on_create_or_update(context, ticket, flags)

        old: Optional[Dict[int, float]] = None
        stored = ticket.field_data.get(self.field_id)
        if context.mode == TicketMode.edit and stored is not None:
            old = self.get_subamounts(context.store, ticket)
            old[0] = float(stored)

        new: Dict[int, float] = {}
        total = 0.0
        for cat in cats:
            amount = self.parse_amount(context.variable_data.get(f"{self.name}-{cat.id}"))
            if amount:
                new[cat.id] = self.check_amount(context, amount)
                total += amount
        total = round(total, 2)

        new_value = {0: total, **new} if total else None
        if old is None and new_value is None:
            return False
        if old == new_value:
            return False

        self.write_to_database(
            context, ticket, old, new_value, not (flags & CREATEFL_NOCHANGELOG)
        )
        return True

    def write_to_database(
        self,
        context: TicketContext,
        ticket: Ticket,
        old_value: Any,
        new_value: Any,
        write_changelog: bool,
    ) -> None:
        if not isinstance(old_value, dict) and not isinstance(new_value, dict):
            return super().write_to_database(
                context, ticket, old_value, new_value, write_changelog
            )

        old_sum = old_value.get(0) if old_value else None
        new_sum = new_value.get(0) if new_value else None
        new_row_id = self.insert_row_with_changelog(
            context, ticket, old_sum, new_sum, write_changelog
        )
        if new_row_id is not None:
            for cat_id, amount in new_value.items():
                if cat_id == 0:
                    continue
                context.store.insert(
                    "ticket_subamounts",
                    {"amount_id": new_row_id, "cat": cat_id, "value": amount},
                )
        ticket.field_data[self.field_id] = new_sum
        ticket.field_row_ids[self.field_id] = new_row_id

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        if value is None or value == "":
            return ""
        settings = self.engine.settings
        text = f"{float(value):,.2f}"
        return (
            text.replace(",", "\x00")
            .replace(".", settings.decimal_separator)
            .replace("\x00", settings.thousands_separator)
        )


# =========================================================================== #
# JSON composite                                                              #
# =========================================================================== #


class JsonHandler(FieldHandler):
    """Several sub-values packed into one JSON object per ticket.

    Args:
        keys: Allowed JSON keys mapped to their display labels.
    """

    shape = StorageShape.json

    def __init__(self, engine, field: FieldDescriptor, keys: Dict[str, str]):
        super().__init__(engine, field)
        self.keys = dict(keys)

    def get_keys(self) -> Dict[str, str]:
        return self.keys

    def decode(self, value: Any) -> Optional[Dict[str, Any]]:
        if value is None or value == "":
            return None
        if isinstance(value, dict):
            return value
        try:
            data = json.loads(value)
        except (TypeError, ValueError):
            raise FieldValidationError(self.name, f"Invalid JSON data for field {self.get_label()}")
        if not isinstance(data, dict):
            raise FieldValidationError(
                self.name, f"Data for field {self.get_label()} must be a JSON object"
            )
        return data

    def get_value(self, context: TicketContext) -> Optional[Dict[str, Any]]:
        return self.decode(super().get_value(context))

    def is_new_value_different(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> bool:
        try:
            return self.decode(old_value) != self.decode(new_value)
        except FieldValidationError:
            return True

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Optional[str]:
        data = self.decode(new_value) or {}
        unknown = sorted(set(data) - set(self.keys))
        if unknown:
            raise FieldValidationError(
                self.name,
                f"Unknown keys {unknown} for field {self.get_label(context)}",
            )
        data = {k: v for k, v in data.items() if v not in (None, "")}
        text = json.dumps(data, sort_keys=True) if data else None
        return super().validate_before_write(context, old_value, text)

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        data = self.decode(value) or {}
        return "; ".join(
            f"{label}: {data[key]}" for key, label in self.keys.items() if key in data
        )

    def make_searchable(self, context: TicketContext, ticket: Ticket) -> Optional[str]:
        data = self.decode(ticket.field_data.get(self.field_id)) or {}
        text = " ".join(str(v) for v in data.values() if v not in (None, ""))
        return text or None


# =========================================================================== #
# Ticket references                                                           #
# =========================================================================== #


TICKET_REF_RE = re.compile(r"^#(-?\d+)$")


class TicketReferenceHandler(SelectFromSetHandlerBase):
    """Pointer to another ticket, entered as "#123".

    The referenced ticket is not checked at write time; display falls back to
    "Invalid ticket #N" when it does not exist.

    Args:
        type_ids: Ticket types offered in the picker. None means all types.
    """

    def __init__(self, engine, field: FieldDescriptor, type_ids: Optional[List[int]] = None):
        super().__init__(engine, field)
        self.type_ids = type_ids

    def parse_reference(self, value: Any) -> int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        match = TICKET_REF_RE.match(str(value).strip())
        if not match:
            raise FieldValidationError(
                self.name,
                f"Invalid ticket reference {value!r} for field {self.get_label()}: "
                "expected #<ticket ID>",
            )
        return int(match.group(1))

    def is_new_value_different(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> bool:
        try:
            if new_value not in (None, ""):
                new_value = self.parse_reference(new_value)
        except FieldValidationError:
            return True
        return _normalize(old_value) != _normalize(new_value)

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> int:
        if new_value is None or new_value == "":
            raise MissingFieldDataError(self.name)
        return self.parse_reference(new_value)

    def get_valid_values(self, context: TicketContext, current: Any) -> Dict[str, str]:
        store = context.store
        query = sql.SQL("""
            SELECT t.i, tt.value AS title
            FROM {tickets} t
            LEFT JOIN {texts} tt ON tt.ticket_id = t.i AND tt.field_id = %s
        """).format(tickets=store.table("tickets"), texts=store.table("ticket_texts"))
        params: list = [FIELD_TITLE]
        if self.type_ids is not None:
            query = query + sql.SQL(" WHERE t.type_id = ANY(%s)")
            params.append(list(self.type_ids))
        query = query + sql.SQL(" ORDER BY t.i")
        return {
            f"#{row['i']}": row["title"] or ""
            for row in store.fetch_all(query, params)
        }

    def get_ticket_title(self, store: FieldStore, ticket_id: int) -> Optional[str]:
        row = store.fetch_one(
            store.select_query("ticket_texts", ("value",), ("ticket_id", "field_id")),
            (ticket_id, FIELD_TITLE),
        )
        return row["value"] if row else None

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        if value is None or value == "":
            return ""
        ticket_id = self.parse_reference(value) if not is_int_string(value) else int(value)
        title = self.get_ticket_title(context.store, ticket_id)
        return title if title is not None else f"Invalid ticket #{ticket_id}"

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        old = self._fetch_row_value(context.store, row.value_1)
        new = self._fetch_row_value(context.store, row.value_2)
        return "{} changed from {} to {}".format(
            self.get_label(context),
            self._ref(old, row.value_1),
            self._ref(new, row.value_2),
        )

    @staticmethod
    def _ref(value: Any, row_id: Optional[int]) -> str:
        if row_id is None:
            return "nothing"
        return f"#{value}" if value is not None else "unknown"


# =========================================================================== #
# Parents / children                                                          #
# =========================================================================== #


class ParentsHandler(FieldHandler):
    """Array of related ticket IDs. Paired with a companion field.

    The forward field (parents) stores rows on this ticket; the reverse field
    (children) stores rows on the other ticket under the companion field ID.
    """

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Parent tickets"

    def parse_ticket_ids(self, value: Any) -> List[str]:
        ids = []
        for item in split_list(value):
            item = item.lstrip("#")
            if not is_int_string(item):
                raise FieldValidationError(
                    self.name,
                    f"Invalid ticket ID {item!r} for field {self.get_label()}",
                )
            ids.append(str(int(item)))
        return ids

    def is_new_value_different(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> bool:
        try:
            return set(split_list(old_value)) != set(self.parse_ticket_ids(new_value))
        except FieldValidationError:
            return True

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Optional[List[str]]:
        ids = self.parse_ticket_ids(new_value)
        if context.ticket is not None and str(context.ticket.id) in ids:
            raise FieldValidationError(
                self.name, f"Ticket #{context.ticket.id} cannot be related to itself"
            )
        return super().validate_before_write(context, old_value, ids or None)

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        return ", ".join(f"#{v}" for v in split_list(value))

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        added, removed = parse_delta(row.value_str)
        return _format_added_removed(
            self.get_label(context),
            [f"#{v}" for v in added],
            [f"#{v}" for v in removed],
        )


class ChildrenHandler(ParentsHandler):
    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Child tickets"


# =========================================================================== #
# Dates                                                                       #
# =========================================================================== #


ISO_DATE = "%Y-%m-%d"


def format_timestamp(value: Any, fmt: str) -> str:
    """Render a Unix timestamp in UTC. Empty values give ''."""
    if value is None or value == "":
        return ""
    return datetime.fromtimestamp(float(value), tz=timezone.utc).strftime(fmt)


class DateHandler(FieldHandler):
    """Calendar date, stored as YYYY-MM-DD text in a historized row."""

    def parse_date(self, value: Any) -> Optional[date]:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return datetime.strptime(str(value).strip(), ISO_DATE).date()
        except ValueError:
            raise FieldValidationError(
                self.name,
                f"Invalid date {value!r} for field {self.get_label()}: expected YYYY-MM-DD",
            )

    def is_new_value_different(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> bool:
        try:
            return self.parse_date(old_value) != self.parse_date(new_value)
        except FieldValidationError:
            return True

    def validate_before_write(
        self, context: TicketContext, old_value: Any, new_value: Any
    ) -> Optional[str]:
        parsed = self.parse_date(new_value)
        return super().validate_before_write(
            context, old_value, parsed.isoformat() if parsed else None
        )

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        parsed = self.parse_date(value)
        return parsed.strftime(self.engine.settings.date_format) if parsed else ""


class DateTimeBaseHandler(FieldHandler):
    """Display-only view of a timestamp column of the tickets row.

    The service maintains these columns itself, so the field is registered
    as virtual and never written through the handler.
    """

    attribute = ""

    def get_value(self, context: TicketContext) -> Any:
        return getattr(context.ticket, self.attribute) if context.ticket else None

    def format_value_plain(self, context: TicketContext, value: Any) -> str:
        return format_timestamp(value, self.engine.settings.timestamp_format)

    def make_searchable(self, context: TicketContext, ticket: Ticket) -> Optional[str]:
        return None

    def serialize_to_dict(self, context: TicketContext, ticket: Ticket) -> Dict[str, Any]:
        value = getattr(ticket, self.attribute)
        return {
            self.name: value,
            f"{self.name}_formatted": self.format_value_plain(context, value),
        }


class CreatedDateTimeHandler(DateTimeBaseHandler):
    attribute = "created_dt"

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Created"


class LastModifiedDateTimeHandler(DateTimeBaseHandler):
    attribute = "lastmod_dt"

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Changed"


# =========================================================================== #
# Comments                                                                    #
# =========================================================================== #


RETRACTED_COMMENT = "This version of the comment has been retracted"


class CommentHandler(FieldHandler):
    """Comments exist only as changelog rows.

    The field is CHANGELOGONLY: it is skipped by create, update, load and
    serialization. TicketFieldService.add_comment() writes the text row and
    the changelog row; the changelog reader joins the live text back in.
    """

    def get_label(self, context: Optional[TicketContext] = None) -> str:
        return self.field.label or "Comment"

    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        return row.comment if row.comment else RETRACTED_COMMENT


class UpdatedCommentHandler(CommentHandler):
    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        if row.comment:
            return f"Comment updated to: {row.comment}"
        return RETRACTED_COMMENT


class DeletedCommentHandler(CommentHandler):
    def format_changelog_item(self, context: TicketContext, row: ChangelogRow) -> str:
        return "Comment deleted"
