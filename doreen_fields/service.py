"""TicketFieldService - generic ticket create/update/load on top of the field engine.

Follows the TicketService pattern:
- Takes a DB connection and schema as parameters (DI)
- Sync methods with psycopg2 RealDictCursor
- One transaction per create/update; any field error rolls back every row
  the request wrote, the tickets row included
- Comments are changelog rows pointing at ticket_texts rows
"""

import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

from doreen_fields.constants import (
    CREATEFL_IGNOREMISSING,
    CREATEFL_NOCHANGELOG,
    FIELD_COMMENT,
    FIELD_COMMENT_DELETED,
    FIELD_COMMENT_UPDATED,
    FIELD_OLDCOMMENT,
    FIELD_TICKET_CREATED,
    FIELD_TITLE,
)
from doreen_fields.context import TicketContext
from doreen_fields.engine import FieldEngine, get_engine
from doreen_fields.errors import (
    CommentNotFoundError,
    ConfigurationError,
    MissingFieldDataError,
    StaleCommentError,
)
from doreen_fields.models import (
    ChangelogEntry,
    ChangelogRow,
    ChangelogResponse,
    FieldFlag,
    Ticket,
    TicketCreate,
    TicketMode,
    TicketResponse,
    TicketType,
    TicketUpdate,
    WorkflowResponse,
)
from doreen_fields.storage import DBConnection, FieldStore
from doreen_fields.util import split_list

logger = logging.getLogger(__name__)

TICKET_COLUMNS = (
    "i",
    "type_id",
    "project_id",
    "owner_uid",
    "created_dt",
    "lastmod_uid",
    "lastmod_dt",
)
TICKET_TYPE_COLUMNS = (
    "i",
    "name",
    "workflow_id",
    "field_ids",
    "automatic_status",
    "automatic_title",
)


class SearchSink(Protocol):
    """Receives searchable text after a ticket was committed."""

    def on_ticket_created(self, ticket: Ticket, data: Dict[str, str]) -> None: ...
    def on_ticket_updated(self, ticket: Ticket, data: Dict[str, str]) -> None: ...


class TicketFieldService:
    """Runs the field handler loop for ticket create, update and display.

    Takes a database connection and schema as parameters (dependency injection).
    The service does NOT manage connection lifecycle - the caller does.
    """

    def __init__(
        self,
        engine: Optional[FieldEngine] = None,
        search_sink: Optional[SearchSink] = None,
    ):
        self._engine = engine
        self.search_sink = search_sink

    @property
    def engine(self) -> FieldEngine:
        return self._engine if self._engine is not None else get_engine()

    # ------------------------------------------------------------------- #
    # Ticket types                                                        #
    # ------------------------------------------------------------------- #

    def get_ticket_type(
        self, conn: DBConnection, schema: str, type_id: int
    ) -> Optional[TicketType]:
        return self._get_ticket_type(FieldStore(conn, schema), type_id)

    @staticmethod
    def _get_ticket_type(store: FieldStore, type_id: int) -> Optional[TicketType]:
        row = store.fetch_one(
            store.select_query("ticket_types", TICKET_TYPE_COLUMNS, ("i",)), (type_id,)
        )
        if not row:
            return None
        return TicketType(
            id=row["i"],
            name=row["name"],
            workflow_id=row["workflow_id"],
            field_ids=[int(f) for f in split_list(row["field_ids"])],
            automatic_status=bool(row["automatic_status"]),
            automatic_title=bool(row["automatic_title"]),
        )

    # ------------------------------------------------------------------- #
    # Create / update                                                     #
    # ------------------------------------------------------------------- #

    def create_ticket(
        self,
        conn: DBConnection,
        schema: str,
        data: TicketCreate,
        ticket_type: TicketType,
        changed_by: Optional[int] = None,
        flags: int = 0,
        **context_args: Any,
    ) -> Ticket:
        """Create a ticket and write every field of its type.

        Args:
            conn: Database connection.
            schema: PostgreSQL schema name.
            data: Submitted values keyed by field name.
            ticket_type: Type of the new ticket.
            changed_by: Creating user.
            flags: CREATEFL_* request flags.
            **context_args: Passed to TicketContext (importing,
                assignable_users, all_users, last_assignee).

        Returns:
            The new ticket with field data and row IDs populated.

        Raises:
            FieldValidationError: If a submitted value is invalid or a
                required one is missing. Nothing is written.
        """
        store = FieldStore(conn, schema)
        now = time.time()
        context = TicketContext(
            self.engine,
            store,
            TicketMode.create,
            ticket_type=ticket_type,
            chg_uid=changed_by,
            variable_data=dict(data.fields),
            now=now,
            **context_args,
        )

        with store.transaction():
            ticket_id = store.insert(
                "tickets",
                {
                    "type_id": ticket_type.id,
                    "project_id": data.project_id,
                    "owner_uid": changed_by,
                    "created_dt": now,
                    "lastmod_uid": changed_by,
                    "lastmod_dt": now,
                },
            )
            ticket = Ticket(
                id=ticket_id,
                type=ticket_type,
                project_id=data.project_id,
                owner_uid=changed_by,
                created_dt=now,
                lastmod_uid=changed_by,
                lastmod_dt=now,
            )
            context.ticket = ticket

            # Field values of a new ticket are not logged individually.
            self._apply_fields(context, ticket, flags | CREATEFL_NOCHANGELOG)

            if not flags & CREATEFL_NOCHANGELOG:
                self.engine.changelog.add_system_change(
                    store, FIELD_TICKET_CREATED, ticket_id, changed_by, now
                )

        logger.info("Created ticket #%d of type '%s'", ticket_id, ticket_type.name)
        if self.search_sink is not None:
            self.search_sink.on_ticket_created(ticket, self.get_searchable(context, ticket))
        return ticket

    def update_ticket(
        self,
        conn: DBConnection,
        schema: str,
        ticket: Ticket,
        data: TicketUpdate,
        changed_by: Optional[int] = None,
        flags: int = CREATEFL_IGNOREMISSING,
        **context_args: Any,
    ) -> int:
        """Apply submitted values to an existing ticket.

        Fields absent from `data` keep their values. The ticket object is
        updated in place, and left untouched if the update fails.

        Returns:
            Number of fields that changed.

        Raises:
            FieldValidationError: If a submitted value is invalid, including
                a status change the workflow does not allow.
        """
        store = FieldStore(conn, schema)
        now = time.time()
        context = TicketContext(
            self.engine,
            store,
            TicketMode.edit,
            ticket=ticket,
            chg_uid=changed_by,
            variable_data=dict(data.fields),
            now=now,
            **context_args,
        )

        saved = ticket.model_copy(deep=True)
        try:
            with store.transaction():
                changed = self._apply_fields(context, ticket, flags)
                if changed:
                    store.update(
                        "tickets",
                        {"lastmod_uid": changed_by, "lastmod_dt": now},
                        {"i": ticket.id},
                    )
                    ticket.lastmod_uid = changed_by
                    ticket.lastmod_dt = now
        except Exception:
            # Row IDs written in the rolled-back transaction no longer exist.
            for attr in ("project_id", "lastmod_uid", "lastmod_dt", "field_data", "field_row_ids"):
                setattr(ticket, attr, getattr(saved, attr))
            raise

        if changed:
            logger.info("Updated %d field(s) of ticket #%d", changed, ticket.id)
            if self.search_sink is not None:
                self.search_sink.on_ticket_updated(
                    ticket, self.get_searchable(context, ticket)
                )
        return changed

    def _apply_fields(self, context: TicketContext, ticket: Ticket, flags: int) -> int:
        """Call on_create_or_update() for every field of the ticket's type."""
        engine = self.engine
        ticket_type = ticket.type
        changed = 0
        for field_id in ticket_type.field_ids:
            field = engine.fields.find(field_id)
            if field.has(FieldFlag.CHANGELOGONLY):
                continue
            if field.has(FieldFlag.VIRTUAL_IGNORE_POST_PUT):
                if field.is_required:
                    raise ConfigurationError(
                        f"Field '{field.name}' is virtual and cannot be required"
                    )
                continue
            if ticket_type.automatic_title and field_id == FIELD_TITLE:
                continue

            handler = engine.find_handler(field_id)
            if not handler.on_create_or_update(context, ticket, flags):
                continue
            changed += 1

            if field.has(FieldFlag.MAPPED_FROM_PROJECT):
                value = ticket.field_data.get(field_id)
                ticket.project_id = int(value) if value is not None else None
                context.store.update(
                    "tickets", {"project_id": ticket.project_id}, {"i": ticket.id}
                )
        return changed

    # ------------------------------------------------------------------- #
    # Comments                                                            #
    # ------------------------------------------------------------------- #

    def add_comment(
        self,
        conn: DBConnection,
        schema: str,
        ticket: Ticket,
        text: str,
        changed_by: Optional[int] = None,
    ) -> int:
        """Append a comment to the ticket's changelog.

        Returns:
            ID of the changelog row, which identifies the comment.

        Raises:
            MissingFieldDataError: If the text is empty.
        """
        text = self._comment_text(text)
        store = FieldStore(conn, schema)
        now = time.time()
        with store.transaction():
            text_id = store.insert(
                "ticket_texts",
                {"ticket_id": ticket.id, "field_id": FIELD_COMMENT, "value": text},
            )
            row_id = self.engine.changelog.add_ticket_change(
                store, FIELD_COMMENT, ticket.id, changed_by, now, value_1=text_id
            )
            store.update(
                "tickets",
                {"lastmod_uid": changed_by, "lastmod_dt": now},
                {"i": ticket.id},
            )
        ticket.lastmod_uid = changed_by
        ticket.lastmod_dt = now
        logger.info("Added comment %d to ticket #%d", row_id, ticket.id)
        return row_id

    def update_comment(
        self,
        conn: DBConnection,
        schema: str,
        ticket_id: int,
        comment_id: int,
        text: str,
        changed_by: Optional[int] = None,
    ) -> int:
        """Replace the text of a comment, keeping the old version.

        The old text row is retagged FIELD_OLDCOMMENT and a
        FIELD_COMMENT_UPDATED row links old and new text. The original
        author travels along in value_str.

        Returns:
            ID of the new changelog row, which identifies the comment from
            now on.

        Raises:
            CommentNotFoundError: If comment_id is not a comment of the ticket.
            StaleCommentError: If comment_id names a superseded version.
        """
        text = self._comment_text(text)
        store = FieldStore(conn, schema)
        row = self._find_comment(store, ticket_id, comment_id)
        old_text_id, author = self._current_text(row)
        now = time.time()
        with store.transaction():
            store.update("ticket_texts", {"field_id": FIELD_OLDCOMMENT}, {"i": old_text_id})
            text_id = store.insert(
                "ticket_texts",
                {"ticket_id": ticket_id, "field_id": FIELD_COMMENT, "value": text},
            )
            row_id = self.engine.changelog.add_ticket_change(
                store,
                FIELD_COMMENT_UPDATED,
                ticket_id,
                changed_by,
                now,
                old_text_id,
                text_id,
                None if author is None else str(author),
            )
        logger.info("Updated comment %d of ticket #%d as %d", comment_id, ticket_id, row_id)
        return row_id

    def delete_comment(
        self,
        conn: DBConnection,
        schema: str,
        ticket_id: int,
        comment_id: int,
        changed_by: Optional[int] = None,
    ) -> int:
        """Retract a comment. Its text is kept under FIELD_OLDCOMMENT.

        Returns:
            ID of the FIELD_COMMENT_DELETED changelog row.

        Raises:
            CommentNotFoundError: If comment_id is not a comment of the ticket.
            StaleCommentError: If comment_id names a superseded version.
        """
        store = FieldStore(conn, schema)
        row = self._find_comment(store, ticket_id, comment_id)
        old_text_id, _ = self._current_text(row)
        with store.transaction():
            store.update("ticket_texts", {"field_id": FIELD_OLDCOMMENT}, {"i": old_text_id})
            row_id = self.engine.changelog.add_ticket_change(
                store, FIELD_COMMENT_DELETED, ticket_id, changed_by, time.time(), old_text_id
            )
        logger.info("Deleted comment %d of ticket #%d", comment_id, ticket_id)
        return row_id

    @staticmethod
    def _comment_text(text: Optional[str]) -> str:
        if text is None or not text.strip():
            raise MissingFieldDataError("comment")
        return text

    def _find_comment(self, store: FieldStore, ticket_id: int, comment_id: int) -> ChangelogRow:
        row = self.engine.changelog.find_row(store, ticket_id, comment_id)
        if row is None or row.field_id not in (FIELD_COMMENT, FIELD_COMMENT_UPDATED):
            raise CommentNotFoundError(
                f"Comment {comment_id} does not exist on ticket #{ticket_id}"
            )
        if not row.comment:
            raise StaleCommentError(
                f"Comment {comment_id} is not the current version of the comment"
            )
        return row

    @staticmethod
    def _current_text(row: ChangelogRow) -> Tuple[Optional[int], Any]:
        """(text row ID, original author) of a live comment changelog row."""
        if row.field_id == FIELD_COMMENT:
            return row.value_1, row.chg_uid
        return row.value_2, row.value_str

    # ------------------------------------------------------------------- #
    # Load / display                                                      #
    # ------------------------------------------------------------------- #

    def load_ticket(
        self,
        conn: DBConnection,
        schema: str,
        ticket_id: int,
        ticket_type: Optional[TicketType] = None,
    ) -> Optional[Ticket]:
        """Load a ticket with the live values of every field of its type.

        Returns:
            The ticket, or None if not found.
        """
        store = FieldStore(conn, schema)
        row = store.fetch_one(
            store.select_query("tickets", TICKET_COLUMNS, ("i",)), (ticket_id,)
        )
        if not row:
            return None

        if ticket_type is None:
            ticket_type = self._get_ticket_type(store, row["type_id"])
            if ticket_type is None:
                raise ConfigurationError(
                    f"Ticket #{ticket_id} has unknown ticket type {row['type_id']}"
                )

        ticket = Ticket(
            id=row["i"],
            type=ticket_type,
            project_id=row["project_id"],
            owner_uid=row["owner_uid"],
            created_dt=row["created_dt"],
            lastmod_uid=row["lastmod_uid"],
            lastmod_dt=row["lastmod_dt"],
        )
        for field_id in ticket_type.field_ids:
            field = self.engine.fields.find(field_id)
            if field.has(FieldFlag.VIRTUAL_IGNORE_POST_PUT) or field.has(FieldFlag.CHANGELOGONLY):
                continue
            self.engine.find_handler(field_id).load_into(store, ticket)
        return ticket

    def to_response(
        self,
        conn: DBConnection,
        schema: str,
        ticket: Ticket,
        mode: TicketMode = TicketMode.readonly_details,
        **context_args: Any,
    ) -> TicketResponse:
        """Serialize a loaded ticket: raw values plus plain-text renderings."""
        context = TicketContext(
            self.engine, FieldStore(conn, schema), mode, ticket=ticket, **context_args
        )
        fields: Dict[str, Any] = {}
        formatted: Dict[str, str] = {}
        for field_id in ticket.type.field_ids:
            if self.engine.fields.find(field_id).has(FieldFlag.CHANGELOGONLY):
                continue
            handler = self.engine.find_handler(field_id)
            for key, value in handler.serialize_to_dict(context, ticket).items():
                if key.endswith("_formatted"):
                    formatted[key[: -len("_formatted")]] = value
                else:
                    fields[key] = value
        return TicketResponse(
            id=ticket.id,
            type_id=ticket.type.id,
            project_id=ticket.project_id,
            lastmod_uid=ticket.lastmod_uid,
            lastmod_dt=ticket.lastmod_dt,
            fields=fields,
            formatted=formatted,
        )

    def get_searchable(self, context: TicketContext, ticket: Ticket) -> Dict[str, str]:
        data: Dict[str, str] = {}
        for field_id in ticket.type.field_ids:
            if self.engine.fields.find(field_id).has(FieldFlag.CHANGELOGONLY):
                continue
            handler = self.engine.find_handler(field_id)
            text = handler.make_searchable(context, ticket)
            if text is not None:
                data[handler.name] = text
        return data

    # ------------------------------------------------------------------- #
    # Changelog                                                           #
    # ------------------------------------------------------------------- #

    def get_changelog(
        self,
        conn: DBConnection,
        schema: str,
        ticket_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> ChangelogResponse:
        """Rendered changelog of one ticket, newest first."""
        store = FieldStore(conn, schema)
        context = TicketContext(self.engine, store, TicketMode.readonly_details)
        rows = self.engine.changelog.load_for_ticket(store, ticket_id, limit, offset)
        total = self.engine.changelog.count_rows(store, ticket_id)

        entries: List[ChangelogEntry] = []
        for row in rows:
            if row.field_id == FIELD_TICKET_CREATED:
                message = "Ticket created"
            else:
                handler = self.engine.find_handler(row.field_id, required=False)
                if handler is None:
                    message = f"Change to unknown field {row.field_id}"
                else:
                    message = handler.try_format_changelog_item(context, row)
            entries.append(
                ChangelogEntry(
                    id=row.id,
                    field_id=row.field_id,
                    chg_uid=row.chg_uid,
                    chg_dt=row.chg_dt,
                    message=message,
                )
            )
        return ChangelogResponse(entries=entries, total=total, limit=limit, offset=offset)

    # ------------------------------------------------------------------- #
    # Workflows                                                           #
    # ------------------------------------------------------------------- #

    def list_workflows(self, conn: DBConnection, schema: str) -> List[WorkflowResponse]:
        store = FieldStore(conn, schema)
        repo = self.engine.workflows
        result = []
        for wf in repo.get_all(store):
            wf = repo.load_transitions(store, wf)
            result.append(
                WorkflowResponse(
                    id=wf.id,
                    name=wf.name,
                    initial=wf.initial,
                    statuses=wf.statuses,
                    transitions=wf.transitions or {},
                    terminal=wf.terminal_statuses(),
                )
            )
        return result
