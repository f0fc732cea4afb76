"""Per-request state handed to every field handler call."""

import time
from typing import Any, Dict, Optional

from doreen_fields.models import Ticket, TicketMode, TicketType
from doreen_fields.storage import FieldStore


class TicketContext:
    """What a field handler needs to know about the current operation.

    Args:
        engine: FieldEngine holding registries and caches.
        store: Storage for the current connection and schema.
        mode: Create, edit or one of the read-only display modes.
        ticket_type: Type of the ticket being created or edited.
        ticket: The ticket, once it exists.
        chg_uid: ID of the user making the change.
        variable_data: Submitted values keyed by field name.
        importing: Relax "unknown value" checks. Defaults to the
            importing_tickets setting, which is off.
        assignable_users: uid -> display name of users who may be assigned.
        all_users: uid -> display name of every user, used when importing.
        last_assignee: The acting user's most recently chosen assignee.
    """

    def __init__(
        self,
        engine,
        store: FieldStore,
        mode: TicketMode,
        ticket_type: Optional[TicketType] = None,
        ticket: Optional[Ticket] = None,
        chg_uid: Optional[int] = None,
        variable_data: Optional[Dict[str, Any]] = None,
        importing: Optional[bool] = None,
        now: Optional[float] = None,
        assignable_users: Optional[Dict[int, str]] = None,
        all_users: Optional[Dict[int, str]] = None,
        last_assignee: Optional[int] = None,
    ):
        self.engine = engine
        self.store = store
        self.mode = mode
        self.ticket = ticket
        self.ticket_type = ticket_type or (ticket.type if ticket else None)
        self.chg_uid = chg_uid
        self.variable_data = variable_data or {}
        self.importing = (
            engine.settings.importing_tickets if importing is None else importing
        )
        self.now = time.time() if now is None else now
        self.assignable_users = assignable_users or {}
        self.all_users = all_users or dict(self.assignable_users)
        self.last_assignee = last_assignee

    @property
    def project_id(self) -> Optional[int]:
        if "project" in self.variable_data:
            return self.variable_data["project"]
        return self.ticket.project_id if self.ticket else None
