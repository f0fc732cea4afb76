"""Ticket workflows: status universes and transition graphs.

A workflow is a named set of status values plus a directed graph of
permitted status changes. Status values are plain integers whose meaning
comes from the status_values table; there is no universal status enum.

A status without outgoing transitions is terminal. This is not validated
when a workflow is built.
"""

import logging
from typing import Dict, List, Optional

from psycopg2 import sql
from pydantic import BaseModel, Field, model_validator

from doreen_fields.cache import CachedRepository
from doreen_fields.errors import ConfigurationError
from doreen_fields.models import StatusValue
from doreen_fields.storage import FieldStore
from doreen_fields.util import split_list

logger = logging.getLogger(__name__)

UNKNOWN_STATUS = "unknown"


class TicketWorkflow(BaseModel):
    id: int
    name: str
    initial: int
    statuses: List[int] = Field(default_factory=list)
    # from status -> permitted next statuses; None until loaded
    transitions: Optional[Dict[int, List[int]]] = None

    @model_validator(mode="after")
    def _initial_in_statuses(self) -> "TicketWorkflow":
        if self.initial not in self.statuses:
            raise ValueError(
                f"Initial status {self.initial} of workflow '{self.name}' "
                f"is not one of its statuses {self.statuses}"
            )
        return self

    def get_valid_state_transitions(self, current: int) -> List[int]:
        """Statuses a ticket in `current` may move to, `current` first."""
        targets = (self.transitions or {}).get(current, [])
        return [current] + [s for s in targets if s != current]

    def terminal_statuses(self) -> List[int]:
        transitions = self.transitions or {}
        return [
            s
            for s in self.statuses
            if not [t for t in transitions.get(s, []) if t != s]
        ]


def _check_graph(
    name: str, initial: int, statuses: List[int], transitions: Dict[int, List[int]]
) -> None:
    if initial not in statuses:
        raise ConfigurationError(
            f"Initial status {initial} of workflow '{name}' is not in {statuses}"
        )
    for source, targets in transitions.items():
        for status in [source] + list(targets):
            if status not in statuses:
                raise ConfigurationError(
                    f"Transition {source} -> {targets} of workflow '{name}' "
                    f"uses status {status} outside {statuses}"
                )


# =========================================================================== #
# Repositories                                                                #
# =========================================================================== #


class WorkflowRepository(CachedRepository[TicketWorkflow]):
    entity_type = TicketWorkflow

    def _load_rows(self, store: FieldStore) -> None:
        query = sql.SQL("""
            SELECT w.i, w.name, w.initial,
                   string_agg(ws.status_id::text, ',' ORDER BY ws.i) AS statuses
            FROM {workflows} w
            LEFT JOIN {ws} ws ON ws.workflow_id = w.i
            GROUP BY w.i, w.name, w.initial
            ORDER BY w.i
        """).format(
            workflows=store.table("workflows"),
            ws=store.table("workflow_statuses"),
        )
        for row in store.fetch_all(query):
            self.cache.put(
                TicketWorkflow(
                    id=row["i"],
                    name=row["name"],
                    initial=row["initial"],
                    statuses=[int(s) for s in split_list(row["statuses"])],
                )
            )

    def get_all(self, store: FieldStore) -> List[TicketWorkflow]:
        return list(self.ensure_loaded(store).values())

    def find(
        self, store: FieldStore, workflow_id: Optional[int], required: bool = False
    ) -> Optional[TicketWorkflow]:
        wf = self.ensure_loaded(store).get(workflow_id) if workflow_id is not None else None
        if wf is None and required:
            raise ConfigurationError(f"Invalid workflow ID {workflow_id}")
        return wf

    def load_transitions(self, store: FieldStore, wf: TicketWorkflow) -> TicketWorkflow:
        """Fill in the transition graph on first use."""
        if wf.transitions is None:
            rows = store.select(
                "state_transitions",
                ("from_status", "to_status"),
                {"workflow_id": wf.id},
                order_by="i",
            )
            graph: Dict[int, List[int]] = {}
            for row in rows:
                graph.setdefault(row["from_status"], []).append(row["to_status"])
            wf.transitions = graph
        return wf

    def get_valid_state_transitions(
        self, store: FieldStore, wf: TicketWorkflow, current: int
    ) -> List[int]:
        return self.load_transitions(store, wf).get_valid_state_transitions(current)

    def create(
        self,
        store: FieldStore,
        name: str,
        initial: int,
        statuses: List[int],
        transitions: Dict[int, List[int]],
    ) -> TicketWorkflow:
        """Create a workflow with its statuses and graph in one transaction.

        Raises:
            ConfigurationError: If `initial` or a transition endpoint is not
                one of `statuses`.
        """
        _check_graph(name, initial, statuses, transitions)
        self.ensure_loaded(store)
        with store.transaction():
            workflow_id = store.insert("workflows", {"name": name, "initial": initial})
            self._insert_graph(store, workflow_id, statuses, transitions)

        wf = TicketWorkflow(
            id=workflow_id,
            name=name,
            initial=initial,
            statuses=list(statuses),
            transitions={k: list(v) for k, v in transitions.items()},
        )
        logger.info("Created workflow %d '%s'", workflow_id, name)
        return self.cache.put(wf)

    def update(
        self,
        store: FieldStore,
        wf: TicketWorkflow,
        statuses: List[int],
        transitions: Dict[int, List[int]],
        initial: Optional[int] = None,
    ) -> TicketWorkflow:
        """Replace the status set and graph of an existing workflow."""
        initial = wf.initial if initial is None else initial
        _check_graph(wf.name, initial, statuses, transitions)
        with store.transaction():
            store.update("workflows", {"initial": initial}, {"i": wf.id})
            store.delete("state_transitions", {"workflow_id": wf.id})
            store.delete("workflow_statuses", {"workflow_id": wf.id})
            self._insert_graph(store, wf.id, statuses, transitions)

        updated = TicketWorkflow(
            id=wf.id,
            name=wf.name,
            initial=initial,
            statuses=list(statuses),
            transitions={k: list(v) for k, v in transitions.items()},
        )
        return self.cache.put(updated)

    @staticmethod
    def _insert_graph(
        store: FieldStore,
        workflow_id: int,
        statuses: List[int],
        transitions: Dict[int, List[int]],
    ) -> None:
        for status in statuses:
            store.insert(
                "workflow_statuses", {"workflow_id": workflow_id, "status_id": status}
            )
        for source, targets in transitions.items():
            for target in targets:
                store.insert(
                    "state_transitions",
                    {
                        "workflow_id": workflow_id,
                        "from_status": source,
                        "to_status": target,
                    },
                )


class StatusValueRepository(CachedRepository[StatusValue]):
    entity_type = StatusValue

    def _load_rows(self, store: FieldStore) -> None:
        for row in store.select("status_values", ("i", "name", "html_color"), order_by="i"):
            self.cache.put(
                StatusValue(id=row["i"], name=row["name"], html_color=row["html_color"])
            )

    def get_all(self, store: FieldStore) -> Dict[int, StatusValue]:
        return self.ensure_loaded(store)

    def get_description(self, store: FieldStore, status: Optional[int]) -> str:
        sv = self.ensure_loaded(store).get(status) if status is not None else None
        return sv.name if sv else UNKNOWN_STATUS

    def get_color(self, store: FieldStore, status: Optional[int]) -> Optional[str]:
        sv = self.ensure_loaded(store).get(status) if status is not None else None
        return sv.html_color if sv else None

    def create(
        self,
        store: FieldStore,
        name: str,
        html_color: Optional[str] = None,
        status_id: Optional[int] = None,
    ) -> StatusValue:
        """Add a status value. Core statuses pass their fixed negative ID."""
        self.ensure_loaded(store)
        values = {"name": name, "html_color": html_color}
        if status_id is not None:
            values = {"i": status_id, **values}
        new_id = store.insert("status_values", values)
        return self.cache.put(StatusValue(id=new_id, name=name, html_color=html_color))
