"""Pydantic models for doreen-fields."""

from enum import Enum, IntFlag
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# --------------------------------------------------------------------------- #
# Enums                                                                       #
# --------------------------------------------------------------------------- #


class FieldFlag(IntFlag):
    STD_CORE = 1 << 0
    STD_DATA_OLD_NEW = 1 << 1
    REQUIRED_IN_POST_PUT = 1 << 2
    VIRTUAL_IGNORE_POST_PUT = 1 << 3
    ARRAY = 1 << 4
    ARRAY_HAS_REVERSE = 1 << 5
    ARRAY_REVERSE = 1 << 6
    FIXED_CREATEONLY = 1 << 7
    CHANGELOGONLY = 1 << 8
    SORTABLE = 1 << 12
    DESCENDING = 1 << 13
    EMPTYTICKETEVENT = 1 << 14
    TYPE_INT = 1 << 18
    TYPE_TEXT_LITERAL = 1 << 20
    ARRAY_COUNT = 1 << 21
    MAPPED_FROM_PROJECT = 1 << 26


class Cardinality(str, Enum):
    scalar = "scalar"
    array = "array"


class StorageShape(str, Enum):
    """Physical storage layout a handler writes to."""

    scalar = "scalar"  # historized rows, one live row per ticket
    array = "array"  # one row per element, add/remove diffing
    m2m = "m2m"  # join rows into a global pool (keywords)
    json = "json"  # one historized row holding a JSON object
    sum_with_subrows = "sum_with_subrows"  # total row plus per-category rows


class TicketMode(str, Enum):
    create = "create"
    edit = "edit"
    readonly_details = "readonly_details"
    readonly_list = "readonly_list"
    readonly_grid = "readonly_grid"
    readonly_filterlist = "readonly_filterlist"

    @property
    def is_editor(self) -> bool:
        return self in (TicketMode.create, TicketMode.edit)


# --------------------------------------------------------------------------- #
# Engine models                                                               #
# --------------------------------------------------------------------------- #


class FieldDescriptor(BaseModel):
    """Registration record for one ticket field. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    tblname: Optional[str] = None
    flags: int = 0
    label: Optional[str] = None
    companion_field_id: Optional[int] = None

    def has(self, flag: FieldFlag) -> bool:
        return bool(self.flags & flag)

    @property
    def cardinality(self) -> Cardinality:
        return Cardinality.array if self.has(FieldFlag.ARRAY) else Cardinality.scalar

    @property
    def is_array(self) -> bool:
        return self.cardinality == Cardinality.array

    @property
    def is_required(self) -> bool:
        return self.has(FieldFlag.REQUIRED_IN_POST_PUT)

    @property
    def companion_id(self) -> Optional[int]:
        """Field ID of the other direction of a bidirectional relation."""
        if self.companion_field_id is not None:
            return self.companion_field_id
        if self.has(FieldFlag.ARRAY_HAS_REVERSE):
            return self.id + 1
        if self.has(FieldFlag.ARRAY_REVERSE):
            return self.id - 1
        return None


class TicketType(BaseModel):
    id: int
    name: str
    workflow_id: Optional[int] = None
    field_ids: List[int] = Field(default_factory=list)
    automatic_status: bool = False
    automatic_title: bool = False


class Ticket(BaseModel):
    id: int
    type: TicketType
    project_id: Optional[int] = None
    owner_uid: Optional[int] = None
    created_dt: Optional[float] = None
    lastmod_uid: Optional[int] = None
    lastmod_dt: Optional[float] = None
    # field_id -> value (list for array fields)
    field_data: Dict[int, Any] = Field(default_factory=dict)
    # field_id -> storage row id (list, index-aligned with field_data, for arrays)
    field_row_ids: Dict[int, Any] = Field(default_factory=dict)


class Category(BaseModel):
    id: int
    field_id: int
    name: str
    parent: Optional[int] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    def get_extra(self, key: str) -> Any:
        return self.extra.get(key)


class Keyword(BaseModel):
    id: int
    keyword: str


class StatusValue(BaseModel):
    id: int
    name: str
    html_color: Optional[str] = None


class ChangelogRow(BaseModel):
    id: int
    field_id: int
    what: Optional[int] = None
    chg_uid: Optional[int] = None
    chg_dt: float
    value_1: Optional[int] = None
    value_2: Optional[int] = None
    value_str: Optional[str] = None
    # Read-side joins
    int_old: Optional[int] = None
    int_new: Optional[int] = None
    workflow_id: Optional[int] = None
    # Live text of a comment row
    comment: Optional[str] = None


# --------------------------------------------------------------------------- #
# Request models                                                              #
# --------------------------------------------------------------------------- #


class TicketCreate(BaseModel):
    type_id: int
    project_id: Optional[int] = None
    # Keyed by field name, e.g. {"title": "...", "priority": 3}
    fields: Dict[str, Any] = Field(default_factory=dict)


class TicketUpdate(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)


class CommentBody(BaseModel):
    text: str


# --------------------------------------------------------------------------- #
# Response models                                                             #
# --------------------------------------------------------------------------- #


class TicketResponse(BaseModel):
    id: int
    type_id: int
    project_id: Optional[int] = None
    lastmod_uid: Optional[int] = None
    lastmod_dt: Optional[float] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    formatted: Dict[str, str] = Field(default_factory=dict)


class CommentResponse(BaseModel):
    id: int  # changelog row of the current version
    ticket_id: int
    text: Optional[str] = None


class ChangelogEntry(BaseModel):
    id: int
    field_id: int
    chg_uid: Optional[int] = None
    chg_dt: float
    message: str


class ChangelogResponse(BaseModel):
    entries: List[ChangelogEntry] = Field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0


class WorkflowResponse(BaseModel):
    id: int
    name: str
    initial: int
    statuses: List[int] = Field(default_factory=list)
    transitions: Dict[int, List[int]] = Field(default_factory=dict)
    terminal: List[int] = Field(default_factory=list)
