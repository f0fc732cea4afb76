"""Tests for the keyword pool and the keywords field handler."""

from unittest.mock import MagicMock, call

import pytest

from doreen_fields.cache import EntityCache
from doreen_fields.config import EngineSettings
from doreen_fields.constants import FIELD_KEYWORDS
from doreen_fields.context import TicketContext
from doreen_fields.engine import FieldEngine
from doreen_fields.errors import FieldValidationError
from doreen_fields.keywords import KeywordRepository, split_keywords
from doreen_fields.models import ChangelogRow, Keyword, Ticket, TicketMode, TicketType

FIXED_TIME = 1700000000.0


def _ticket(**overrides):
    data = {"id": 7, "type": TicketType(id=1, name="Task", field_ids=[FIELD_KEYWORDS])}
    data.update(overrides)
    return Ticket(**data)


class TestKeywordValidation:
    @pytest.mark.parametrize("keyword", ["bug", "Bug123", "_internal", "ünicode"])
    def test_valid_keywords(self, keyword):
        assert KeywordRepository.validate(keyword) == keyword

    @pytest.mark.parametrize("keyword", ["1st", "a-b", "", "with space"])
    def test_invalid_keywords(self, keyword):
        with pytest.raises(FieldValidationError, match="Invalid keyword"):
            KeywordRepository.validate(keyword)

    def test_split_on_whitespace_and_commas(self):
        assert split_keywords("bug,  ui\tux ,") == ["bug", "ui", "ux"]
        assert split_keywords(None) == []
        assert split_keywords(["a", "b"]) == ["a", "b"]


class TestKeywordRepository:
    def setup_method(self):
        self.repo = KeywordRepository(EntityCache())
        self.store = MagicMock()
        self.store.fetch_one.return_value = None
        self.store.insert.return_value = 1

    def test_create_or_get_is_idempotent(self):
        first = self.repo.create_or_get(self.store, "bug")
        second = self.repo.create_or_get(self.store, "bug")

        assert first.id == second.id == 1
        self.store.insert.assert_called_once_with("keyword_defs", {"keyword": "bug"})

    def test_create_or_get_finds_existing_row(self):
        self.store.fetch_one.return_value = {"i": 5, "keyword": "ui"}

        kw = self.repo.create_or_get(self.store, "ui")

        assert kw.id == 5
        self.store.insert.assert_not_called()

    def test_matching_is_case_sensitive(self):
        self.repo.create_or_get(self.store, "bug")
        self.store.insert.return_value = 2

        assert self.repo.create_or_get(self.store, "Bug").id == 2

    def test_invalid_token_creates_nothing(self):
        with pytest.raises(FieldValidationError):
            self.repo.string_to_keywords(self.store, "good, 1bad")
        self.store.insert.assert_not_called()

    def test_string_to_keywords_keeps_input_order(self):
        self.store.insert.side_effect = [3, 4]

        result = self.repo.string_to_keywords(self.store, "zeta alpha zeta")

        assert list(result) == [3, 4]
        assert [kw.keyword for kw in result.values()] == ["zeta", "alpha"]


class TestKeywordsHandler:
    def setup_method(self):
        self.engine = FieldEngine(settings=EngineSettings())
        self.engine.cache.put(Keyword(id=1, keyword="bug"))
        self.engine.cache.put(Keyword(id=2, keyword="ui"))
        self.handler = self.engine.find_handler(FIELD_KEYWORDS)
        self.store = MagicMock()
        self.store.fetch_one.return_value = None
        self.store.insert.side_effect = lambda table, values: {
            "keyword_defs": 3,
            "ticket_keywords": 13,
            "changelog": 500,
        }[table]

    def test_update_diffs_join_rows(self):
        ticket = _ticket(
            field_data={FIELD_KEYWORDS: ["bug", "ui"]},
            field_row_ids={FIELD_KEYWORDS: [11, 12]},
        )
        ctx = TicketContext(
            self.engine,
            self.store,
            TicketMode.edit,
            ticket=ticket,
            chg_uid=9,
            variable_data={"keywords": "bug ux"},
            now=FIXED_TIME,
        )

        assert self.handler.on_create_or_update(ctx, ticket) is True

        self.store.delete.assert_called_once_with("ticket_keywords", {"i": 12})
        assert call(
            "ticket_keywords", {"ticket_id": 7, "field_id": FIELD_KEYWORDS, "value": 3}
        ) in self.store.insert.call_args_list
        assert call(
            "changelog",
            {
                "field_id": FIELD_KEYWORDS,
                "what": 7,
                "chg_uid": 9,
                "chg_dt": FIXED_TIME,
                "value_1": None,
                "value_2": None,
                "value_str": "+3,-2",
            },
        ) in self.store.insert.call_args_list
        assert ticket.field_data[FIELD_KEYWORDS] == ["bug", "ux"]
        assert ticket.field_row_ids[FIELD_KEYWORDS] == [11, 13]

    def test_same_keywords_in_other_order_is_no_change(self):
        ticket = _ticket(field_data={FIELD_KEYWORDS: ["bug", "ui"]})
        ctx = TicketContext(
            self.engine, self.store, TicketMode.edit, ticket=ticket,
            variable_data={"keywords": "ui, bug"},
        )

        assert self.handler.on_create_or_update(ctx, ticket) is False
        self.store.insert.assert_not_called()

    def test_changelog_message(self):
        ctx = TicketContext(self.engine, self.store, TicketMode.readonly_details)
        row = ChangelogRow(id=1, field_id=FIELD_KEYWORDS, chg_dt=FIXED_TIME, value_str="+1,-2")

        assert self.handler.format_changelog_item(ctx, row) == "Keywords: added bug; removed ui"

    def test_loaded_rows_become_keyword_text(self):
        assert self.handler.stored_to_value(self.store, {"i": 11, "value": 1}) == "bug"
