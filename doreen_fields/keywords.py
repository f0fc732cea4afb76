"""Global keyword pool (keyword_defs) with lazy creation."""

import logging
import re
from typing import Any, Dict, List, Optional

from doreen_fields.cache import CachedRepository
from doreen_fields.errors import FieldValidationError
from doreen_fields.models import Keyword

logger = logging.getLogger(__name__)

# Letter or underscore first, then word characters. "Bug123" is fine, "1st" and "a b" are not.
KEYWORD_RE = re.compile(r"^[^\d\W]\w*$")
KEYWORD_SPLIT_RE = re.compile(r"[\s,]+")


def split_keywords(value: Any) -> List[str]:
    """Split user input on whitespace and commas, dropping empty tokens."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        value = ",".join(str(v) for v in value)
    return [t for t in KEYWORD_SPLIT_RE.split(str(value)) if t]


class KeywordRepository(CachedRepository[Keyword]):
    entity_type = Keyword

    def _load_rows(self, store) -> None:
        for row in store.select("keyword_defs", ("i", "keyword"), order_by="i"):
            self.cache.put(Keyword(id=row["i"], keyword=row["keyword"]))

    @staticmethod
    def validate(keyword: str, field_name: str = "keywords") -> str:
        """Raise FieldValidationError unless the keyword is a valid identifier."""
        if not KEYWORD_RE.match(keyword or ""):
            raise FieldValidationError(
                field_name,
                f"Invalid keyword '{keyword}': keywords must start with a letter "
                "and contain only letters, digits and underscores",
            )
        return keyword

    def _find_cached(self, keyword: str) -> Optional[Keyword]:
        for kw in self.cache.items(Keyword).values():
            if kw.keyword == keyword:
                return kw
        return None

    def get(self, store, keyword_id: int) -> Optional[Keyword]:
        kw = self.cache.get(Keyword, keyword_id)
        if kw is None and not self.cache.is_loaded(Keyword):
            row = store.fetch_one(
                store.select_query("keyword_defs", ("i", "keyword"), ("i",)),
                (keyword_id,),
            )
            if row:
                kw = self.cache.put(Keyword(id=row["i"], keyword=row["keyword"]))
        return kw

    def get_all(self, store) -> Dict[int, Keyword]:
        return self.ensure_loaded(store)

    def create_or_get(self, store, keyword: str) -> Keyword:
        """Return the keyword with this exact text, creating it if needed.

        Matching is case-sensitive. Repeated calls with the same text return
        the same keyword ID.
        """
        self.validate(keyword)
        kw = self._find_cached(keyword)
        if kw is not None:
            return kw
        if not self.cache.is_loaded(Keyword):
            row = store.fetch_one(
                store.select_query("keyword_defs", ("i", "keyword"), ("keyword",)),
                (keyword,),
            )
            if row:
                return self.cache.put(Keyword(id=row["i"], keyword=row["keyword"]))
        new_id = store.insert("keyword_defs", {"keyword": keyword})
        logger.info("Created keyword %d '%s'", new_id, keyword)
        store.on_rollback(lambda: self.cache.discard(Keyword, new_id))
        return self.cache.put(Keyword(id=new_id, keyword=keyword))

    def string_to_keywords(
        self, store, value: Any, field_name: str = "keywords"
    ) -> Dict[int, Keyword]:
        """Resolve user input to keywords, keyed by ID in input order.

        Every token is validated before any keyword is created.
        """
        tokens = split_keywords(value)
        for token in tokens:
            self.validate(token, field_name)
        result: Dict[int, Keyword] = {}
        for token in tokens:
            kw = self.create_or_get(store, token)
            result[kw.id] = kw
        return result
