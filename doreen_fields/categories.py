"""Category hierarchy: a parent-linked tree over the categories table.

All categories are read on first access and kept in the engine's entity
cache. Categories are never deleted in normal operation because tickets
reference them by ID.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from doreen_fields.cache import CachedRepository
from doreen_fields.errors import ConfigurationError
from doreen_fields.models import Category
from doreen_fields.util import is_int_string, split_list

logger = logging.getLogger(__name__)

NBSP = "\u00a0"
INDENT_PER_LEVEL = 4

CATEGORY_COLUMNS = ("i", "field_id", "name", "parent", "extra")


def _row_to_category(row: Dict[str, Any]) -> Category:
    extra = row.get("extra")
    if isinstance(extra, str):
        extra = json.loads(extra) if extra else {}
    return Category(
        id=row["i"],
        field_id=row["field_id"],
        name=row["name"],
        parent=row.get("parent"),
        extra=extra or {},
    )


def build_display_order(categories: Iterable[Category]) -> Dict[int, str]:
    """Order categories for an editor drop-down.

    Siblings are sorted alphabetically, children follow their parent
    depth-first, and each label is indented by four non-breaking spaces
    per level. A category whose parent is not in the input is treated as
    a root.

    Returns:
        Dict of category ID -> indented label, in display order.
    """
    cats = list(categories)
    ids = {c.id for c in cats}
    children: Dict[Optional[int], List[Category]] = {}
    for cat in sorted(cats, key=lambda c: (c.name.lower(), c.name, c.id)):
        parent = cat.parent if cat.parent in ids else None
        children.setdefault(parent, []).append(cat)

    ordered: Dict[int, str] = {}

    def insert_category_and_children(parent_id: Optional[int], level: int) -> None:
        for cat in children.get(parent_id, []):
            ordered[cat.id] = NBSP * (INDENT_PER_LEVEL * level) + cat.name
            insert_category_and_children(cat.id, level + 1)

    insert_category_and_children(None, 0)
    return ordered


class CategoryRepository(CachedRepository[Category]):
    entity_type = Category

    def _load_rows(self, store) -> None:
        rows = store.select("categories", CATEGORY_COLUMNS, order_by="i")
        for row in rows:
            self.cache.put(_row_to_category(row))
        logger.debug("Loaded %d categories", len(rows))

    # ------------------------------------------------------------------- #
    # Lookup                                                              #
    # ------------------------------------------------------------------- #

    def find_by_id(
        self, store, category_id: Any, required: bool = False
    ) -> Optional[Category]:
        categories = self.ensure_loaded(store)
        cat = None
        if is_int_string(category_id):
            cat = categories.get(int(category_id))
        if cat is None and required:
            raise ConfigurationError(f"Invalid category ID {category_id!r}")
        return cat

    def get_all_for_field(self, store, field_id: int) -> List[Category]:
        return [
            c for c in self.ensure_loaded(store).values() if c.field_id == field_id
        ]

    def find_by_name(self, store, field_id: int, name: str) -> Optional[Category]:
        for cat in self.get_all_for_field(store, field_id):
            if cat.name == name:
                return cat
        return None

    # ------------------------------------------------------------------- #
    # Mutation (admin tooling and import)                                 #
    # ------------------------------------------------------------------- #

    def create(
        self,
        store,
        field_id: int,
        name: str,
        parent: Optional[Category] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Category:
        """Insert a new category and add it to the cache."""
        self.ensure_loaded(store)
        new_id = store.insert(
            "categories",
            {
                "field_id": field_id,
                "name": name,
                "parent": parent.id if parent else None,
                "extra": json.dumps(extra) if extra else None,
            },
        )
        cat = Category(
            id=new_id,
            field_id=field_id,
            name=name,
            parent=parent.id if parent else None,
            extra=extra or {},
        )
        logger.info("Created category %d '%s' for field %d", new_id, name, field_id)
        store.on_rollback(lambda: self.cache.discard(Category, new_id))
        return self.cache.put(cat)

    def set_extra(self, store, category: Category, key: str, value: Any) -> Category:
        extra = dict(category.extra)
        if value is None:
            extra.pop(key, None)
        else:
            extra[key] = value
        store.update(
            "categories",
            {"extra": json.dumps(extra) if extra else None},
            {"i": category.id},
        )
        return self.cache.put(category.model_copy(update={"extra": extra}))

    # ------------------------------------------------------------------- #
    # Tree operations                                                     #
    # ------------------------------------------------------------------- #

    def get_parent(self, store, category: Category) -> Optional[Category]:
        if category.parent is None:
            return None
        return self.find_by_id(store, category.parent, required=True)

    def get_parents(self, store, category: Category) -> List[Category]:
        """Return the ancestor chain root-first, ending with the category itself."""
        limit = len(self.ensure_loaded(store))
        chain = [category]
        current = category
        while current.parent is not None:
            if len(chain) > limit:
                raise ConfigurationError(
                    f"Category {category.id} has a cyclic parent chain"
                )
            current = self.find_by_id(store, current.parent, required=True)
            chain.append(current)
        chain.reverse()
        return chain

    def get_root(self, store, category: Category) -> Category:
        return self.get_parents(store, category)[0]

    def is_child_of(self, store, category: Category, ancestor_id: int) -> bool:
        return any(c.id == ancestor_id for c in self.get_parents(store, category)[:-1])

    def collapse_to_leaf(self, store, value: Any) -> Category:
        """Reduce an ancestor closure to its single leaf category.

        Args:
            value: List or comma string of category IDs.

        Raises:
            ConfigurationError: If an ID is unknown or the set does not have
                exactly one element that is nobody's parent.
        """
        members = {}
        for item in split_list(value):
            cat = self.find_by_id(store, item, required=True)
            members[cat.id] = cat
        parent_ids = {c.parent for c in members.values() if c.parent is not None}
        leaves = [c for cid, c in members.items() if cid not in parent_ids]
        if len(leaves) != 1:
            raise ConfigurationError(
                f"Cannot collapse categories {sorted(members)} to a single leaf: "
                f"{len(leaves)} candidates"
            )
        return leaves[0]
