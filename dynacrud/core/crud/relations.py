import logging
from dataclasses import dataclass
from typing import Any, Iterable, List

from sqlalchemy import column, delete, insert, select, table
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def normalize_selection(value: Any) -> List[Any]:
    """Accept a list, a single id or a comma separated string of ids."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, Iterable):
        return [item for item in value if item is not None and item != ""]
    return [value]


@dataclass(frozen=True)
class ManyToManyRelation:
    """
    A many-to-many link through a pivot table.

    Example:
        ManyToManyRelation("tags", "post_tags", "post_id", "tag_id", "tags")
    """

    field_name: str
    pivot_table: str
    local_key: str
    foreign_key: str
    related_table: str
    display_column: str = "name"

    @property
    def pivot(self):
        return table(self.pivot_table, column(self.local_key), column(self.foreign_key))

    def related_ids(self, db: Session, owner_id: Any) -> List[Any]:
        pivot = self.pivot
        query = select(pivot.c[self.foreign_key]).where(pivot.c[self.local_key] == owner_id)
        return [row[0] for row in db.execute(query)]

    def sync(self, db: Session, owner_id: Any, selected: Any) -> None:
        """Replace every link of owner_id with the selected foreign ids."""
        pivot = self.pivot
        ids = list(dict.fromkeys(normalize_selection(selected)))

        db.execute(delete(pivot).where(pivot.c[self.local_key] == owner_id))

        if ids:
            db.execute(
                insert(pivot),
                [{self.local_key: owner_id, self.foreign_key: fid} for fid in ids],
            )

        logger.debug(f"Synced {self.pivot_table} for {owner_id}: {len(ids)} link(s)")
