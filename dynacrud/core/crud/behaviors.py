import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Table, select
from sqlalchemy.orm import Session

from dynacrud.core.crud.metadata import MetadataStore
from dynacrud.core.schemas import SluggableConfig, TableSchema


# -----------------------------------------------------------------------------
# AUTOMATIC BEHAVIORS
# Purpose: fill timestamp and slug columns from the table metadata before saving.
# -----------------------------------------------------------------------------


# Used when the source text has no characters a slug can keep
FALLBACK_SLUG = "item"


def slugify(text: str, separator: str = "-", lowercase: bool = True) -> str:
    """Convert text to a URL-safe slug. "Hello World!" -> "hello-world"."""
    text = unicodedata.normalize("NFKD", str(text)).encode("ascii", "ignore").decode("ascii")
    text = text.strip()
    if lowercase:
        text = text.lower()
    text = re.sub(r"[^A-Za-z0-9]+", separator, text)
    if separator:
        text = re.sub(f"{re.escape(separator)}+", separator, text).strip(separator)
    return text


def unique_slug(
    db: Session,
    table: Table,
    column: str,
    base: str,
    separator: str = "-",
    exclude_id: Optional[Any] = None,
    pk: Optional[str] = None,
) -> str:
    """
    Append -1, -2, ... to base until no other row holds the value.
    The row being updated (exclude_id) does not count as a clash.
    """
    candidate = base
    counter = 1

    while _slug_taken(db, table, column, candidate, exclude_id, pk):
        candidate = f"{base}{separator}{counter}"
        counter += 1

    return candidate


def _slug_taken(db, table, column, value, exclude_id, pk) -> bool:
    query = select(table.c[column]).where(table.c[column] == value)
    if exclude_id is not None and pk:
        query = query.where(table.c[pk] != exclude_id)
    return db.execute(query.limit(1)).first() is not None


class BehaviorApplier:
    def __init__(self, db: Session, table: Table, schema: TableSchema, metadata: MetadataStore):
        self.db = db
        self.table = table
        self.schema = schema
        self.metadata = metadata

    def managed_columns(self) -> set:
        """Columns the behaviors fill in, so they are not required on input."""
        managed = set()
        if self.metadata.has_timestamps():
            fields = self.metadata.timestamp_fields()
            managed.update(f for f in (fields.created_at, fields.updated_at) if f)
        sluggable = self.metadata.sluggable()
        if sluggable is not None:
            managed.add(sluggable.target)
        if self.metadata.has_soft_deletes():
            managed.add(self.metadata.soft_delete_column())
        return managed

    def apply(self, data: Dict[str, Any], record_id: Optional[Any] = None) -> Dict[str, Any]:
        data = self.apply_timestamps(data, creating=record_id is None)
        return self.apply_slug(data, record_id)

    def apply_timestamps(self, data: Dict[str, Any], creating: bool) -> Dict[str, Any]:
        if not self.metadata.has_timestamps():
            return data

        fields = self.metadata.timestamp_fields()
        now = datetime.now()
        data = dict(data)

        if creating and fields.created_at and fields.created_at in self.table.c:
            data[fields.created_at] = now
        if fields.updated_at and fields.updated_at in self.table.c:
            data[fields.updated_at] = now

        return data

    def apply_slug(self, data: Dict[str, Any], record_id: Optional[Any] = None) -> Dict[str, Any]:
        config: Optional[SluggableConfig] = self.metadata.sluggable()
        if config is None or config.target not in self.table.c:
            return data

        current = data.get(config.target)
        if current:
            base = slugify(current, config.separator, config.lowercase)
        elif data.get(config.source):
            base = slugify(data[config.source], config.separator, config.lowercase)
        else:
            return data

        base = base or FALLBACK_SLUG
        if config.unique:
            base = unique_slug(
                self.db,
                self.table,
                config.target,
                base,
                config.separator,
                exclude_id=record_id,
                pk=self.schema.primary_key,
            )

        return {**data, config.target: base}
