import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    JSON,
    MetaData,
    Numeric,
    SmallInteger,
    Table,
    delete,
    inspect,
    insert,
    select,
)
from sqlalchemy.engine import Connection, Engine, Inspector
from sqlalchemy.schema import SetColumnComment, SetTableComment
from sqlalchemy.sql import sqltypes

from dynacrud.core import models
from dynacrud.core.cache import CacheStrategy
from dynacrud.core.config import settings
from dynacrud.core.errors import SchemaError
from dynacrud.core.schemas import (
    ColumnDescriptor,
    ColumnMeta,
    ForeignKeyDescriptor,
    TableSchema,
)

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# SCHEMA INTROSPECTION
# Purpose: discover columns, keys, enum values and comment metadata of a table.
# Dialect differences (comment storage, enum discovery, type names) live in the
# Dialect classes; everything else goes through sqlalchemy.inspect().
# -----------------------------------------------------------------------------


# Raw type names, per dialect, folded onto one vocabulary
TYPE_ALIASES = {
    "integer": "int",
    "int": "int",
    "int4": "int",
    "mediumint": "int",
    "serial": "int",
    "bigint": "bigint",
    "int8": "bigint",
    "bigserial": "bigint",
    "smallint": "smallint",
    "int2": "smallint",
    "tinyint": "tinyint",
    "string": "varchar",
    "varchar": "varchar",
    "nvarchar": "varchar",
    "character varying": "varchar",
    "char": "char",
    "nchar": "char",
    "character": "char",
    "text": "text",
    "tinytext": "text",
    "mediumtext": "text",
    "longtext": "text",
    "clob": "text",
    "numeric": "decimal",
    "decimal": "decimal",
    "float": "float",
    "real": "float",
    "float4": "float",
    "double": "double",
    "double_precision": "double",
    "double precision": "double",
    "float8": "double",
    "date": "date",
    "datetime": "datetime",
    "timestamp": "timestamp",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamp",
    "timestamptz": "timestamp",
    "time": "time",
    "boolean": "boolean",
    "bool": "boolean",
    "enum": "enum",
    "json": "json",
    "jsonb": "json",
    "blob": "blob",
    "bytea": "blob",
}

# Normalized type -> SQLAlchemy type used when building statements
STATEMENT_TYPES = {
    "int": Integer,
    "bigint": BigInteger,
    "smallint": SmallInteger,
    "tinyint": SmallInteger,
    "decimal": Numeric,
    "float": Float,
    "double": Float,
    "date": Date,
    "datetime": DateTime,
    "timestamp": DateTime,
    "boolean": Boolean,
    "json": JSON,
}

QUOTED_VALUE = re.compile(r"'([^']+)'")


def parse_comment(comment: Optional[str]) -> Dict[str, Any]:
    """
    Decode a JSON comment. Anything that is not a JSON object yields {}.
    """
    if not comment:
        return {}

    try:
        decoded = json.loads(comment)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-JSON comment: {comment[:60]!r}")
        return {}

    return decoded if isinstance(decoded, dict) else {}


def normalize_default(default: Any) -> Optional[str]:
    if default is None:
        return None

    text = str(default)
    # Sequences mean auto-increment
    if "nextval" in text:
        return None

    text = re.sub(r"::[a-z_ ]+", "", text)
    return text.strip("'")


class Dialect:
    name = "generic"

    def normalize_type(self, sa_type: Any) -> str:
        visit_name = getattr(sa_type, "__visit_name__", "") or ""
        normalized = TYPE_ALIASES.get(visit_name.lower())
        if normalized:
            return normalized

        # Fall back on the type hierarchy for dialect-specific classes
        if isinstance(sa_type, sqltypes.Enum):
            return "enum"
        if isinstance(sa_type, sqltypes.Boolean):
            return "boolean"
        if isinstance(sa_type, sqltypes.BigInteger):
            return "bigint"
        if isinstance(sa_type, sqltypes.SmallInteger):
            return "smallint"
        if isinstance(sa_type, sqltypes.Integer):
            return "int"
        if isinstance(sa_type, sqltypes.Float):
            return "float"
        if isinstance(sa_type, sqltypes.Numeric):
            return "decimal"
        if isinstance(sa_type, sqltypes.DateTime):
            return "datetime"
        if isinstance(sa_type, sqltypes.Date):
            return "date"
        if isinstance(sa_type, sqltypes.Time):
            return "time"
        if isinstance(sa_type, sqltypes.Text):
            return "text"
        if isinstance(sa_type, sqltypes.String):
            return "varchar"
        if isinstance(sa_type, sqltypes.JSON):
            return "json"

        return visit_name.lower() or "unknown"

    def column_comments(
        self, conn: Connection, inspector: Inspector, table: str
    ) -> Dict[str, Optional[str]]:
        return {col["name"]: col.get("comment") for col in inspector.get_columns(table)}

    def table_comment(
        self, conn: Connection, inspector: Inspector, table: str
    ) -> Optional[str]:
        return inspector.get_table_comment(table).get("text")

    def enum_values(
        self, inspector: Inspector, table: str, column: Dict[str, Any]
    ) -> List[str]:
        native = getattr(column["type"], "enums", None)
        if native:
            return list(native)
        return self._check_constraint_values(inspector, table, column["name"])

    def _check_constraint_values(
        self, inspector: Inspector, table: str, column_name: str
    ) -> List[str]:
        """
        Enum-like CHECK constraints, e.g.
        CHECK (status IN ('draft', 'published')) or
        CHECK ((status)::text = ANY (ARRAY['draft'::text, 'published'::text]))
        """
        try:
            constraints = inspector.get_check_constraints(table)
        except NotImplementedError:
            return []

        pattern = re.compile(rf"\b{re.escape(column_name)}\b")
        for constraint in constraints:
            sqltext = constraint.get("sqltext") or ""
            if not pattern.search(sqltext):
                continue
            if " IN " in sqltext.upper() or "ANY" in sqltext.upper():
                return QUOTED_VALUE.findall(sqltext)
        return []

    def store_comment(
        self, conn: Connection, table: str, comment: str, column: Optional[str] = None
    ) -> None:
        reflected = Table(table, MetaData(), autoload_with=conn)
        if column is None:
            reflected.comment = comment
            conn.execute(SetTableComment(reflected))
        else:
            reflected.c[column].comment = comment
            conn.execute(SetColumnComment(reflected.c[column]))


class SQLiteDialect(Dialect):
    """SQLite has no comment DDL; comments live in the dynacrud_comments table."""

    name = "sqlite"

    def _comments(self, conn: Connection, inspector: Inspector, table: str) -> Dict[str, str]:
        if not inspector.has_table(models.TableComment.__tablename__):
            return {}

        rows = conn.execute(
            select(models.TableComment.column_name, models.TableComment.comment).where(
                models.TableComment.table_name == table
            )
        )
        return {row.column_name: row.comment for row in rows}

    def column_comments(self, conn, inspector, table):
        comments = self._comments(conn, inspector, table)
        return {col["name"]: comments.get(col["name"]) for col in inspector.get_columns(table)}

    def table_comment(self, conn, inspector, table):
        return self._comments(conn, inspector, table).get("")

    def store_comment(self, conn, table, comment, column=None):
        comment_table = models.TableComment.__table__
        comment_table.create(conn, checkfirst=True)

        conn.execute(
            delete(comment_table).where(
                comment_table.c.table_name == table,
                comment_table.c.column_name == (column or ""),
            )
        )
        conn.execute(
            insert(comment_table).values(
                table_name=table, column_name=column or "", comment=comment
            )
        )


DIALECTS = {
    # Comment DDL and reflection cover these directly
    "mysql": Dialect,
    "mariadb": Dialect,
    "postgresql": Dialect,
    "sqlite": SQLiteDialect,
}


def get_dialect(engine: Engine) -> Dialect:
    dialect_cls = DIALECTS.get(engine.dialect.name)
    if dialect_cls is None:
        raise SchemaError(f"Unsupported database dialect: {engine.dialect.name}")
    return dialect_cls()


class SchemaIntrospector:
    """
    Reads and caches the structure of tables.

    Args:
        engine: Engine of the database holding the tables.
        cache: Optional cache strategy; schemas are stored as plain dicts.
        ttl: Advisory lifetime of a cached schema in seconds.

    Example:
        schema = SchemaIntrospector(engine, MemoryCacheStrategy()).get_schema("posts")
    """

    def __init__(
        self,
        engine: Engine,
        cache: Optional[CacheStrategy] = None,
        ttl: Optional[int] = None,
    ):
        self.engine = engine
        self.dialect = get_dialect(engine)
        self.cache = cache
        self.ttl = ttl if ttl is not None else settings.SCHEMA_CACHE_TTL
        self._tables: Dict[str, Table] = {}

    @staticmethod
    def cache_key(table: str) -> str:
        return f"schema_{table}"

    def get_schema(self, table: str) -> TableSchema:
        if self.cache is not None:
            cached = self.cache.get(self.cache_key(table))
            if cached is not None:
                return TableSchema.model_validate(cached)

        schema = self._introspect(table)

        if self.cache is not None:
            self.cache.set(self.cache_key(table), schema.model_dump(mode="json"), self.ttl)

        return schema

    def invalidate(self, table: str) -> bool:
        self._tables.pop(table, None)
        if self.cache is None:
            return False
        return self.cache.invalidate(self.cache_key(table))

    def get_table(self, table: str) -> Table:
        """SQLAlchemy Core table built from the schema, for statement building."""
        if table not in self._tables:
            schema = self.get_schema(table)
            columns = [
                Column(
                    col.name,
                    STATEMENT_TYPES[col.sql_type]()
                    if col.sql_type in STATEMENT_TYPES
                    else sqltypes.NullType(),
                    primary_key=col.is_primary,
                )
                for col in schema.columns
            ]
            self._tables[table] = Table(table, MetaData(), *columns)
        return self._tables[table]

    def store_comment(self, table: str, comment: str, column: Optional[str] = None) -> None:
        """Write a table or column comment, then drop the cached schema."""
        with self.engine.begin() as conn:
            self.dialect.store_comment(conn, table, comment, column)
        self.invalidate(table)

    def _introspect(self, table: str) -> TableSchema:
        with self.engine.connect() as conn:
            inspector = inspect(conn)

            if not inspector.has_table(table):
                raise SchemaError(f"Table '{table}' does not exist")

            pk_columns = inspector.get_pk_constraint(table).get("constrained_columns") or []
            primary_key = pk_columns[0] if pk_columns else None
            comments = self.dialect.column_comments(conn, inspector, table)

            columns = []
            for raw in inspector.get_columns(table):
                columns.append(self._describe(inspector, table, raw, primary_key, comments))

            foreign_keys = {}
            for fk in inspector.get_foreign_keys(table):
                for local, remote in zip(fk["constrained_columns"], fk["referred_columns"]):
                    foreign_keys[local] = ForeignKeyDescriptor(
                        table=fk["referred_table"], column=remote
                    )

            return TableSchema(
                table=table,
                primary_key=primary_key,
                columns=columns,
                foreign_keys=foreign_keys,
                comment=self.dialect.table_comment(conn, inspector, table),
            )

    def _describe(
        self,
        inspector: Inspector,
        table: str,
        raw: Dict[str, Any],
        primary_key: Optional[str],
        comments: Dict[str, Optional[str]],
    ) -> ColumnDescriptor:
        name = raw["name"]
        sa_type = raw["type"]

        try:
            metadata = ColumnMeta.model_validate(parse_comment(comments.get(name)))
        except ValidationError as error:
            raise SchemaError(f"Invalid metadata on column {table}.{name}: {error}")

        max_length = None
        if isinstance(sa_type, sqltypes.String) and not isinstance(sa_type, sqltypes.Enum):
            max_length = sa_type.length

        return ColumnDescriptor(
            name=name,
            sql_type=self.dialect.normalize_type(sa_type),
            is_nullable=bool(raw.get("nullable", True)),
            is_primary=name == primary_key,
            max_length=max_length,
            default_value=normalize_default(raw.get("default")),
            enum_values=self.dialect.enum_values(inspector, table, raw),
            metadata=metadata,
        )
