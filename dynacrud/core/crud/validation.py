import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from email_validator import EmailNotValidError, validate_email
from pydantic import AnyUrl, TypeAdapter, ValidationError
from sqlalchemy import Table, and_, func, select
from sqlalchemy.orm import Session

from dynacrud.core.crud.expression import evaluate_condition
from dynacrud.core.crud.metadata import MetadataStore
from dynacrud.core.schemas import ColumnDescriptor, TableSchema

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# VALIDATION PIPELINE
# Purpose: structural checks derived from the schema and column metadata,
# virtual fields, and table-level rules (unique_together, required_if,
# conditional, business rules).
# All stages report into one {field: [messages]} map.
# -----------------------------------------------------------------------------

ErrorMap = Dict[str, List[str]]

GLOBAL_ERROR_KEY = "_global"

INTEGER_TYPES = {"int", "bigint", "smallint", "tinyint", "mediumint"}
DECIMAL_TYPES = {"decimal", "float", "double"}
DATE_TYPES = {"date", "datetime", "timestamp"}
TRUE_STRINGS = {"1", "true", "on", "yes"}

url_adapter = TypeAdapter(AnyUrl)


def add_error(errors: ErrorMap, field_name: str, message: str) -> None:
    errors.setdefault(field_name, []).append(message)


def merge_errors(target: ErrorMap, other: ErrorMap) -> ErrorMap:
    for field_name, messages in other.items():
        target.setdefault(field_name, []).extend(messages)
    return target


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("booleans are not integers")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return int(str(value).strip())


def parse_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")
    if not number.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return number


def parse_temporal(value: Any, sql_type: str):
    if isinstance(value, datetime):
        return value if sql_type != "date" else value.date()
    if isinstance(value, date):
        return value if sql_type == "date" else datetime.combine(value, datetime.min.time())

    text = str(value).strip()
    if sql_type == "date":
        # A full timestamp is accepted for a date column; trailing junk is not
        if len(text) > 10:
            return datetime.fromisoformat(text).date()
        return date.fromisoformat(text)
    return datetime.fromisoformat(text)


def coerce_value(column: ColumnDescriptor, value: Any) -> Any:
    """
    Turn a raw submitted value into the Python type the driver expects.
    Call only after validation passed.
    """
    if is_empty(value):
        return None if column.is_nullable else value

    sql_type = column.sql_type
    if sql_type in INTEGER_TYPES:
        return parse_int(value)
    if sql_type in DECIMAL_TYPES:
        return parse_decimal(value)
    if sql_type in DATE_TYPES:
        return parse_temporal(value, sql_type)
    if sql_type == "boolean":
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in TRUE_STRINGS
    return value


def loose_equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if isinstance(left, bool) or isinstance(right, bool):
        return bool(left) == bool(right)
    try:
        return parse_decimal(left) == parse_decimal(right)
    except ValueError:
        return str(left) == str(right)


def label_of(column: ColumnDescriptor) -> str:
    return column.metadata.label or column.name


# =========================
# STRUCTURAL
# =========================
class StructuralValidator:
    def __init__(self, schema: TableSchema):
        self.schema = schema

    def validate(
        self, data: Mapping[str, Any], partial: bool = False, managed: Iterable[str] = ()
    ) -> ErrorMap:
        """
        Check every writable column. Hidden columns are only checked when submitted.

        Args:
            data: Submitted column -> value mapping.
            partial: When True (updates), columns absent from data are skipped.
            managed: Columns filled in later by automatic behaviors; never required.

        Returns:
            Errors keyed by column name; empty when the payload is valid.
        """
        errors: ErrorMap = {}

        for column in self.schema.writable_columns():
            if column.metadata.hidden:
                # Never required, but a submitted value must still fit the column
                if not is_empty(data.get(column.name)):
                    self._validate_type(column, data[column.name], errors)
                    self._validate_length(column, data[column.name], errors)
                continue
            if partial and column.name not in data:
                continue
            if column.name in managed and is_empty(data.get(column.name)):
                continue
            self._validate_field(column, data.get(column.name), errors)

        return errors

    def _validate_field(self, column: ColumnDescriptor, value: Any, errors: ErrorMap) -> None:
        name = column.name
        label = label_of(column)

        if is_empty(value):
            if not column.is_nullable and column.default_value is None:
                add_error(errors, name, f"The field {label} is required")
            return

        self._validate_type(column, value, errors)
        self._validate_length(column, value, errors)
        self._validate_metadata(column, value, errors)

    def _validate_type(self, column: ColumnDescriptor, value: Any, errors: ErrorMap) -> None:
        label = label_of(column)
        sql_type = column.sql_type

        try:
            if sql_type in INTEGER_TYPES:
                parse_int(value)
            elif sql_type in DECIMAL_TYPES:
                parse_decimal(value)
            elif sql_type in DATE_TYPES:
                parse_temporal(value, sql_type)
        except ValueError:
            if sql_type in INTEGER_TYPES:
                message = f"The field {label} must be an integer"
            elif sql_type in DECIMAL_TYPES:
                message = f"The field {label} must be a number"
            else:
                message = f"The field {label} must be a valid date"
            add_error(errors, column.name, message)

        if column.enum_values and str(value) not in column.enum_values:
            add_error(
                errors,
                column.name,
                f"The field {label} must be one of: {', '.join(column.enum_values)}",
            )

    def _validate_length(self, column: ColumnDescriptor, value: Any, errors: ErrorMap) -> None:
        if not column.max_length or not isinstance(value, str):
            return

        if len(value) > column.max_length:
            add_error(
                errors,
                column.name,
                f"The field {label_of(column)} cannot exceed {column.max_length} characters",
            )

    def _validate_metadata(self, column: ColumnDescriptor, value: Any, errors: ErrorMap) -> None:
        meta = column.metadata
        name = column.name
        label = label_of(column)

        if meta.type == "email":
            try:
                validate_email(str(value), check_deliverability=False)
            except EmailNotValidError:
                add_error(errors, name, f"The field {label} must be a valid email")

        if meta.type == "url":
            try:
                url = url_adapter.validate_python(str(value))
                if not url.host:
                    raise ValueError("missing host")
            except (ValidationError, ValueError):
                add_error(errors, name, f"The field {label} must be a valid URL")

        if meta.min is not None or meta.max is not None:
            try:
                number = parse_decimal(value)
            except ValueError:
                number = None
            if number is not None and meta.min is not None and number < Decimal(str(meta.min)):
                add_error(errors, name, f"The field {label} must be at least {meta.min:g}")
            if number is not None and meta.max is not None and number > Decimal(str(meta.max)):
                add_error(errors, name, f"The field {label} cannot be greater than {meta.max:g}")

        if isinstance(value, str):
            if meta.minlength is not None and len(value) < meta.minlength:
                add_error(
                    errors, name, f"The field {label} must have at least {meta.minlength} characters"
                )
            if meta.maxlength is not None and len(value) > meta.maxlength:
                add_error(
                    errors, name, f"The field {label} cannot exceed {meta.maxlength} characters"
                )


# =========================
# VIRTUAL FIELDS
# =========================
@dataclass
class VirtualField:
    """
    A submitted field with no backing column (password confirmation, terms
    acceptance, ...). Validated, then stripped before persistence.
    """

    name: str
    type: str = "text"
    label: str = ""
    required: bool = False
    validator: Optional[Callable[[Any, Mapping[str, Any]], bool]] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.label:
            self.label = self.name.replace("_", " ").capitalize()

    def validate(self, value: Any, data: Mapping[str, Any]) -> bool:
        if self.required and not value:
            return False
        if self.validator is not None and value:
            return bool(self.validator(value, data))
        return True

    @property
    def error_message(self) -> str:
        return self.attributes.get("error_message", f"The field {self.label} is not valid")


def validate_virtual_fields(fields: List[VirtualField], data: Mapping[str, Any]) -> ErrorMap:
    errors: ErrorMap = {}
    for virtual in fields:
        if not virtual.validate(data.get(virtual.name), data):
            add_error(errors, virtual.name, virtual.error_message)
    return errors


# =========================
# RULES
# =========================
class RulesValidator:
    """Table-level rules that may need to query existing rows."""

    def __init__(self, db: Session, table: Table, schema: TableSchema, metadata: MetadataStore):
        self.db = db
        self.table = table
        self.schema = schema
        self.metadata = metadata

    def validate(self, data: Mapping[str, Any], record_id: Optional[int] = None) -> ErrorMap:
        rules = self.metadata.validation_rules()
        errors: ErrorMap = {}

        merge_errors(errors, self.unique_together(data, record_id, rules.unique_together))
        merge_errors(errors, self.required_if(data, rules.required_if))
        merge_errors(errors, self.conditional(data, rules.conditional))

        return errors

    def unique_together(
        self, data: Mapping[str, Any], record_id: Optional[int], groups: List[List[str]]
    ) -> ErrorMap:
        errors: ErrorMap = {}

        for fields in groups:
            # Skip the combination when any part is missing or unknown
            if not fields or any(data.get(f) is None for f in fields):
                continue
            if any(f not in self.table.c for f in fields):
                logger.warning(f"unique_together on {self.table.name} names unknown columns {fields}")
                continue

            conditions = [self.table.c[f] == data[f] for f in fields]
            pk = self.schema.primary_key
            if record_id is not None and pk:
                conditions.append(self.table.c[pk] != record_id)

            query = select(func.count()).select_from(self.table).where(and_(*conditions))
            if self.db.execute(query).scalar():
                add_error(errors, fields[0], f"The combination of {', '.join(fields)} already exists")

        return errors

    def required_if(
        self, data: Mapping[str, Any], rules: Dict[str, Dict[str, Any]]
    ) -> ErrorMap:
        errors: ErrorMap = {}

        for field_name, conditions in rules.items():
            # Every condition must hold (AND)
            applies = all(
                cond_field in data and loose_equals(data[cond_field], expected)
                for cond_field, expected in conditions.items()
            )
            if applies and is_empty(data.get(field_name)):
                add_error(errors, field_name, f"The field {field_name} is required")

        return errors

    def conditional(self, data: Mapping[str, Any], rules: Dict[str, Any]) -> ErrorMap:
        errors: ErrorMap = {}

        for field_name, rule in rules.items():
            if is_empty(data.get(field_name)):
                continue
            try:
                value = parse_decimal(data[field_name])
            except ValueError:
                continue

            if not evaluate_condition(rule.condition, data):
                continue

            if rule.min is not None and value < Decimal(str(rule.min)):
                add_error(errors, field_name, f"The field {field_name} must be at least {rule.min:g}")
            if rule.max is not None and value > Decimal(str(rule.max)):
                add_error(
                    errors, field_name, f"The field {field_name} cannot be greater than {rule.max:g}"
                )

        return errors

    def business_rules(
        self, data: Dict[str, Any], actor_id: Optional[int], creating: bool
    ) -> Tuple[ErrorMap, Dict[str, Any]]:
        """
        Apply max_records_per_user and require_approval.

        Returns:
            (errors, data) where data may carry a defaulted approval field.
        """
        errors: ErrorMap = {}
        rules = self.metadata.business_rules()
        if rules is None:
            return errors, data

        if creating and rules.max_records_per_user is not None and actor_id is not None:
            if rules.owner_field in self.table.c:
                query = (
                    select(func.count())
                    .select_from(self.table)
                    .where(self.table.c[rules.owner_field] == actor_id)
                )
                if self.db.execute(query).scalar() >= rules.max_records_per_user:
                    add_error(
                        errors,
                        GLOBAL_ERROR_KEY,
                        f"You have reached the limit of {rules.max_records_per_user} records",
                    )

        if creating and rules.require_approval and rules.approval_field in self.table.c:
            if is_empty(data.get(rules.approval_field)):
                # Pending until someone approves it
                data = {**data, rules.approval_field: None}

        return errors, data


class ValidationPipeline:
    """
    Runs the structural pass (plus virtual fields) and the rule pass.

    The orchestrator calls the two passes separately so that the
    afterValidate hook sits between them.
    """

    def __init__(
        self,
        db: Session,
        table: Table,
        schema: TableSchema,
        metadata: MetadataStore,
        virtual_fields: Optional[List[VirtualField]] = None,
    ):
        self.structural = StructuralValidator(schema)
        self.rules = RulesValidator(db, table, schema, metadata)
        self.virtual_fields = virtual_fields or []

    def validate_structure(
        self, data: Mapping[str, Any], partial: bool = False, managed: Iterable[str] = ()
    ) -> ErrorMap:
        errors = self.structural.validate(data, partial=partial, managed=managed)
        return merge_errors(errors, validate_virtual_fields(self.virtual_fields, data))

    def validate_rules(
        self,
        data: Dict[str, Any],
        record_id: Optional[int] = None,
        actor_id: Optional[int] = None,
    ) -> Tuple[ErrorMap, Dict[str, Any]]:
        errors = self.rules.validate(data, record_id)
        business_errors, data = self.rules.business_rules(
            data, actor_id, creating=record_id is None
        )
        return merge_errors(errors, business_errors), data

    def validate(
        self,
        data: Dict[str, Any],
        record_id: Optional[int] = None,
        actor_id: Optional[int] = None,
    ) -> Tuple[ErrorMap, Dict[str, Any]]:
        errors = self.validate_structure(data, partial=record_id is not None)
        rule_errors, data = self.validate_rules(data, record_id, actor_id)
        return merge_errors(errors, rule_errors), data
