from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from dynacrud.core.crud.introspect import parse_comment
from dynacrud.core.errors import SchemaError
from dynacrud.core.schemas import (
    BusinessRulesConfig,
    ListViewConfig,
    NotificationsConfig,
    RowLevelSecurity,
    SluggableConfig,
    TableConfig,
    TableSchema,
    TimestampsConfig,
    ValidationRulesConfig,
    WebhookConfig,
    WorkflowDefinition,
)


# -----------------------------------------------------------------------------
# METADATA STORE
# Purpose: typed, total accessors over the JSON stored in a table comment.
# Missing blocks yield permissive defaults.
# -----------------------------------------------------------------------------


def parse_table_config(raw: Dict[str, Any], table: str = "?") -> TableConfig:
    try:
        return TableConfig.model_validate(raw)
    except ValidationError as error:
        raise SchemaError(f"Invalid table metadata for '{table}': {error}")


class MetadataStore:
    def __init__(self, table: str, config: Optional[TableConfig] = None):
        self.table = table
        self.config = config or TableConfig()

    @classmethod
    def from_comment(cls, table: str, comment: Optional[str]) -> "MetadataStore":
        return cls(table, parse_table_config(parse_comment(comment), table))

    @classmethod
    def from_schema(cls, schema: TableSchema) -> "MetadataStore":
        return cls.from_comment(schema.table, schema.comment)

    @classmethod
    def from_dict(cls, table: str, raw: Dict[str, Any]) -> "MetadataStore":
        return cls(table, parse_table_config(raw, table))

    def display_name(self) -> str:
        return self.config.display_name or self.table.replace("_", " ").capitalize()

    # Permissions & security
    def permissions(self) -> Dict[str, List[str]]:
        return self.config.permissions

    def has_permissions(self) -> bool:
        return bool(self.config.permissions)

    def row_level_security(self) -> Optional[RowLevelSecurity]:
        return self.config.row_level_security

    def has_row_level_security(self) -> bool:
        rls = self.config.row_level_security
        return rls is not None and rls.enabled

    # Behaviors
    def has_soft_deletes(self) -> bool:
        soft_deletes = self.config.behaviors.soft_deletes
        return soft_deletes is not None and soft_deletes.enabled

    def soft_delete_column(self) -> str:
        soft_deletes = self.config.behaviors.soft_deletes
        return soft_deletes.column if soft_deletes else "deleted_at"

    def has_timestamps(self) -> bool:
        return self.config.behaviors.timestamps is not None

    def timestamp_fields(self) -> TimestampsConfig:
        return self.config.behaviors.timestamps or TimestampsConfig(
            created_at=None, updated_at=None
        )

    def is_sluggable(self) -> bool:
        return self.config.behaviors.sluggable is not None

    def sluggable(self) -> Optional[SluggableConfig]:
        return self.config.behaviors.sluggable

    # Presentation
    def list_view(self) -> ListViewConfig:
        return self.config.list_view

    # Rules
    def validation_rules(self) -> ValidationRulesConfig:
        return self.config.validation_rules

    def business_rules(self) -> Optional[BusinessRulesConfig]:
        return self.config.business_rules

    # Notifications
    def notifications(self) -> NotificationsConfig:
        return self.config.notifications

    def webhooks(self) -> List[WebhookConfig]:
        return self.config.webhooks

    def workflow(self) -> Optional[WorkflowDefinition]:
        return self.config.workflow
