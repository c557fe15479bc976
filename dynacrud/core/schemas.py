from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, ConfigDict, Field


# =========================
# COLUMN / TABLE STRUCTURE
# =========================
class ColumnMeta(BaseModel):
    """
    Column-level configuration parsed from a column comment.
    Presentation keys (placeholder, tooltip, ...) are kept as extras.
    """

    type: Optional[str] = None
    label: Optional[str] = None
    hidden: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    minlength: Optional[int] = None
    maxlength: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class ColumnDescriptor(BaseModel):
    name: str
    sql_type: str
    is_nullable: bool = True
    is_primary: bool = False
    max_length: Optional[int] = None
    default_value: Optional[str] = None
    enum_values: List[str] = []
    metadata: ColumnMeta = ColumnMeta()


class ForeignKeyDescriptor(BaseModel):
    table: str
    column: str


class TableSchema(BaseModel):
    table: str
    primary_key: Optional[str] = None
    columns: List[ColumnDescriptor] = []
    foreign_keys: Dict[str, ForeignKeyDescriptor] = {}
    comment: Optional[str] = None

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    def writable_columns(self) -> List[ColumnDescriptor]:
        # The primary key is never writable
        return [col for col in self.columns if not col.is_primary]


# =========================
# TABLE CONFIGURATION
# =========================
class RowLevelSecurity(BaseModel):
    enabled: bool = False
    owner_field: str = "user_id"
    owner_can_edit: bool = True
    owner_can_delete: bool = False


class SoftDeletesConfig(BaseModel):
    enabled: bool = False
    column: str = "deleted_at"


class TimestampsConfig(BaseModel):
    created_at: Optional[str] = "created_at"
    updated_at: Optional[str] = "updated_at"


class SluggableConfig(BaseModel):
    source: str = "title"
    target: str = "slug"
    separator: str = "-"
    lowercase: bool = True
    unique: bool = True


class BehaviorsConfig(BaseModel):
    soft_deletes: Optional[SoftDeletesConfig] = None
    timestamps: Optional[TimestampsConfig] = None
    sluggable: Optional[SluggableConfig] = None

    model_config = ConfigDict(extra="allow")


class ListViewConfig(BaseModel):
    columns: List[str] = []
    default_sort: str = "id DESC"
    per_page: int = 20
    searchable: List[str] = []
    actions: List[str] = ["edit", "delete"]
    card_view: bool = False


class ConditionalRule(BaseModel):
    condition: str
    min: Optional[float] = None
    max: Optional[float] = None


class ValidationRulesConfig(BaseModel):
    unique_together: List[List[str]] = []
    required_if: Dict[str, Dict[str, Any]] = {}
    conditional: Dict[str, ConditionalRule] = {}


class BusinessRulesConfig(BaseModel):
    max_records_per_user: Optional[int] = None
    owner_field: str = "user_id"
    require_approval: bool = False
    approval_field: str = "approved_at"


class NotificationTarget(BaseModel):
    email: List[str] = []
    subject: str = "Notification"
    template: Optional[str] = None


class NotificationsConfig(BaseModel):
    on_create: Optional[NotificationTarget] = None
    on_update: Optional[NotificationTarget] = None


class WebhookConfig(BaseModel):
    url: str
    event: Optional[str] = None
    method: str = "POST"
    headers: Dict[str, str] = {}


# =========================
# WORKFLOW
# =========================
class TransitionConfig(BaseModel):
    from_: Union[str, List[str]] = Field(alias="from")
    to: str
    permissions: Optional[List[str]] = None
    label: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def from_states(self) -> List[str]:
        return [self.from_] if isinstance(self.from_, str) else list(self.from_)


class WorkflowDefinition(BaseModel):
    field: str
    states: List[str]
    transitions: Dict[str, TransitionConfig]
    history: bool = False
    history_table: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class TableConfig(BaseModel):
    """
    Typed view of the JSON stored in a table comment.
    Unknown presentation keys (icon, form, filters, ...) are preserved.
    """

    display_name: Optional[str] = None
    permissions: Dict[str, List[str]] = {}
    row_level_security: Optional[RowLevelSecurity] = None
    behaviors: BehaviorsConfig = BehaviorsConfig()
    list_view: ListViewConfig = ListViewConfig()
    validation_rules: ValidationRulesConfig = ValidationRulesConfig()
    business_rules: Optional[BusinessRulesConfig] = None
    notifications: NotificationsConfig = NotificationsConfig()
    webhooks: List[WebhookConfig] = []
    workflow: Optional[WorkflowDefinition] = None

    model_config = ConfigDict(extra="allow")
