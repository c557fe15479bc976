import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import String, delete, func, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dynacrud.core.config import settings
from dynacrud.core.crud.audit import AuditLogger
from dynacrud.core.crud.behaviors import BehaviorApplier
from dynacrud.core.crud.hooks import Hook, HookEvent, HookRegistry
from dynacrud.core.crud.introspect import SchemaIntrospector
from dynacrud.core.crud.metadata import MetadataStore
from dynacrud.core.crud.notifications import NotificationManager
from dynacrud.core.crud.relations import ManyToManyRelation
from dynacrud.core.crud.validation import (
    INTEGER_TYPES,
    ValidationPipeline,
    VirtualField,
    coerce_value,
    parse_int,
)
from dynacrud.core.crud.workflow import WorkflowEngine
from dynacrud.core.errors import (
    EntityValidationError,
    PermissionDeniedError,
    PersistenceError,
    SchemaError,
)
from dynacrud.core.schemas import ColumnMeta, WorkflowDefinition
from dynacrud.core.security import ANONYMOUS, ActorContext, CsrfGuard, PermissionManager

logger = logging.getLogger(__name__)

CSRF_FIELD = "csrf_token"
ID_FIELD = "id"
WORKFLOW_TRANSITION_FIELD = "workflow_transition"
WORKFLOW_ID_FIELD = "workflow_id"

RECORD_NOT_FOUND = "Record not found"
PERMISSION_DENIED = "You do not have permission to"
SAVE_FAILED = "Failed to save the record"
DELETE_FAILED = "Failed to delete the record"


class FileUploadHandler(Protocol):
    def handle_upload(self, field_name: str, metadata: ColumnMeta) -> Optional[str]:
        """Store the uploaded file for field_name; return its path or None."""
        ...


# -----------------------------------------------------------------------------
# ENTITY ORCHESTRATOR
# Purpose: run one create/update/delete request through the whole lifecycle:
#   workflow short-circuit -> CSRF -> permissions -> begin -> prepare input
#   -> uploads -> validate -> behaviors -> hooks -> persist -> many-to-many
#   -> commit -> notifications
# Every failure after "begin" rolls back everything issued since.
# -----------------------------------------------------------------------------


class EntityOrchestrator:
    """
    Coordinates the lifecycle of rows of one table.

    Args:
        db: Session used for every statement of a request.
        table: Name of the table to manage.
        introspector: Source of the table schema.
        upload_handler: Optional collaborator storing uploaded files.
        notifier: Receives email/webhook notifications after commit.
        csrf: When given, submissions must carry a valid csrf_token.
        metadata: Overrides the configuration parsed from the table comment.

    Example:
        crud = EntityOrchestrator(db, "posts", introspector)
        crud.before_save(lambda data: {**data, "title": data["title"].strip()})
        result = crud.handle_submission({"title": "Hello"}, actor)
    """

    def __init__(
        self,
        db: Session,
        table: str,
        introspector: SchemaIntrospector,
        upload_handler: Optional[FileUploadHandler] = None,
        notifier: Optional[NotificationManager] = None,
        csrf: Optional[CsrfGuard] = None,
        metadata: Optional[MetadataStore] = None,
    ):
        self.db = db
        self.schema = introspector.get_schema(table)
        if self.schema.primary_key is None:
            raise SchemaError(f"Table '{table}' has no primary key")

        self.metadata = metadata or MetadataStore.from_schema(self.schema)
        self.table = introspector.get_table(table)
        self.pk = self.schema.primary_key

        self.upload_handler = upload_handler
        self.notifier = notifier or NotificationManager()
        self.csrf = csrf

        self.hooks = HookRegistry()
        self.relations: Dict[str, ManyToManyRelation] = {}
        self.virtual_fields: List[VirtualField] = []
        self.audit_enabled = False
        self.workflow: Optional[WorkflowEngine] = None

        self.behaviors = BehaviorApplier(db, self.table, self.schema, self.metadata)

        definition = self.metadata.workflow()
        if definition is not None:
            self.enable_workflow(definition)

    # =========================
    # Configuration
    # =========================
    def on(self, event: str, hook: Hook) -> "EntityOrchestrator":
        self.hooks.on(event, hook)
        return self

    def before_validate(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.BEFORE_VALIDATE, hook)

    def after_validate(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.AFTER_VALIDATE, hook)

    def before_save(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.BEFORE_SAVE, hook)

    def after_save(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.AFTER_SAVE, hook)

    def before_create(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.BEFORE_CREATE, hook)

    def after_create(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.AFTER_CREATE, hook)

    def before_update(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.BEFORE_UPDATE, hook)

    def after_update(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.AFTER_UPDATE, hook)

    def before_delete(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.BEFORE_DELETE, hook)

    def after_delete(self, hook: Hook) -> "EntityOrchestrator":
        return self.on(HookEvent.AFTER_DELETE, hook)

    def add_many_to_many(
        self,
        field_name: str,
        pivot_table: str,
        local_key: str,
        foreign_key: str,
        related_table: str,
        display_column: str = "name",
    ) -> "EntityOrchestrator":
        self.relations[field_name] = ManyToManyRelation(
            field_name, pivot_table, local_key, foreign_key, related_table, display_column
        )
        return self

    def add_virtual_field(self, virtual: VirtualField) -> "EntityOrchestrator":
        self.virtual_fields.append(virtual)
        return self

    def enable_audit(self) -> "EntityOrchestrator":
        AuditLogger(self.db).ensure_table()
        self.audit_enabled = True
        return self

    def enable_workflow(self, definition: WorkflowDefinition) -> WorkflowEngine:
        self.workflow = WorkflowEngine(self.db, self.table, definition, self.pk)
        return self.workflow

    def permissions(self, actor: ActorContext) -> PermissionManager:
        return PermissionManager(self.metadata, actor)

    # =========================
    # Reads
    # =========================
    def find(self, record_id: Any, include_trashed: bool = False) -> Optional[Dict[str, Any]]:
        query = select(self.table).where(self.table.c[self.pk] == record_id)
        if not include_trashed:
            query = self._without_trashed(query)
        row = self.db.execute(query.limit(1)).first()
        return dict(row._mapping) if row is not None else None

    def list(
        self,
        actor: ActorContext = ANONYMOUS,
        page: int = 1,
        per_page: Optional[int] = None,
        include_trashed: bool = False,
        filters: Optional[Mapping[str, Any]] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One page of rows, sorted by the list-view default_sort.

        Args:
            filters: column -> value pairs every returned row must match.
            search: Case-insensitive text matched against the list-view
                searchable columns; ignored when none are declared.

        Without table-level read permission only the actor's own rows are
        returned when row-level security is enabled.
        """
        permissions = self.permissions(actor)
        list_view = self.metadata.list_view()
        per_page = min(max(per_page or list_view.per_page, 1), settings.MAX_PER_PAGE)
        page = max(page, 1)

        query = select(*self._list_columns(list_view))
        if not include_trashed:
            query = self._without_trashed(query)

        if not permissions.can_read():
            rls = self.metadata.row_level_security()
            if not self.metadata.has_row_level_security() or rls.owner_field not in self.table.c:
                return {"success": False, "error": f"{PERMISSION_DENIED} read these records"}
            query = query.where(self.table.c[rls.owner_field] == actor.id)

        for name, value in (filters or {}).items():
            column = self.schema.column(name)
            if column is None:
                return {"success": False, "error": f"Unknown filter field '{name}'"}
            try:
                value = coerce_value(column, value)
            except ValueError:
                return {"success": False, "error": f"Invalid value for filter '{name}'"}
            query = query.where(self.table.c[name] == value)

        if search:
            searchable = [name for name in list_view.searchable if name in self.table.c]
            if searchable:
                term = search.strip().lower()
                query = query.where(
                    or_(
                        *(
                            func.lower(self.table.c[name], type_=String).contains(
                                term, autoescape=True
                            )
                            for name in searchable
                        )
                    )
                )

        total = self.db.execute(select(func.count()).select_from(query.subquery())).scalar()

        query = query.order_by(*self._default_order()).limit(per_page).offset((page - 1) * per_page)
        items = [dict(row._mapping) for row in self.db.execute(query)]

        return {
            "success": True,
            "items": items,
            "total": total,
            "page": page,
            "per_page": per_page,
            "total_pages": -(-total // per_page),
            "actions": list(list_view.actions),
            "card_view": list_view.card_view,
        }

    def _list_columns(self, list_view) -> List[Any]:
        # The primary key always comes along so rows can be addressed
        names = [name for name in list_view.columns if name in self.table.c]
        if not names:
            return [self.table]
        if self.pk not in names:
            names.insert(0, self.pk)
        return [self.table.c[name] for name in names]

    def audit_history(self, record_id: Any) -> List[Dict[str, Any]]:
        if not self.audit_enabled:
            return []
        return AuditLogger(self.db).get_history(self.table.name, record_id)

    def _without_trashed(self, query):
        if self.metadata.has_soft_deletes():
            column = self.metadata.soft_delete_column()
            if column in self.table.c:
                query = query.where(self.table.c[column].is_(None))
        return query

    def _default_order(self):
        parts = self.metadata.list_view().default_sort.split()
        column = parts[0] if parts else self.pk
        if column not in self.table.c:
            column = self.pk
        descending = len(parts) > 1 and parts[1].upper() == "DESC"
        return [self.table.c[column].desc() if descending else self.table.c[column].asc()]

    # =========================
    # Submission (create / update)
    # =========================
    def handle_submission(
        self, payload: Mapping[str, Any], actor: ActorContext = ANONYMOUS
    ) -> Dict[str, Any]:
        """
        Create or update one row from a submitted payload.

        Returns:
            {"success": True, "id": id} on success,
            {"success": False, "error": message} for request-level failures,
            {"success": False, "errors": {field: [messages]}} for validation failures.
        """
        payload = dict(payload)

        # A workflow transition skips the CRUD pipeline entirely
        if payload.get(WORKFLOW_TRANSITION_FIELD) and payload.get(WORKFLOW_ID_FIELD):
            return self._handle_transition(payload, actor)

        if self.csrf is not None and not self.csrf.validate(payload.get(CSRF_FIELD), actor):
            return {"success": False, "error": "Invalid CSRF token"}

        try:
            record_id = self._record_id(payload)
        except ValueError:
            return {"success": False, "error": "Invalid record id"}

        try:
            old_row = self._check_write_permission(record_id, actor)
        except PermissionDeniedError as error:
            return {"success": False, "error": str(error)}

        try:
            self._begin()
            record_id, event, data = self._save(payload, record_id, old_row, actor)
            self.db.commit()
        except EntityValidationError as error:
            self.db.rollback()
            return {"success": False, "errors": error.errors}
        except PersistenceError as error:
            self.db.rollback()
            return {"success": False, "error": str(error)}
        except SQLAlchemyError as error:
            self.db.rollback()
            logger.error(f"Failed to save {self.table.name} record: {error}")
            return {"success": False, "error": SAVE_FAILED}
        except Exception as error:
            # Hooks abort the save by raising
            self.db.rollback()
            logger.error(f"Save of {self.table.name} record aborted: {error}")
            return {"success": False, "error": str(error) or SAVE_FAILED}

        self._dispatch_notifications(event, data, record_id)
        return {"success": True, "id": record_id}

    def _record_id(self, payload: Dict[str, Any]) -> Optional[Any]:
        raw = payload.get(ID_FIELD)
        if raw is None or raw == "":
            raw = payload.get(self.pk)
        if raw is None or raw == "":
            return None
        return self.parse_id(raw)

    def parse_id(self, raw: Any) -> Any:
        """Convert a submitted or path id to the primary key's type."""
        column = self.schema.column(self.pk)
        if column is not None and column.sql_type in INTEGER_TYPES:
            return parse_int(raw)
        return raw

    def _check_write_permission(
        self, record_id: Optional[Any], actor: ActorContext
    ) -> Optional[Dict[str, Any]]:
        """
        Returns the current row of an update when it had to be read, either
        for row-level security or for the audit snapshot.
        """
        permissions = self.permissions(actor)

        if record_id is None:
            if not permissions.can_create():
                raise PermissionDeniedError(f"{PERMISSION_DENIED} create records")
            return None

        old_row = None
        if self.metadata.has_row_level_security() or self.audit_enabled:
            old_row = self.find(record_id)

        if not permissions.can_update(old_row):
            raise PermissionDeniedError(f"{PERMISSION_DENIED} update this record")
        return old_row

    def _begin(self) -> None:
        if not self.db.in_transaction():
            self.db.begin()

    def _save(
        self,
        payload: Dict[str, Any],
        record_id: Optional[Any],
        old_row: Optional[Dict[str, Any]],
        actor: ActorContext,
    ):
        creating = record_id is None

        relation_values = {
            name: payload.pop(name) for name in list(self.relations) if name in payload
        }
        data = self._prepare_input(payload)
        data = self._handle_uploads(data)

        data = self.hooks.run(HookEvent.BEFORE_VALIDATE, data)
        errors = self.validator.validate_structure(
            data, partial=not creating, managed=self.behaviors.managed_columns()
        )
        if errors:
            raise EntityValidationError(errors)
        data = self.hooks.run(HookEvent.AFTER_VALIDATE, data)

        data = self._coerce(data)
        rule_errors, data = self.validator.validate_rules(data, record_id, actor.id)
        if rule_errors:
            raise EntityValidationError(rule_errors)

        data = self.behaviors.apply(data, record_id)
        data = self.hooks.run(HookEvent.BEFORE_SAVE, data)

        audit = AuditLogger(self.db, actor) if self.audit_enabled else None

        if creating:
            data = self.hooks.run(HookEvent.BEFORE_CREATE, data)
            record_id = self._insert(data)
            if audit:
                audit.log_create(self.table.name, record_id, data)
            data = self.hooks.run(HookEvent.AFTER_CREATE, data, record_id)
            event = "create"
        else:
            data = self.hooks.run(HookEvent.BEFORE_UPDATE, data, record_id)
            self._update(record_id, data)
            if audit:
                audit.log_update(self.table.name, record_id, old_row or {}, data)
            data = self.hooks.run(HookEvent.AFTER_UPDATE, data, record_id)
            event = "update"

        data = self.hooks.run(HookEvent.AFTER_SAVE, data, record_id)

        for name, selected in relation_values.items():
            self.relations[name].sync(self.db, record_id, selected)

        return record_id, event, data

    @property
    def validator(self) -> ValidationPipeline:
        return ValidationPipeline(
            self.db, self.table, self.schema, self.metadata, self.virtual_fields
        )

    def _prepare_input(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        # Only writable columns and virtual fields make it into the record
        allowed = {col.name for col in self.schema.writable_columns()}
        allowed.update(virtual.name for virtual in self.virtual_fields)
        return {key: value for key, value in payload.items() if key in allowed}

    def _handle_uploads(self, data: Dict[str, Any]) -> Dict[str, Any]:
        file_columns = [col for col in self.schema.columns if col.metadata.type == "file"]
        if not file_columns:
            return data

        data = dict(data)
        for column in file_columns:
            path = None
            if self.upload_handler is not None:
                try:
                    path = self.upload_handler.handle_upload(column.name, column.metadata)
                except (OSError, ValueError) as error:
                    raise PersistenceError(f"Upload of {column.name} failed: {error}")

            if path:
                data[column.name] = path
            else:
                # No new file: keep the stored one (or fail validation if required)
                data.pop(column.name, None)
        return data

    def _coerce(self, data: Dict[str, Any]) -> Dict[str, Any]:
        coerced = {}
        for key, value in data.items():
            column = self.schema.column(key)
            # Virtual fields end here
            if column is None or column.is_primary:
                continue
            coerced[key] = coerce_value(column, value)
        return coerced

    def _insert(self, data: Dict[str, Any]) -> Any:
        result = self.db.execute(insert(self.table).values(**data))
        return result.inserted_primary_key[0]

    def _update(self, record_id: Any, data: Dict[str, Any]) -> None:
        if not data:
            if self.find(record_id) is None:
                raise PersistenceError(RECORD_NOT_FOUND)
            return

        # Trashed rows are gone for editing until restored
        statement = update(self.table).where(self.table.c[self.pk] == record_id)
        result = self.db.execute(self._without_trashed(statement).values(**data))
        if result.rowcount == 0:
            raise PersistenceError(RECORD_NOT_FOUND)

    def _dispatch_notifications(self, event: str, data: Dict[str, Any], record_id: Any) -> None:
        notifications = self.metadata.notifications()
        target = notifications.on_create if event == "create" else notifications.on_update

        try:
            if target is not None:
                self.notifier.send_email_notifications(target, data, record_id)
            if self.metadata.webhooks():
                self.notifier.trigger_webhooks(self.metadata.webhooks(), event, data, record_id)
        except Exception:
            # The row is already committed; a failed notification must not undo it
            logger.exception(f"Notification for {self.table.name} {record_id} failed")

    # =========================
    # Workflow
    # =========================
    def _handle_transition(self, payload: Dict[str, Any], actor: ActorContext) -> Dict[str, Any]:
        if self.workflow is None:
            return {"success": False, "error": "Workflow is not enabled"}

        try:
            record_id = self.parse_id(payload[WORKFLOW_ID_FIELD])
        except ValueError:
            return {"success": False, "error": "Invalid record id"}

        return self.workflow.transition(record_id, str(payload[WORKFLOW_TRANSITION_FIELD]), actor)

    # =========================
    # Delete
    # =========================
    def delete(self, record_id: Any, actor: ActorContext = ANONYMOUS) -> Dict[str, Any]:
        """Soft delete when configured, hard delete otherwise."""
        return self._delete(record_id, actor, force=False)

    def force_delete(self, record_id: Any, actor: ActorContext = ANONYMOUS) -> Dict[str, Any]:
        """Always remove the row, even when soft deletes are configured."""
        return self._delete(record_id, actor, force=True)

    def _delete(self, record_id: Any, actor: ActorContext, force: bool) -> Dict[str, Any]:
        row = self.find(record_id, include_trashed=True)
        if row is None:
            return {"success": False, "error": RECORD_NOT_FOUND}

        if not self.permissions(actor).can_delete(row):
            return {"success": False, "error": f"{PERMISSION_DENIED} delete this record"}

        soft = self._soft_delete_column() if not force else None

        try:
            self._begin()
            self.hooks.notify(HookEvent.BEFORE_DELETE, record_id)

            if soft is not None:
                self.db.execute(
                    update(self.table)
                    .where(self.table.c[self.pk] == record_id)
                    .values({soft: datetime.now()})
                )
            else:
                self.db.execute(delete(self.table).where(self.table.c[self.pk] == record_id))

            if self.audit_enabled:
                AuditLogger(self.db, actor).log_delete(self.table.name, record_id, row)

            self.hooks.notify(HookEvent.AFTER_DELETE, record_id)
            self.db.commit()
        except SQLAlchemyError as error:
            self.db.rollback()
            logger.error(f"Failed to delete {self.table.name} {record_id}: {error}")
            return {"success": False, "error": DELETE_FAILED}
        except Exception as error:
            self.db.rollback()
            logger.error(f"Delete of {self.table.name} {record_id} aborted: {error}")
            return {"success": False, "error": str(error) or DELETE_FAILED}

        return {"success": True, "id": record_id}

    def restore(self, record_id: Any, actor: ActorContext = ANONYMOUS) -> Dict[str, Any]:
        column = self._soft_delete_column()
        if column is None:
            return {"success": False, "error": "Soft deletes are not enabled"}

        row = self.find(record_id, include_trashed=True)
        if row is None:
            return {"success": False, "error": RECORD_NOT_FOUND}
        if not self.permissions(actor).can_update(row):
            return {"success": False, "error": f"{PERMISSION_DENIED} update this record"}

        try:
            self._begin()
            self.db.execute(
                update(self.table).where(self.table.c[self.pk] == record_id).values({column: None})
            )
            self.db.commit()
        except SQLAlchemyError as error:
            self.db.rollback()
            logger.error(f"Failed to restore {self.table.name} {record_id}: {error}")
            return {"success": False, "error": SAVE_FAILED}

        return {"success": True, "id": record_id}

    def _soft_delete_column(self) -> Optional[str]:
        if not self.metadata.has_soft_deletes():
            return None
        column = self.metadata.soft_delete_column()
        return column if column in self.table.c else None
