import logging
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from dynacrud.core.cache import MemoryCacheStrategy
from dynacrud.core.config import settings
from dynacrud.core.crud.introspect import SchemaIntrospector
from dynacrud.core.crud.notifications import HttpNotificationManager
from dynacrud.core.crud.orchestrator import (
    EntityOrchestrator,
    PERMISSION_DENIED,
    RECORD_NOT_FOUND,
)
from dynacrud.core.database import engine, get_db
from dynacrud.core.errors import SchemaError, WorkflowError
from dynacrud.core.security import ActorContext, CsrfGuard, get_actor

router = APIRouter(prefix="/entities", tags=["Entities"])

# One introspector per process so schemas stay cached between requests
introspector = SchemaIntrospector(engine, MemoryCacheStrategy())


def get_introspector() -> SchemaIntrospector:
    return introspector


db_dep = Annotated[Session, Depends(get_db)]
actor_dep = Annotated[ActorContext, Depends(get_actor)]
introspector_dep = Annotated[SchemaIntrospector, Depends(get_introspector)]

# Query parameters of the list route that are not column filters
LIST_PARAMS = {"page", "per_page", "include_trashed", "search"}


def build_orchestrator(table: str, db: Session, schemas: SchemaIntrospector) -> EntityOrchestrator:
    try:
        crud = EntityOrchestrator(
            db,
            table,
            schemas,
            notifier=HttpNotificationManager(),
            csrf=CsrfGuard() if settings.CSRF_ENABLED else None,
        )
    except SchemaError as error:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(error))
    except WorkflowError as error:
        logging.error(f"Invalid workflow configuration on {table}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Invalid workflow configuration",
        )

    if settings.AUDIT_ENABLED:
        crud.enable_audit()
    return crud


def parse_path_id(crud: EntityOrchestrator, record_id: str) -> Any:
    try:
        return crud.parse_id(record_id)
    except ValueError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, RECORD_NOT_FOUND)


def raise_for_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Turn an unsuccessful orchestrator result into an HTTP error."""
    if result.get("success"):
        return result

    if "errors" in result:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, result["errors"])

    error = result.get("error", "")
    if error == RECORD_NOT_FOUND:
        raise HTTPException(status.HTTP_404_NOT_FOUND, error)
    if error.startswith(PERMISSION_DENIED):
        raise HTTPException(status.HTTP_403_FORBIDDEN, error)
    raise HTTPException(status.HTTP_400_BAD_REQUEST, error)


# Create or update (an "id" in the body means update)
@router.post("/{table}", status_code=status.HTTP_200_OK)
def submit_entity(
    table: str,
    payload: Annotated[Dict[str, Any], Body()],
    db: db_dep,
    actor: actor_dep,
    schemas: introspector_dep,
):
    crud = build_orchestrator(table, db, schemas)
    return raise_for_result(crud.handle_submission(payload, actor))


# List one page of rows. Any other query parameter filters on the column of that name:
# /entities/posts?status=published&search=hello
@router.get("/{table}")
def list_entities(
    table: str,
    request: Request,
    db: db_dep,
    actor: actor_dep,
    schemas: introspector_dep,
    page: int = 1,
    per_page: Optional[int] = None,
    include_trashed: bool = False,
    search: Optional[str] = None,
):
    crud = build_orchestrator(table, db, schemas)
    filters = {
        key: value for key, value in request.query_params.items() if key not in LIST_PARAMS
    }
    return raise_for_result(
        crud.list(actor, page, per_page, include_trashed, filters=filters, search=search)
    )


# Get one row
@router.get("/{table}/{record_id}")
def get_entity(
    table: str, record_id: str, db: db_dep, actor: actor_dep, schemas: introspector_dep
):
    crud = build_orchestrator(table, db, schemas)
    row = crud.find(parse_path_id(crud, record_id))

    if row is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, RECORD_NOT_FOUND)
    if not crud.permissions(actor).can_read(row):
        raise HTTPException(status.HTTP_403_FORBIDDEN, f"{PERMISSION_DENIED} read this record")

    return row


# Delete (soft when configured, unless force=true)
@router.delete("/{table}/{record_id}")
def delete_entity(
    table: str,
    record_id: str,
    db: db_dep,
    actor: actor_dep,
    schemas: introspector_dep,
    force: bool = False,
):
    crud = build_orchestrator(table, db, schemas)
    record_id = parse_path_id(crud, record_id)

    if force:
        return raise_for_result(crud.force_delete(record_id, actor))
    return raise_for_result(crud.delete(record_id, actor))


# Bring back a soft-deleted row
@router.post("/{table}/{record_id}/restore")
def restore_entity(
    table: str, record_id: str, db: db_dep, actor: actor_dep, schemas: introspector_dep
):
    crud = build_orchestrator(table, db, schemas)
    return raise_for_result(crud.restore(parse_path_id(crud, record_id), actor))


# Run a workflow transition
@router.post("/{table}/{record_id}/transitions/{name}")
def run_transition(
    table: str,
    record_id: str,
    name: str,
    db: db_dep,
    actor: actor_dep,
    schemas: introspector_dep,
):
    crud = build_orchestrator(table, db, schemas)
    result = crud.handle_submission(
        {"workflow_transition": name, "workflow_id": record_id}, actor
    )

    if not result.get("success") and result.get("error") == "Transition not allowed":
        raise HTTPException(status.HTTP_409_CONFLICT, result["error"])
    return raise_for_result(result)


# Workflow and audit history of one row
@router.get("/{table}/{record_id}/history")
def get_entity_history(
    table: str, record_id: str, db: db_dep, actor: actor_dep, schemas: introspector_dep
):
    crud = build_orchestrator(table, db, schemas)
    record_id = parse_path_id(crud, record_id)

    row = crud.find(record_id, include_trashed=True)
    if row is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, RECORD_NOT_FOUND)
    if not crud.permissions(actor).can_read(row):
        raise HTTPException(status.HTTP_403_FORBIDDEN, f"{PERMISSION_DENIED} read this record")

    return {
        "workflow": crud.workflow.get_history(record_id) if crud.workflow else [],
        "audit": crud.audit_history(record_id),
    }
