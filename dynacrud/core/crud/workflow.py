import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import MetaData, Table, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dynacrud.core import models
from dynacrud.core.errors import WorkflowError
from dynacrud.core.schemas import TransitionConfig, WorkflowDefinition
from dynacrud.core.security import ActorContext, GUEST_ROLE

logger = logging.getLogger(__name__)

# hook(record_id, from_state, to_state, actor)
WorkflowHook = Callable[[Any, Optional[str], str, Optional[ActorContext]], None]


# -----------------------------------------------------------------------------
# WORKFLOW ENGINE
# Purpose: permission-gated state machine over one status column.
# Transitions run outside the CRUD transaction. The state write and the
# history row are committed before after_<name> hooks run; a failing
# after-hook is logged and reported as "hook_error", the state stays changed.
# No row lock is taken, so concurrent transitions on one row race.
# -----------------------------------------------------------------------------


def validate_definition(definition: WorkflowDefinition) -> None:
    if not definition.field:
        raise WorkflowError("Workflow field is required")
    if not definition.states:
        raise WorkflowError("Workflow states are required")
    if not definition.transitions:
        raise WorkflowError("Workflow transitions are required")

    states = set(definition.states)
    for name, transition in definition.transitions.items():
        unknown = [s for s in transition.from_states() if s not in states]
        if unknown:
            raise WorkflowError(f"Transition '{name}' starts from unknown state(s) {unknown}")
        if transition.to not in states:
            raise WorkflowError(f"Transition '{name}' leads to unknown state '{transition.to}'")


class WorkflowEngine:
    def __init__(
        self,
        db: Session,
        table: Table,
        definition: WorkflowDefinition,
        primary_key: str = "id",
    ):
        validate_definition(definition)
        if definition.field not in table.c:
            raise WorkflowError(f"Column '{definition.field}' does not exist on '{table.name}'")

        self.db = db
        self.table = table
        self.definition = definition
        self.primary_key = primary_key
        self._hooks: Dict[str, List[WorkflowHook]] = {}
        self._history_table: Optional[Table] = None

        if definition.history:
            # Create the history table up front, outside any write transaction
            self.ensure_history_table()

    @property
    def field(self) -> str:
        return self.definition.field

    @property
    def states(self) -> List[str]:
        return list(self.definition.states)

    @property
    def transitions(self) -> Dict[str, TransitionConfig]:
        return dict(self.definition.transitions)

    def add_hook(self, event: str, hook: WorkflowHook) -> "WorkflowEngine":
        """Register a before_<transition> or after_<transition> hook."""
        self._hooks.setdefault(event, []).append(hook)
        return self

    def _run_hooks(self, event: str, *args: Any) -> None:
        for hook in self._hooks.get(event, []):
            hook(*args)

    def get_current_state(self, record_id: Any) -> Optional[str]:
        query = select(self.table.c[self.field]).where(
            self.table.c[self.primary_key] == record_id
        )
        row = self.db.execute(query).first()
        return row[0] if row is not None else None

    def can_transition(
        self, name: str, from_state: Optional[str], actor: Optional[ActorContext] = None
    ) -> bool:
        transition = self.definition.transitions.get(name)
        if transition is None:
            return False

        # A row whose status is outside the configured states cannot move
        if from_state not in self.definition.states:
            return False
        if from_state not in transition.from_states():
            return False

        if transition.permissions is not None:
            role = actor.role if actor is not None and actor.role else GUEST_ROLE
            return "*" in transition.permissions or role in transition.permissions

        return True

    def get_available_transitions(self, from_state: Optional[str]) -> Dict[str, TransitionConfig]:
        """Transitions leaving from_state, regardless of who may run them."""
        return {
            name: transition
            for name, transition in self.definition.transitions.items()
            if from_state in transition.from_states()
        }

    def transition(
        self, record_id: Any, name: str, actor: Optional[ActorContext] = None
    ) -> Dict[str, Any]:
        current_state = self.get_current_state(record_id)
        if current_state is None:
            return {"success": False, "error": "Record not found"}

        if not self.can_transition(name, current_state, actor):
            return {"success": False, "error": "Transition not allowed"}

        new_state = self.definition.transitions[name].to

        try:
            self._run_hooks(f"before_{name}", record_id, current_state, new_state, actor)
        except Exception as error:
            self.db.rollback()
            logger.error(f"before_{name} hook aborted transition of {record_id}: {error}")
            return {"success": False, "error": str(error)}

        try:
            self.db.execute(
                update(self.table)
                .where(self.table.c[self.primary_key] == record_id)
                .values({self.field: new_state})
            )
            if self.definition.history:
                self._log_transition(record_id, name, current_state, new_state, actor)
            self.db.commit()
        except SQLAlchemyError as error:
            self.db.rollback()
            logger.error(f"Failed to move {self.table.name} {record_id} via {name}: {error}")
            return {"success": False, "error": "Failed to apply transition"}

        result = {"success": True, "from": current_state, "to": new_state}

        try:
            self._run_hooks(f"after_{name}", record_id, current_state, new_state, actor)
        except Exception as error:
            logger.exception(f"after_{name} hook failed for {self.table.name} {record_id}")
            result["hook_error"] = str(error)

        return result

    # History
    def ensure_history_table(self) -> Table:
        if self._history_table is None:
            base = models.WorkflowHistory.__table__
            name = self.definition.history_table
            if name and name != base.name:
                copied = base.to_metadata(MetaData(), name=name)
                # Index names are database-wide; the copy goes without them
                copied.indexes.clear()
                self._history_table = copied
            else:
                self._history_table = base
            self._history_table.create(self.db.get_bind(), checkfirst=True)
        return self._history_table

    def _log_transition(
        self,
        record_id: Any,
        name: str,
        from_state: Optional[str],
        to_state: str,
        actor: Optional[ActorContext],
    ) -> None:
        self.db.execute(
            insert(self.ensure_history_table()).values(
                table_name=self.table.name,
                record_id=record_id,
                transition=name,
                from_state=from_state,
                to_state=to_state,
                user_id=actor.id if actor else None,
                user_ip=actor.ip if actor else None,
            )
        )

    def get_history(self, record_id: Any) -> List[Dict[str, Any]]:
        if not self.definition.history:
            return []

        history = self.ensure_history_table()
        query = (
            select(history)
            .where(history.c.table_name == self.table.name, history.c.record_id == record_id)
            .order_by(history.c.created_at.desc(), history.c.id.desc())
        )
        return [dict(row._mapping) for row in self.db.execute(query)]
