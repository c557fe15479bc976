from typing import Any, Dict, List, Mapping, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from dynacrud.core import models
from dynacrud.core.security import ActorContext, ANONYMOUS


class AuditLogger:
    """
    Appends one audit_log row per write. Rows are never updated or deleted.
    Values are stored as JSON, so dates and decimals are encoded first.
    """

    def __init__(self, db: Session, actor: ActorContext = ANONYMOUS, enabled: bool = True):
        self.db = db
        self.actor = actor
        self.enabled = enabled
        self.table = models.AuditLog.__table__

    def ensure_table(self) -> None:
        self.table.create(self.db.get_bind(), checkfirst=True)

    def log_create(self, table: str, record_id: int, new_values: Mapping[str, Any]) -> None:
        self._log(table, record_id, "CREATE", None, new_values)

    def log_update(
        self,
        table: str,
        record_id: int,
        old_values: Mapping[str, Any],
        new_values: Mapping[str, Any],
    ) -> None:
        self._log(table, record_id, "UPDATE", old_values, new_values)

    def log_delete(self, table: str, record_id: int, old_values: Mapping[str, Any]) -> None:
        self._log(table, record_id, "DELETE", old_values, None)

    def _log(
        self,
        table: str,
        record_id: int,
        action: str,
        old_values: Optional[Mapping[str, Any]],
        new_values: Optional[Mapping[str, Any]],
    ) -> None:
        if not self.enabled:
            return

        self.db.execute(
            insert(self.table).values(
                table_name=table,
                record_id=record_id,
                action=action,
                user_id=self.actor.id,
                user_ip=self.actor.ip,
                old_values=jsonable_encoder(dict(old_values)) if old_values else None,
                new_values=jsonable_encoder(dict(new_values)) if new_values else None,
            )
        )

    def get_history(self, table: str, record_id: int) -> List[Dict[str, Any]]:
        query = (
            select(self.table)
            .where(self.table.c.table_name == table, self.table.c.record_id == record_id)
            .order_by(self.table.c.created_at.desc(), self.table.c.id.desc())
        )
        return [dict(row._mapping) for row in self.db.execute(query)]
