from sqlalchemy import (
    Column,
    Integer,
    String,
    TIMESTAMP,
    Text,
    JSON,
    Index,
)
from sqlalchemy.sql import func

from dynacrud.core.config import settings
from dynacrud.core.database import Base


# =========================
# Audit log (append-only)
# =========================
class AuditLog(Base):
    """
    One row per create/update/delete issued through the orchestrator.
    Rows are only ever inserted.
    """

    __tablename__ = settings.AUDIT_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)

    table_name = Column(String(255), nullable=False)
    record_id = Column(Integer, nullable=False)
    action = Column(String(20), nullable=False)  # CREATE / UPDATE / DELETE

    user_id = Column(Integer, nullable=True)
    user_ip = Column(String(45), nullable=True)

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("idx_audit_record", "table_name", "record_id"),)


# =========================
# Workflow history (append-only)
# =========================
class WorkflowHistory(Base):
    __tablename__ = settings.WORKFLOW_HISTORY_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)

    table_name = Column(String(255), nullable=False)
    record_id = Column(Integer, nullable=False)
    transition = Column(String(100), nullable=False)
    from_state = Column(String(100), nullable=True)
    to_state = Column(String(100), nullable=False)

    user_id = Column(Integer, nullable=True)
    user_ip = Column(String(45), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_workflow_record", "table_name", "record_id"),
        Index("idx_workflow_created", "created_at"),
    )


# =========================
# Comment store (SQLite only)
# =========================
class TableComment(Base):
    """
    SQLite has no COMMENT syntax, so table and column comments are kept here.
    An empty column_name holds the table-level comment.
    """

    __tablename__ = "dynacrud_comments"

    table_name = Column(String(255), primary_key=True)
    column_name = Column(String(255), primary_key=True, default="")
    comment = Column(Text, nullable=False)
