"""Database models and storage layer."""

from .database import (
    Base,
    session_scope,
    init_database,
    create_tables,
)
from .models import (
    WorkflowModel,
    WorkflowExecutionModel,
    WorkflowExecutionNodeModel,
    WorkflowExecutionEdgeModel,
    LogEntryModel,
)

__all__ = [
    "Base",
    "session_scope",
    "init_database",
    "create_tables",
    "WorkflowModel",
    "WorkflowExecutionModel",
    "WorkflowExecutionNodeModel",
    "WorkflowExecutionEdgeModel",
    "LogEntryModel",
]
