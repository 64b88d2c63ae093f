"""Data models for the workflow execution engine."""

from .core import (
    NodeType,
    LogEventType,
    ValidationResult,
    NodeDefinition,
    EdgeDefinition,
    QueryDefinition,
    WorkflowDefinition,
    WorkflowSummary,
    ExecutionRunView,
    ExecutionNodeView,
    ExecutionEdgeView,
    NodeOutcome,
    NodeStatus,
    ExecutionStatus,
    LogEntry,
    BRANCH_TRUE,
    BRANCH_FALSE,
)

__all__ = [
    "NodeType",
    "LogEventType",
    "ValidationResult",
    "NodeDefinition",
    "EdgeDefinition",
    "QueryDefinition",
    "WorkflowDefinition",
    "WorkflowSummary",
    "ExecutionRunView",
    "ExecutionNodeView",
    "ExecutionEdgeView",
    "NodeOutcome",
    "NodeStatus",
    "ExecutionStatus",
    "LogEntry",
    "BRANCH_TRUE",
    "BRANCH_FALSE",
]
