"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    DefinitionError,
    NodeExecutionError,
    ExpressionError,
    QueryExecutionError,
    StateManagementError,
    StorageError,
    RunNotFoundError,
    NodeNotFoundError,
    WorkflowNotFoundError,
    ExecutionEngineError,
    RunCancelledError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .graph_store import GraphStore, SqlGraphStore, parse_definition
from .query_runner import QueryRunner, RegistryQueryRunner
from .readiness import ReadinessEvaluator
from .node_executors import NodeExecutor, NodeExecutorRegistry, ExecutionContext
from .workflow_manager import WorkflowManager
from .execution_engine import ExecutionEngine, CancellationToken

__all__ = [
    "WorkflowEngineError",
    "DefinitionError",
    "NodeExecutionError",
    "ExpressionError",
    "QueryExecutionError",
    "StateManagementError",
    "StorageError",
    "RunNotFoundError",
    "NodeNotFoundError",
    "WorkflowNotFoundError",
    "ExecutionEngineError",
    "RunCancelledError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "GraphStore",
    "SqlGraphStore",
    "parse_definition",
    "QueryRunner",
    "RegistryQueryRunner",
    "ReadinessEvaluator",
    "NodeExecutor",
    "NodeExecutorRegistry",
    "ExecutionContext",
    "WorkflowManager",
    "ExecutionEngine",
    "CancellationToken",
]
