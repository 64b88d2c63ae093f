"""Exceptions raised by the workflow execution engine.

Every error carries a stable ``error_code`` (the class name unless given),
free-form ``details`` describing what went wrong, and ``context`` naming the
run, node, query or workflow involved. ``recoverable`` marks errors the
storage retry loop may try again.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List


def _present(**fields) -> Dict[str, Any]:
    """Drop context fields that were not supplied."""
    return {key: value for key, value in fields.items() if value is not None}


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.context = context or {}
        self.recoverable = recoverable
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert the exception to a dictionary for logs and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "context": self.context,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat()
        }


class DefinitionError(WorkflowEngineError):
    """Raised when a workflow definition is structurally invalid.

    Definition errors are fatal at run-creation time: no run is created.
    """

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_name: Optional[str] = None,
        **kwargs
    ):
        self.validation_errors = validation_errors or []
        details = {"validation_errors": self.validation_errors} if self.validation_errors else None
        super().__init__(message, details=details, context=_present(workflow_name=workflow_name), **kwargs)


class NodeExecutionError(WorkflowEngineError):
    """Raised when a node cannot be executed (unknown type, missing config)."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        run_id: Optional[str] = None,
        node_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            context=_present(run_id=run_id, node_id=node_id, node_type=node_type),
            **kwargs
        )


class ExpressionError(WorkflowEngineError):
    """Raised when an expression or a query-variable placeholder cannot be resolved."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        self.expression = expression
        super().__init__(message, details=_present(expression=expression), **kwargs)


class QueryExecutionError(WorkflowEngineError):
    """Raised by query runners when a query fails."""

    def __init__(
        self,
        message: str,
        query_name: Optional[str] = None,
        query_kind: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, context=_present(query_name=query_name, query_kind=query_kind), **kwargs)


class StateManagementError(WorkflowEngineError):
    """Raised when a node or run state transition is not permitted."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, context=_present(run_id=run_id, operation=operation), **kwargs)


class StorageError(WorkflowEngineError):
    """Raised when the database cannot complete an operation.

    Storage errors are recoverable unless a subclass says otherwise, so
    store writes wrapped in ``with_retry`` try them again.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        recoverable: bool = True,
        **kwargs
    ):
        kwargs.setdefault("context", _present(operation=operation, table=table))
        super().__init__(message, recoverable=recoverable, **kwargs)


class RunNotFoundError(StorageError):
    """Raised when an execution run does not exist."""

    def __init__(self, run_id: str):
        super().__init__(
            f"Run {run_id} not found",
            table="workflow_executions",
            recoverable=False,
            context={"run_id": run_id}
        )


class NodeNotFoundError(StorageError):
    """Raised when an execution node does not exist."""

    def __init__(self, node_id: str):
        super().__init__(
            f"Node {node_id} not found",
            table="workflow_execution_nodes",
            recoverable=False,
            context={"node_id": node_id}
        )


class WorkflowNotFoundError(StorageError):
    """Raised when a stored workflow definition does not exist."""

    def __init__(self, workflow_id: str):
        super().__init__(
            f"Workflow with ID '{workflow_id}' not found",
            table="workflows",
            recoverable=False,
            context={"workflow_id": workflow_id}
        )


class ExecutionEngineError(WorkflowEngineError):
    """Raised when a run cannot be started, resumed or scheduled."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, context=_present(run_id=run_id, workflow_id=workflow_id), **kwargs)


class RunCancelledError(ExecutionEngineError):
    """Raised when a run loop stops because its cancellation token was set."""

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} was cancelled", run_id=run_id)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, context=_present(config_key=config_key), **kwargs)


def describe_exception(error: BaseException) -> Dict[str, Any]:
    """Build a JSON-serializable description of an exception for storage in node state."""
    if isinstance(error, WorkflowEngineError):
        return {
            "type": error.__class__.__name__,
            "message": error.message,
            "code": error.error_code,
            "details": error.details,
        }
    return {"type": error.__class__.__name__, "message": str(error)}


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create the ``detail`` body of an API error response."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
