"""FastAPI REST endpoints for the workflow engine."""

from datetime import datetime
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel, Field

from ..core.execution_engine import ExecutionEngine
from ..core.workflow_manager import WorkflowManager
from ..core.exceptions import (
    DefinitionError,
    RunNotFoundError,
    NodeNotFoundError,
    WorkflowNotFoundError,
    WorkflowEngineError,
    create_error_response
)
from ..models.core import (
    WorkflowDefinition,
    WorkflowSummary,
    ExecutionStatus,
    LogEntry
)
from ..core.logging import get_logger

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_workflow_manager: Optional[WorkflowManager] = None
_execution_engine: Optional[ExecutionEngine] = None


def init_dependencies(workflow_manager: WorkflowManager, execution_engine: ExecutionEngine):
    """Initialize the global dependencies."""
    global _workflow_manager, _execution_engine
    _workflow_manager = workflow_manager
    _execution_engine = execution_engine


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    if _workflow_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow manager not initialized"
        )
    return _workflow_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get the execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def _http_error(error: Exception, action: str) -> HTTPException:
    """Translate an engine error into an HTTPException carrying a standard error payload."""
    if not isinstance(error, WorkflowEngineError):
        logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "InternalError",
                "message": f"An unexpected error occurred while {action}",
                "details": {"original_error": str(error)},
                "timestamp": datetime.utcnow().isoformat()
            }
        )

    if isinstance(error, DefinitionError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, (WorkflowNotFoundError, RunNotFoundError, NodeNotFoundError)):
        status_code = status.HTTP_404_NOT_FOUND
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"Workflow engine error while {action}: {str(error)}")
    else:
        logger.warning(f"Rejected request while {action}: {str(error)}")

    return HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models
class CreateWorkflowRequest(BaseModel):
    """Request model for creating a workflow.

    The definition is taken as raw data so structural problems surface as
    definition errors rather than request-schema errors.
    """
    workflow: Dict[str, Any] = Field(..., description="Workflow definition to store")


class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Unique identifier of the created workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class TriggerRunRequest(BaseModel):
    """Request model for starting a run."""
    params: Dict[str, Any] = Field(default_factory=dict, description="Invocation parameters")
    executing_user_id: Optional[str] = Field(None, description="User on whose behalf queries run")


class TriggerRunResponse(BaseModel):
    """Response model for a started run."""
    run_id: str = Field(..., description="Unique identifier for the run")
    workflow_id: str = Field(..., description="Workflow the run was created from")
    definition_version: Optional[int] = Field(None, description="Definition version the run uses")
    message: str = Field(..., description="Success message")


class CancelRunResponse(BaseModel):
    """Response model for a cancellation request."""
    run_id: str
    cancelled: bool
    message: str


# Endpoints

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new workflow",
    description="Validate and store a workflow definition and return its unique identifier"
)
async def create_workflow(
    request: CreateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    """
    Create a new workflow.

    Args:
        request: Workflow creation request containing the definition
        workflow_manager: Workflow manager dependency

    Returns:
        Response containing the created workflow ID and any validation warnings

    Raises:
        HTTPException: 400 if the definition is invalid, 500 on storage failures
    """
    try:
        workflow_id = workflow_manager.create_workflow(request.workflow)
        definition = workflow_manager.get_workflow(workflow_id)
        warnings = workflow_manager.validate_workflow(definition).warnings

        return CreateWorkflowResponse(
            workflow_id=workflow_id,
            message=f"Workflow '{definition.name}' created successfully",
            validation_warnings=warnings
        )

    except Exception as e:
        raise _http_error(e, "creating the workflow")


@router.get(
    "/workflows",
    response_model=List[WorkflowSummary],
    summary="List all workflows"
)
async def list_workflows(
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[WorkflowSummary]:
    try:
        return workflow_manager.list_workflows()
    except Exception as e:
        raise _http_error(e, "listing workflows")


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a workflow definition"
)
async def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    try:
        return workflow_manager.get_workflow(workflow_id)
    except Exception as e:
        raise _http_error(e, "retrieving the workflow")


@router.post(
    "/workflows/{workflow_id}/executions",
    response_model=TriggerRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Execute a workflow",
    description="Create a run of the workflow's current version and execute it in the background"
)
async def trigger_run(
    workflow_id: str,
    request: Optional[TriggerRunRequest] = None,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> TriggerRunResponse:
    """
    Start a run of a stored workflow.

    Args:
        workflow_id: Workflow to execute
        request: Invocation parameters and acting user
        execution_engine: Execution engine dependency

    Returns:
        The new run's ID; poll the status endpoint for progress

    Raises:
        HTTPException: 404 if the workflow does not exist
    """
    request = request or TriggerRunRequest()
    try:
        run = execution_engine.trigger(workflow_id, request.params, request.executing_user_id)
        execution_engine.start_run(run.id)

        return TriggerRunResponse(
            run_id=run.id,
            workflow_id=workflow_id,
            definition_version=run.definition_version,
            message="Workflow execution started"
        )

    except Exception as e:
        raise _http_error(e, "starting the workflow run")


@router.get(
    "/executions/{run_id}/status",
    response_model=ExecutionStatus,
    summary="Get run status",
    description="Per-node progress of a run as most recently persisted"
)
async def get_run_status(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionStatus:
    try:
        return execution_engine.get_status(run_id)
    except Exception as e:
        raise _http_error(e, "retrieving run status")


@router.get(
    "/executions/{run_id}/logs",
    response_model=List[LogEntry],
    summary="Get run logs",
    description="Execution log entries of a run in chronological order"
)
async def get_run_logs(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[LogEntry]:
    try:
        return execution_engine.get_execution_logs(run_id)
    except Exception as e:
        raise _http_error(e, "retrieving run logs")


@router.post(
    "/executions/{run_id}/cancel",
    response_model=CancelRunResponse,
    summary="Cancel a run"
)
async def cancel_run(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> CancelRunResponse:
    """
    Cancel an active run.

    Cancelling a run that is not active is not an error; the response says so.
    """
    try:
        execution_engine.get_status(run_id)
        cancelled = execution_engine.cancel_run(run_id)
    except Exception as e:
        raise _http_error(e, "cancelling the run")

    if not cancelled:
        return CancelRunResponse(
            run_id=run_id,
            cancelled=False,
            message=f"Run {run_id} is not active"
        )

    logger.info(f"Cancellation requested via API for run {run_id}")
    return CancelRunResponse(run_id=run_id, cancelled=True, message=f"Run {run_id} is being cancelled")


@router.delete(
    "/workflows/{workflow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a workflow",
    description="Delete a stored workflow definition; existing runs keep their own copy"
)
async def delete_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
):
    try:
        deleted = workflow_manager.delete_workflow(workflow_id)
    except Exception as e:
        raise _http_error(e, "deleting the workflow")

    if not deleted:
        raise _http_error(WorkflowNotFoundError(workflow_id), "deleting the workflow")

    logger.info(f"Deleted workflow {workflow_id}")
