"""Execution graph store: durable representation of runs, their nodes and edges."""

import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    WorkflowDefinition, QueryDefinition, ExecutionRunView, ExecutionNodeView,
    ExecutionEdgeView, LogEntry, LogEventType
)
from ..storage.database import session_scope
from ..storage.models import (
    WorkflowExecutionModel, WorkflowExecutionNodeModel,
    WorkflowExecutionEdgeModel, LogEntryModel
)
from .error_recovery import with_retry, RetryConfig
from .exceptions import (
    DefinitionError, StorageError, StateManagementError,
    RunNotFoundError, NodeNotFoundError, WorkflowEngineError
)
from .logging import get_logger

logger = get_logger(__name__)

_STORE_RETRY = RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)


def parse_definition(definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
    """
    Turn a raw or already-built definition into a validated WorkflowDefinition.

    Raises:
        DefinitionError: If the definition is structurally invalid
    """
    if isinstance(definition, WorkflowDefinition):
        errors = definition.structure_errors()
        if errors:
            raise DefinitionError(
                f"Workflow definition is invalid: {'; '.join(errors)}",
                validation_errors=errors,
                workflow_name=definition.name
            )
        return definition

    try:
        return WorkflowDefinition.model_validate(definition)
    except ValidationError as e:
        errors = [error["msg"] for error in e.errors()]
        raise DefinitionError(
            f"Workflow definition is invalid: {'; '.join(errors)}",
            validation_errors=errors,
            workflow_name=(definition or {}).get("name")
        )


class GraphStore(ABC):
    """Contract the engine reads and writes runs through."""

    @abstractmethod
    def create_run(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        params: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
        definition_version: Optional[int] = None,
        executing_user_id: Optional[str] = None,
    ) -> ExecutionRunView:
        """Project a definition into a new run with instantiated nodes and edges."""

    @abstractmethod
    def get_run(self, run_id: str) -> ExecutionRunView:
        """Fetch a run."""

    @abstractmethod
    def get_node(self, node_id: str) -> ExecutionNodeView:
        """Fetch a node's current persisted state."""

    @abstractmethod
    def list_nodes(self, run_id: str) -> List[ExecutionNodeView]:
        """List a run's nodes in definition order."""

    @abstractmethod
    def update_node(
        self,
        node_id: str,
        executed: bool,
        result: Any,
        state: Dict[str, Any],
        chosen_branch: Optional[str] = None,
    ) -> ExecutionNodeView:
        """Atomically record a node's completion (flag, result and state together)."""

    @abstractmethod
    def find_incoming_edges(self, node_id: str) -> List[ExecutionEdgeView]:
        """Edges targeting the node, in edge enumeration order."""

    @abstractmethod
    def find_outgoing_edges(self, node_id: str, branch_label: Optional[str] = None) -> List[ExecutionEdgeView]:
        """Edges leaving the node, optionally only those carrying the branch label."""

    @abstractmethod
    def mark_run_executed(self, run_id: str) -> None:
        """Flag the run as completed."""

    @abstractmethod
    def mark_run_aborted(self, run_id: str) -> None:
        """Flag the run as aborted without completing it."""

    @abstractmethod
    def get_queries(self, run_id: str) -> List[QueryDefinition]:
        """The query catalog captured when the run was created."""

    @abstractmethod
    def record_event(
        self,
        run_id: str,
        node_id: Optional[str],
        event_type: LogEventType,
        message: str,
        state_snapshot: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an execution log entry."""

    @abstractmethod
    def list_events(self, run_id: str) -> List[LogEntry]:
        """Execution log entries in chronological order."""


class SqlGraphStore(GraphStore):
    """GraphStore backed by the SQLAlchemy storage models."""

    @contextmanager
    def _operation(self, operation: str, table: Optional[str] = None) -> Iterator[Any]:
        """Run a transactional unit, converting database failures into StorageError."""
        try:
            with session_scope() as db:
                yield db
        except WorkflowEngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}",
                               operation=operation, table=table)

    @with_retry(_STORE_RETRY)
    def create_run(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        params: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
        definition_version: Optional[int] = None,
        executing_user_id: Optional[str] = None,
    ) -> ExecutionRunView:
        """
        Create a run by projecting the definition into instantiated copies.

        Nodes, edges and the start-node reference are written in one transaction.

        Args:
            definition: Workflow definition (model or raw payload)
            params: Invocation parameters made available to the input node
            workflow_id: Stored workflow the definition came from, if any
            definition_version: Version of the stored workflow
            executing_user_id: User on whose behalf queries run

        Returns:
            Snapshot of the created run

        Raises:
            DefinitionError: If the definition is invalid; no run is created
            StorageError: If persisting the run fails
        """
        definition = parse_definition(definition)
        run_id = str(uuid.uuid4())
        now = datetime.utcnow()

        with self._operation("create_run", "workflow_executions") as db:
            run = WorkflowExecutionModel(
                id=run_id,
                workflow_id=workflow_id,
                definition_version=definition_version,
                executed=False,
                aborted=False,
                params=params or {},
                executing_user_id=executing_user_id,
                queries=[query.model_dump() for query in definition.queries],
                created_at=now,
                updated_at=now,
            )
            db.add(run)

            node_ids: Dict[str, str] = {}
            for position, node_def in enumerate(definition.nodes):
                node = WorkflowExecutionNodeModel(
                    id=str(uuid.uuid4()),
                    execution_id=run_id,
                    id_on_definition=node_def.id,
                    type=node_def.type,
                    definition=node_def.data,
                    executed=False,
                    state={},
                    position=position,
                    created_at=now,
                    updated_at=now,
                )
                db.add(node)
                node_ids[node_def.id] = node.id
            db.flush()

            for position, edge_def in enumerate(definition.edges):
                db.add(WorkflowExecutionEdgeModel(
                    id=str(uuid.uuid4()),
                    execution_id=run_id,
                    id_on_definition=edge_def.id,
                    source_node_id=node_ids[edge_def.source],
                    target_node_id=node_ids[edge_def.target],
                    source_handle=edge_def.source_handle,
                    position=position,
                    created_at=now,
                ))

            run.start_node_id = node_ids[definition.start_node.id]
            db.flush()
            view = self._run_view(run)

        logger.info(f"Created run {run_id} for workflow '{definition.name}' "
                    f"with {len(definition.nodes)} nodes and {len(definition.edges)} edges")
        return view

    @with_retry(_STORE_RETRY)
    def get_run(self, run_id: str) -> ExecutionRunView:
        with self._operation("get_run", "workflow_executions") as db:
            run = db.get(WorkflowExecutionModel, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            return self._run_view(run)

    @with_retry(_STORE_RETRY)
    def get_node(self, node_id: str) -> ExecutionNodeView:
        with self._operation("get_node", "workflow_execution_nodes") as db:
            node = db.get(WorkflowExecutionNodeModel, node_id)
            if node is None:
                raise NodeNotFoundError(node_id)
            return self._node_view(node)

    @with_retry(_STORE_RETRY)
    def list_nodes(self, run_id: str) -> List[ExecutionNodeView]:
        with self._operation("list_nodes", "workflow_execution_nodes") as db:
            if db.get(WorkflowExecutionModel, run_id) is None:
                raise RunNotFoundError(run_id)
            nodes = db.scalars(
                select(WorkflowExecutionNodeModel)
                .where(WorkflowExecutionNodeModel.execution_id == run_id)
                .order_by(WorkflowExecutionNodeModel.position)
            ).all()
            return [self._node_view(node) for node in nodes]

    @with_retry(_STORE_RETRY)
    def update_node(
        self,
        node_id: str,
        executed: bool,
        result: Any,
        state: Dict[str, Any],
        chosen_branch: Optional[str] = None,
    ) -> ExecutionNodeView:
        """
        Record a node's completion as a single conditional UPDATE.

        The write only applies to a node that has not executed yet, so a node's
        result and state are written exactly once.

        Raises:
            NodeNotFoundError: If the node does not exist
            StateManagementError: If the node has already executed
        """
        now = datetime.utcnow()
        with self._operation("update_node", "workflow_execution_nodes") as db:
            outcome = db.execute(
                update(WorkflowExecutionNodeModel)
                .where(
                    WorkflowExecutionNodeModel.id == node_id,
                    WorkflowExecutionNodeModel.executed.is_(False),
                )
                .values(
                    executed=executed,
                    result=result,
                    state=state,
                    chosen_branch=chosen_branch,
                    executed_at=now if executed else None,
                    updated_at=now,
                )
            )
            if outcome.rowcount == 0:
                node = db.get(WorkflowExecutionNodeModel, node_id)
                if node is None:
                    raise NodeNotFoundError(node_id)
                raise StateManagementError(
                    f"Node {node_id} has already executed",
                    run_id=node.execution_id,
                    operation="update_node"
                )
            node = db.get(WorkflowExecutionNodeModel, node_id)
            db.refresh(node)
            return self._node_view(node)

    @with_retry(_STORE_RETRY)
    def find_incoming_edges(self, node_id: str) -> List[ExecutionEdgeView]:
        with self._operation("find_incoming_edges", "workflow_execution_edges") as db:
            edges = db.scalars(
                select(WorkflowExecutionEdgeModel)
                .where(WorkflowExecutionEdgeModel.target_node_id == node_id)
                .order_by(WorkflowExecutionEdgeModel.position)
            ).all()
            return [self._edge_view(edge) for edge in edges]

    @with_retry(_STORE_RETRY)
    def find_outgoing_edges(self, node_id: str, branch_label: Optional[str] = None) -> List[ExecutionEdgeView]:
        with self._operation("find_outgoing_edges", "workflow_execution_edges") as db:
            query = select(WorkflowExecutionEdgeModel).where(WorkflowExecutionEdgeModel.source_node_id == node_id)
            if branch_label is not None:
                query = query.where(WorkflowExecutionEdgeModel.source_handle == branch_label)
            edges = db.scalars(query.order_by(WorkflowExecutionEdgeModel.position)).all()
            return [self._edge_view(edge) for edge in edges]

    @with_retry(_STORE_RETRY)
    def mark_run_executed(self, run_id: str) -> None:
        self._set_run_flag(run_id, "mark_run_executed", executed=True)
        logger.info(f"Marked run {run_id} as executed")

    @with_retry(_STORE_RETRY)
    def mark_run_aborted(self, run_id: str) -> None:
        self._set_run_flag(run_id, "mark_run_aborted", aborted=True)
        logger.info(f"Marked run {run_id} as aborted")

    def _set_run_flag(self, run_id: str, operation: str, **flags) -> None:
        with self._operation(operation, "workflow_executions") as db:
            run = db.get(WorkflowExecutionModel, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.executed:
                raise StateManagementError(
                    f"Run {run_id} has already executed and can no longer change",
                    run_id=run_id,
                    operation=operation
                )
            for name, value in flags.items():
                setattr(run, name, value)
            run.updated_at = datetime.utcnow()

    @with_retry(_STORE_RETRY)
    def get_queries(self, run_id: str) -> List[QueryDefinition]:
        with self._operation("get_queries", "workflow_executions") as db:
            run = db.get(WorkflowExecutionModel, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            return [QueryDefinition.model_validate(query) for query in run.queries or []]

    def record_event(
        self,
        run_id: str,
        node_id: Optional[str],
        event_type: LogEventType,
        message: str,
        state_snapshot: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an execution log entry. Failures are logged, never raised."""
        try:
            with self._operation("record_event", "log_entries") as db:
                db.add(LogEntryModel(
                    run_id=run_id,
                    node_id=node_id,
                    event_type=event_type.value,
                    message=message,
                    state_snapshot=state_snapshot,
                    timestamp=datetime.utcnow()
                ))
        except StorageError as e:
            logger.error(f"Failed to log execution event: {str(e)}")

    @with_retry(_STORE_RETRY)
    def list_events(self, run_id: str) -> List[LogEntry]:
        with self._operation("list_events", "log_entries") as db:
            if db.get(WorkflowExecutionModel, run_id) is None:
                raise RunNotFoundError(run_id)
            entries = db.scalars(
                select(LogEntryModel)
                .where(LogEntryModel.run_id == run_id)
                .order_by(LogEntryModel.timestamp, LogEntryModel.id)
            ).all()
            return [
                LogEntry(
                    timestamp=entry.timestamp,
                    run_id=entry.run_id,
                    node_id=entry.node_id,
                    event_type=LogEventType(entry.event_type),
                    message=entry.message,
                    state_snapshot=entry.state_snapshot
                )
                for entry in entries
            ]

    @staticmethod
    def _run_view(run: WorkflowExecutionModel) -> ExecutionRunView:
        return ExecutionRunView(
            id=run.id,
            workflow_id=run.workflow_id,
            definition_version=run.definition_version,
            start_node_id=run.start_node_id,
            executed=bool(run.executed),
            aborted=bool(run.aborted),
            params=run.params or {},
            executing_user_id=run.executing_user_id,
            created_at=run.created_at,
            updated_at=run.updated_at,
        )

    @staticmethod
    def _node_view(node: WorkflowExecutionNodeModel) -> ExecutionNodeView:
        return ExecutionNodeView(
            id=node.id,
            run_id=node.execution_id,
            id_on_definition=node.id_on_definition,
            type=node.type,
            definition=node.definition or {},
            executed=bool(node.executed),
            result=node.result,
            state=node.state or {},
            chosen_branch=node.chosen_branch,
            executed_at=node.executed_at,
        )

    @staticmethod
    def _edge_view(edge: WorkflowExecutionEdgeModel) -> ExecutionEdgeView:
        return ExecutionEdgeView(
            id=edge.id,
            run_id=edge.execution_id,
            id_on_definition=edge.id_on_definition,
            source_node_id=edge.source_node_id,
            target_node_id=edge.target_node_id,
            source_handle=edge.source_handle,
            position=edge.position,
        )
