"""Execution Engine: drives a run from its start node until its work queue drains."""

import json
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, Future
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set, Union

from ..models.core import (
    ExecutionNodeView, ExecutionRunView, ExecutionStatus, LogEntry, LogEventType,
    NodeStatus, WorkflowDefinition
)
from .exceptions import (
    ExecutionEngineError, NodeExecutionError, RunCancelledError, StorageError,
    WorkflowEngineError
)
from .graph_store import GraphStore
from .logging import get_logger, bind_run_context, clear_run_context, log_node_event
from .node_executors import ExecutionContext, NodeExecutorRegistry
from .query_runner import QueryRunner
from .readiness import ReadinessEvaluator
from .workflow_manager import WorkflowManager

logger = get_logger(__name__)


def _json_safe(value: Any) -> Any:
    """Round-trip through JSON so persisted results and state are plain data."""
    return json.loads(json.dumps(value, default=str))


class CancellationToken:
    """Checked by the run loop at the top of every iteration."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ExecutionEngine:
    """Dependency-gated scheduler over one run's persisted graph.

    Each run is processed sequentially by a single loop that owns its queue;
    separate runs share nothing and may execute in parallel.
    """

    def __init__(
        self,
        store: GraphStore,
        query_runner: Optional[QueryRunner] = None,
        executor_registry: Optional[NodeExecutorRegistry] = None,
        workflow_manager: Optional[WorkflowManager] = None,
        max_concurrent_runs: int = 10,
        abort_on_expression_error: bool = False
    ):
        """Initialize the execution engine.

        Args:
            store: Graph store runs are read from and written to
            query_runner: Runner used by query nodes
            executor_registry: Node executors by type; defaults to the built-in types
            workflow_manager: Source of stored definitions for ``trigger``
            max_concurrent_runs: Worker threads for background runs
            abort_on_expression_error: Let expression failures abort the run
                instead of recording them on the node
        """
        self.store = store
        self.query_runner = query_runner
        self.executors = executor_registry or NodeExecutorRegistry.with_builtin_types()
        self.workflow_manager = workflow_manager
        self.readiness = ReadinessEvaluator(store)
        self.abort_on_expression_error = abort_on_expression_error

        self._max_concurrent_runs = max_concurrent_runs
        self._pool = ThreadPoolExecutor(max_workers=max_concurrent_runs, thread_name_prefix="workflow-run")
        self._active_runs: Dict[str, Future] = {}
        self._cancel_tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.RLock()

        logger.info(f"ExecutionEngine initialized with max_concurrent_runs={max_concurrent_runs}")

    # Run creation

    def create_run(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        params: Optional[Dict[str, Any]] = None,
        executing_user_id: Optional[str] = None
    ) -> ExecutionRunView:
        """Instantiate a run from a definition. Definition errors are raised and no run is created."""
        return self.store.create_run(definition, params or {}, executing_user_id=executing_user_id)

    def trigger(
        self,
        workflow_id: str,
        params: Optional[Dict[str, Any]] = None,
        executing_user_id: Optional[str] = None
    ) -> ExecutionRunView:
        """Instantiate a run from the current version of a stored workflow."""
        if self.workflow_manager is None:
            raise ExecutionEngineError("No workflow manager configured", workflow_id=workflow_id)

        definition, version = self.workflow_manager.get_workflow_record(workflow_id)
        run = self.store.create_run(
            definition, params or {},
            workflow_id=workflow_id,
            definition_version=version,
            executing_user_id=executing_user_id
        )
        logger.info(f"Triggered run {run.id} for workflow {workflow_id} (version {version})")
        return run

    # Synchronous execution

    def execute(
        self,
        run_id: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """
        Execute a run to completion.

        Args:
            run_id: Run to execute
            params: Invocation parameters; defaults to those stored on the run
            cancel_token: Optional token; when set the run is marked aborted

        Returns:
            State captured by the last output node to fire, or {} if none did

        Raises:
            ExecutionEngineError: If the run already executed, was aborted, or has started
            RunCancelledError: If the token was set before the queue drained
            StorageError: If persistence fails; completed nodes stay recorded
        """
        run = self._get_runnable_run(run_id)
        start_node = self.store.get_node(run.start_node_id)
        if start_node.executed:
            raise ExecutionEngineError(f"Run {run_id} has already started; use resume()", run_id=run_id)

        params = run.params if params is None else params
        self.store.record_event(run.id, None, LogEventType.WORKFLOW_START,
                                f"Started run {run.id}", {"params": _json_safe(params)})
        logger.info(f"Started execution of run {run.id}")

        return self._drive(run, params, [start_node], {}, cancel_token)

    def resume(self, run_id: str, cancel_token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """
        Continue a partially executed run, e.g. after the process driving it died.

        The queue is rebuilt from every non-executed node whose predecessors
        have all executed and that a predecessor forwarded execution to.
        """
        run = self._get_runnable_run(run_id)

        seeds: List[ExecutionNodeView] = []
        final_result: Dict[str, Any] = {}
        last_output = None

        for node in self.store.list_nodes(run.id):
            if node.executed:
                if self._is_terminal(node.type) and (
                        last_output is None
                        or (node.executed_at or datetime.min) >= (last_output.executed_at or datetime.min)):
                    last_output = node
                continue
            _, is_ready = self.readiness.evaluate(node)
            if is_ready and self.readiness.is_activated(node, run.start_node_id):
                seeds.append(node)

        if last_output is not None:
            final_result = last_output.state

        logger.info(f"Resuming run {run.id} with {len(seeds)} ready node(s)")
        self.store.record_event(run.id, None, LogEventType.WORKFLOW_START,
                                f"Resumed run {run.id} with {len(seeds)} ready node(s)")

        return self._drive(run, run.params, seeds, final_result, cancel_token)

    def _get_runnable_run(self, run_id: str) -> ExecutionRunView:
        run = self.store.get_run(run_id)
        if run.executed:
            raise ExecutionEngineError(f"Run {run_id} has already executed", run_id=run_id)
        if run.aborted:
            raise ExecutionEngineError(f"Run {run_id} was aborted", run_id=run_id)
        return run

    def _is_terminal(self, node_type: str) -> bool:
        try:
            return self.executors.get(node_type).is_terminal
        except NodeExecutionError:
            return False

    def _drive(
        self,
        run: ExecutionRunView,
        params: Dict[str, Any],
        seeds: List[ExecutionNodeView],
        final_result: Dict[str, Any],
        cancel_token: Optional[CancellationToken]
    ) -> Dict[str, Any]:
        """The run loop.

        A node is queued once a predecessor has forwarded execution to it
        (``activated``) and none of its predecessors is left unexecuted
        (``pending`` reaches zero).
        """
        context = ExecutionContext(
            run, params, self.store.get_queries(run.id), self.query_runner,
            abort_on_expression_error=self.abort_on_expression_error
        )

        queue: Deque[ExecutionNodeView] = deque(seeds)
        queued: Set[str] = {node.id for node in seeds}
        activated: Set[str] = set(queued)
        pending: Dict[str, int] = {}
        executed_count = 0

        bind_run_context(run.id)
        try:
            while queue:
                if cancel_token is not None and cancel_token.cancelled:
                    self._abort(run.id, "Run cancelled", LogEventType.WORKFLOW_ABORTED)
                    raise RunCancelledError(run.id)

                queued_node = queue.popleft()
                queued.discard(queued_node.id)

                node = self.store.get_node(queued_node.id)
                if node.executed:
                    continue

                merged_state, is_ready = self.readiness.evaluate(node)
                if not is_ready:
                    # Requeued when its last predecessor completes
                    self.store.record_event(run.id, node.id, LogEventType.NODE_BLOCKED,
                                            f"Node {node.id_on_definition} is waiting on predecessors")
                    continue

                executor, outcome = self._execute_node(run, node, merged_state, context)

                state = _json_safe({**merged_state, **outcome.state_fragment})
                completed = self.store.update_node(
                    node.id, True, _json_safe(outcome.result), state, outcome.chosen_branch
                )
                executed_count += 1

                self.store.record_event(
                    run.id, node.id, LogEventType.NODE_COMPLETE,
                    f"Completed node {node.id_on_definition}"
                    + (" with a captured failure" if outcome.failed else ""),
                    completed.state
                )

                log_node_event(
                    logger, logging.WARNING if outcome.failed else logging.DEBUG,
                    f"Node {node.id_on_definition} completed",
                    chosen_branch=outcome.chosen_branch, failed=outcome.failed
                )

                if executor.is_terminal:
                    final_result = completed.state

                for successor_id in self._advance(run, node, outcome.chosen_branch, pending, activated):
                    if successor_id not in queued:
                        queue.append(self.store.get_node(successor_id))
                        queued.add(successor_id)

            self.store.mark_run_executed(run.id)
            self.store.record_event(run.id, None, LogEventType.WORKFLOW_COMPLETE,
                                    f"Run completed after executing {executed_count} node(s)",
                                    final_result)
            logger.info(f"Run {run.id} completed after executing {executed_count} node(s)")
            return final_result

        finally:
            clear_run_context()

    def _execute_node(self, run: ExecutionRunView, node: ExecutionNodeView,
                      merged_state: Dict[str, Any], context: ExecutionContext):
        """Dispatch one node to its executor. Errors here abort the run."""
        bind_run_context(run.id, node.id_on_definition, node.type)
        self.store.record_event(run.id, node.id, LogEventType.NODE_START,
                                f"Starting node {node.id_on_definition} ({node.type})")
        logger.debug(f"Executing node {node.id_on_definition} of type {node.type} for run {run.id}")

        try:
            executor = self.executors.get(node.type)
            return executor, executor.execute(node, merged_state, context)
        except StorageError:
            raise
        except WorkflowEngineError as e:
            self._fail_node(run.id, node, e)
            raise
        except Exception as e:
            self._fail_node(run.id, node, e)
            raise NodeExecutionError(
                f"Node {node.id_on_definition} execution failed: {str(e)}",
                node_id=node.id, run_id=run.id, node_type=node.type
            ) from e

    def _fail_node(self, run_id: str, node: ExecutionNodeView, error: Exception) -> None:
        message = f"Node {node.id_on_definition} failed: {str(error)}"
        logger.error(f"{message} (run {run_id})")
        self.store.record_event(run_id, node.id, LogEventType.NODE_ERROR, message)
        self._abort(run_id, message, LogEventType.WORKFLOW_ABORTED)

    def _abort(self, run_id: str, message: str, event_type: LogEventType) -> None:
        self.store.mark_run_aborted(run_id)
        self.store.record_event(run_id, None, event_type, message)
        logger.warning(f"Run {run_id} aborted: {message}")

    def _advance(
        self,
        run: ExecutionRunView,
        node: ExecutionNodeView,
        chosen_branch: Optional[str],
        pending: Dict[str, int],
        activated: Set[str]
    ) -> List[str]:
        """
        Account for a completed node and return the successors that became runnable.

        Every outgoing edge counts towards its target's readiness; only edges
        matching ``chosen_branch`` (all of them for non-branching nodes) forward
        execution.
        """
        forwarded = {edge.id for edge in self.store.find_outgoing_edges(node.id, chosen_branch)}

        edges_by_target: Dict[str, List[Any]] = {}
        for edge in self.store.find_outgoing_edges(node.id):
            edges_by_target.setdefault(edge.target_node_id, []).append(edge)

        runnable = []
        for target_id, edges in edges_by_target.items():
            if target_id in pending:
                pending[target_id] -= len(edges)
            else:
                # Counted after this node's completion was persisted
                pending[target_id] = self._unmet_predecessors(target_id)

            if any(edge.id in forwarded for edge in edges):
                activated.add(target_id)
            elif pending[target_id] <= 0 and target_id not in activated:
                # Forwarded by a predecessor that completed before a resume
                if self.readiness.is_activated(self.store.get_node(target_id), run.start_node_id):
                    activated.add(target_id)

            if target_id in activated and pending[target_id] <= 0:
                runnable.append(target_id)

        return runnable

    def _unmet_predecessors(self, node_id: str) -> int:
        return sum(
            1 for edge in self.store.find_incoming_edges(node_id)
            if not self.store.get_node(edge.source_node_id).executed
        )

    # Status and logs

    def get_status(self, run_id: str) -> ExecutionStatus:
        """
        Most recently persisted status of a run, usable while the run is in flight.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run = self.store.get_run(run_id)
        nodes = self.store.list_nodes(run_id)
        return ExecutionStatus(
            run_id=run.id,
            executed=run.executed,
            aborted=run.aborted,
            nodes=[
                NodeStatus(
                    id=node.id,
                    id_on_definition=node.id_on_definition,
                    type=node.type,
                    executed=node.executed,
                    result=node.result
                )
                for node in nodes
            ]
        )

    def get_execution_logs(self, run_id: str) -> List[LogEntry]:
        """Execution log entries of a run in chronological order."""
        return self.store.list_events(run_id)

    # Background execution

    def start_run(self, run_id: str, params: Optional[Dict[str, Any]] = None) -> Future:
        """
        Execute a run on the engine's worker pool.

        Returns:
            Future resolving to the run's final result
        """
        with self._lock:
            existing = self._active_runs.get(run_id)
            if existing is not None and not existing.done():
                raise ExecutionEngineError(f"Run {run_id} is already active", run_id=run_id)

            token = CancellationToken()
            future = self._pool.submit(self.execute, run_id, params, token)
            self._active_runs[run_id] = future
            self._cancel_tokens[run_id] = token

        future.add_done_callback(lambda done: self._on_run_finished(run_id, done))
        logger.info(f"Queued run {run_id} for background execution")
        return future

    def _on_run_finished(self, run_id: str, future: Future) -> None:
        with self._lock:
            self._active_runs.pop(run_id, None)
            self._cancel_tokens.pop(run_id, None)

        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background run {run_id} failed: {str(error)}")

    def cancel_run(self, run_id: str) -> bool:
        """
        Request cancellation of an active background run.

        Returns:
            True if the run was active and has been asked to stop
        """
        with self._lock:
            token = self._cancel_tokens.get(run_id)
            future = self._active_runs.get(run_id)

        if token is None or future is None or future.done():
            logger.warning(f"Attempted to cancel non-active run: {run_id}")
            return False

        token.cancel()
        if future.cancel():
            # Never started, so the loop will not get to mark it
            self._abort(run_id, "Run cancelled before it started", LogEventType.WORKFLOW_ABORTED)

        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Block until an active background run finishes; None if it is not active."""
        with self._lock:
            future = self._active_runs.get(run_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def is_run_active(self, run_id: str) -> bool:
        with self._lock:
            future = self._active_runs.get(run_id)
        return future is not None and not future.done()

    def get_active_runs(self) -> List[str]:
        with self._lock:
            return [run_id for run_id, future in self._active_runs.items() if not future.done()]

    def shutdown(self) -> None:
        """Cancel active runs and stop the worker pool."""
        for run_id in self.get_active_runs():
            self.cancel_run(run_id)
        self._pool.shutdown(wait=True)
        logger.info("ExecutionEngine shutdown completed")
