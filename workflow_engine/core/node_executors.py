"""Node executors: type-specific behavior, registered by node type tag."""

from typing import Any, Dict, List, Optional

from ..models.core import (
    ExecutionNodeView, ExecutionRunView, NodeOutcome, NodeType, QueryDefinition,
    BRANCH_TRUE, BRANCH_FALSE
)
from .exceptions import ExpressionError, NodeExecutionError, describe_exception
from .expressions import resolve_expression, resolve_variables
from .logging import get_logger
from .query_runner import QueryRunner

logger = get_logger(__name__)


class ExecutionContext:
    """Per-run context handed to node executors."""

    def __init__(
        self,
        run: ExecutionRunView,
        params: Dict[str, Any],
        queries: List[QueryDefinition],
        query_runner: Optional[QueryRunner],
        abort_on_expression_error: bool = False
    ):
        self.run = run
        self.run_id = run.id
        self.params = params
        self.queries = {query.id: query for query in queries}
        self.query_runner = query_runner
        self.acting_user = run.executing_user_id
        self.abort_on_expression_error = abort_on_expression_error


def failure_payload(error: BaseException) -> Dict[str, Any]:
    """The shape a captured failure takes in node state and results."""
    return {"status": "failed", "exception": describe_exception(error)}


class NodeExecutor:
    """Base class for node type implementations.

    ``is_terminal`` executors produce the run's final result.
    """

    node_type: str = ""
    is_terminal: bool = False

    def execute(self, node: ExecutionNodeView, merged_state: Dict[str, Any], context: ExecutionContext) -> NodeOutcome:
        raise NotImplementedError


class InputNodeExecutor(NodeExecutor):
    """Start of a run: exposes the invocation parameters as ``startTrigger.params``."""

    node_type = NodeType.INPUT.value

    def execute(self, node, merged_state, context):
        return NodeOutcome(result=None, state_fragment={"startTrigger": {"params": context.params}})


class QueryNodeExecutor(NodeExecutor):
    """Runs a catalog query; a failing query is recorded as data and the run continues."""

    node_type = NodeType.QUERY.value

    def execute(self, node, merged_state, context):
        query_id = node.definition.get("query_id")
        query = context.queries.get(query_id)
        if query is None:
            raise NodeExecutionError(
                f"Query '{query_id}' referenced by node {node.id_on_definition} is not in the catalog",
                node_id=node.id, run_id=context.run_id, node_type=node.type
            )

        try:
            options = resolve_variables(query.options, merged_state)
        except ExpressionError as e:
            if context.abort_on_expression_error:
                raise
            logger.warning(f"Failed to bind variables for query '{query.name}' "
                           f"on node {node.id_on_definition}: {e.message}")
            return self._failed(query, e)

        if context.query_runner is None:
            return self._failed(query, NodeExecutionError(
                "No query runner configured", node_id=node.id, run_id=context.run_id
            ))

        try:
            result = context.query_runner.run_query(context.acting_user, query, options)
        except Exception as e:
            logger.warning(f"Query '{query.name}' failed on node {node.id_on_definition}: {str(e)}")
            return self._failed(query, e)

        return NodeOutcome(result=result, state_fragment={query.name: result})

    @staticmethod
    def _failed(query: QueryDefinition, error: BaseException) -> NodeOutcome:
        payload = failure_payload(error)
        return NodeOutcome(result=payload, state_fragment={query.name: payload}, failed=True)


class IfConditionNodeExecutor(NodeExecutor):
    """Evaluates ``data.code`` and picks the ``"true"`` or ``"false"`` outgoing edge."""

    node_type = NodeType.IF_CONDITION.value

    def execute(self, node, merged_state, context):
        code = node.definition.get("code") or ""

        try:
            value = resolve_expression(code, merged_state)
        except ExpressionError as e:
            if context.abort_on_expression_error:
                raise
            logger.warning(f"Condition on node {node.id_on_definition} failed, "
                           f"taking the '{BRANCH_FALSE}' branch: {e.message}")
            return NodeOutcome(result=failure_payload(e), chosen_branch=BRANCH_FALSE, failed=True)

        passed = bool(value)
        return NodeOutcome(result=passed, chosen_branch=BRANCH_TRUE if passed else BRANCH_FALSE)


class OutputNodeExecutor(NodeExecutor):
    """Terminal node: its merged state becomes the run's final result."""

    node_type = NodeType.OUTPUT.value
    is_terminal = True

    def execute(self, node, merged_state, context):
        return NodeOutcome(result=dict(merged_state))


class NodeExecutorRegistry:
    """Lookup table of node executors keyed by node type tag."""

    def __init__(self):
        self._executors: Dict[str, NodeExecutor] = {}

    @classmethod
    def with_builtin_types(cls) -> 'NodeExecutorRegistry':
        """Registry preloaded with the input, query, if-condition and output executors."""
        registry = cls()
        for executor in (InputNodeExecutor(), QueryNodeExecutor(), IfConditionNodeExecutor(), OutputNodeExecutor()):
            registry.register(executor)
        return registry

    def register(self, executor: NodeExecutor, node_type: Optional[str] = None, replace: bool = False) -> None:
        """Register an executor under its ``node_type`` (or an explicit tag)."""
        type_tag = (node_type or executor.node_type or "").strip()
        if not type_tag:
            raise NodeExecutionError("Node executor must declare a node type")
        if type_tag in self._executors and not replace:
            raise NodeExecutionError(f"Node type '{type_tag}' is already registered", node_type=type_tag)
        self._executors[type_tag] = executor
        logger.debug(f"Registered executor for node type '{type_tag}'")

    def get(self, node_type: str) -> NodeExecutor:
        executor = self._executors.get(node_type)
        if executor is None:
            raise NodeExecutionError(f"No executor registered for node type '{node_type}'", node_type=node_type)
        return executor

    def node_types(self) -> List[str]:
        return sorted(self._executors)
