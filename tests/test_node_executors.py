"""Tests for node executors and the executor registry."""

import pytest

from workflow_engine.core.exceptions import ExpressionError, NodeExecutionError, QueryExecutionError
from workflow_engine.core.node_executors import (
    ExecutionContext, NodeExecutor, NodeExecutorRegistry, failure_payload
)
from workflow_engine.core.query_runner import RegistryQueryRunner
from workflow_engine.models.core import (
    ExecutionNodeView, ExecutionRunView, NodeOutcome, QueryDefinition
)

from conftest import FakeQueryRunner


def _node(node_type, data=None, node_id="n1"):
    return ExecutionNodeView(id=f"exec-{node_id}", run_id="run-1", id_on_definition=node_id,
                             type=node_type, definition=data or {})


def _context(query_runner=None, queries=None, abort=False):
    run = ExecutionRunView(id="run-1", start_node_id="exec-A", executing_user_id="user-1")
    return ExecutionContext(run, {"limit": 3}, queries or [], query_runner, abort_on_expression_error=abort)


QUERY = QueryDefinition(id="q1", name="B", kind="static", options={"limit": "{{startTrigger.params.limit}}"})


@pytest.fixture
def registry():
    return NodeExecutorRegistry.with_builtin_types()


class TestBuiltinExecutors:
    """Test cases for the built-in node types."""

    def test_input_exposes_params(self, registry):
        outcome = registry.get("input").execute(_node("input"), {}, _context())
        assert outcome.state_fragment == {"startTrigger": {"params": {"limit": 3}}}
        assert outcome.chosen_branch is None

    def test_query_binds_options_and_stores_under_query_name(self, registry):
        runner = FakeQueryRunner({"B": lambda options: {"result": options["limit"] * 2}})
        node = _node("query", {"query_id": "q1"})
        state = {"startTrigger": {"params": {"limit": 3}}}

        outcome = registry.get("query").execute(node, state, _context(runner, [QUERY]))

        assert outcome.result == {"result": 6}
        assert outcome.state_fragment == {"B": {"result": 6}}
        assert not outcome.failed
        assert runner.calls == [{"user": "user-1", "query": "B", "options": {"limit": 3}}]

    def test_query_failure_is_captured(self, registry):
        def failing(options):
            raise QueryExecutionError("connection refused", query_name="B")

        outcome = registry.get("query").execute(
            _node("query", {"query_id": "q1"}), {}, _context(FakeQueryRunner({"B": failing}), [QUERY])
        )

        assert outcome.failed
        assert outcome.state_fragment["B"]["status"] == "failed"
        assert outcome.state_fragment["B"]["exception"]["type"] == "QueryExecutionError"
        assert outcome.state_fragment["B"]["exception"]["message"] == "connection refused"

    def test_binding_failure_is_captured_like_a_query_failure(self, registry):
        broken = QueryDefinition(id="q1", name="B", kind="static", options={"x": "{{1 / 0}}"})
        runner = FakeQueryRunner()

        outcome = registry.get("query").execute(_node("query", {"query_id": "q1"}), {}, _context(runner, [broken]))

        assert outcome.failed
        assert outcome.result["exception"]["type"] == "ExpressionError"
        assert runner.calls == []

    def test_binding_failure_propagates_in_abort_mode(self, registry):
        broken = QueryDefinition(id="q1", name="B", kind="static", options={"x": "{{1 / 0}}"})
        with pytest.raises(ExpressionError):
            registry.get("query").execute(
                _node("query", {"query_id": "q1"}), {}, _context(FakeQueryRunner(), [broken], abort=True)
            )

    def test_query_missing_from_catalog_raises(self, registry):
        with pytest.raises(NodeExecutionError):
            registry.get("query").execute(_node("query", {"query_id": "nope"}), {}, _context(FakeQueryRunner()))

    @pytest.mark.parametrize("code, branch", [("B.result > 0", "true"), ("B.result > 10", "false")])
    def test_if_condition_chooses_branch(self, registry, code, branch):
        outcome = registry.get("if-condition").execute(
            _node("if-condition", {"code": code}), {"B": {"result": 5}}, _context()
        )
        assert outcome.chosen_branch == branch
        assert outcome.result is (branch == "true")

    def test_if_condition_failure_takes_false_branch(self, registry):
        outcome = registry.get("if-condition").execute(
            _node("if-condition", {"code": "B.result >"}), {}, _context()
        )
        assert outcome.chosen_branch == "false"
        assert outcome.failed
        assert outcome.result["status"] == "failed"

    def test_output_captures_merged_state(self, registry):
        outcome = registry.get("output").execute(_node("output"), {"B": {"result": 5}}, _context())
        assert outcome.result == {"B": {"result": 5}}
        assert registry.get("output").is_terminal


class TestNodeExecutorRegistry:
    """Test cases for NodeExecutorRegistry."""

    def test_builtin_types(self, registry):
        assert registry.node_types() == ["if-condition", "input", "output", "query"]

    def test_unknown_type(self, registry):
        with pytest.raises(NodeExecutionError):
            registry.get("webhook")

    def test_register_extension_type(self, registry):
        class ConstantExecutor(NodeExecutor):
            node_type = "constant"

            def execute(self, node, merged_state, context):
                return NodeOutcome(state_fragment={node.id_on_definition: node.definition.get("value")})

        registry.register(ConstantExecutor())
        outcome = registry.get("constant").execute(_node("constant", {"value": 7}, "K"), {}, _context())
        assert outcome.state_fragment == {"K": 7}

        with pytest.raises(NodeExecutionError):
            registry.register(ConstantExecutor())
        registry.register(ConstantExecutor(), replace=True)


class TestRegistryQueryRunner:
    """Test cases for RegistryQueryRunner."""

    def test_dispatch_by_kind(self):
        runner = RegistryQueryRunner()
        runner.register_handler("static", lambda user, query, options: options["value"], "Static value")

        assert runner.run_query(None, QUERY, {"value": 42}) == 42
        assert runner.list_handlers() == {"static": "Static value"}

    def test_duplicate_and_unknown_kinds(self):
        runner = RegistryQueryRunner()
        runner.register_handler("static", lambda user, query, options: None)

        with pytest.raises(QueryExecutionError):
            runner.register_handler("static", lambda user, query, options: None)
        with pytest.raises(QueryExecutionError):
            runner.register_handler("sql", "not callable")
        with pytest.raises(QueryExecutionError):
            runner.run_query(None, QueryDefinition(id="q", name="n", kind="sql"), {})

    def test_unregister_handler(self):
        runner = RegistryQueryRunner()
        runner.register_handler("static", lambda user, query, options: None)

        assert runner.unregister_handler("static")
        assert not runner.handler_exists("static")
        assert not runner.unregister_handler("static")

    def test_failure_payload_shape(self):
        payload = failure_payload(ValueError("boom"))
        assert payload == {"status": "failed", "exception": {"type": "ValueError", "message": "boom"}}
