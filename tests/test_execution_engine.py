"""Tests for the execution engine's run loop."""

import threading
from collections import Counter

import pytest

from workflow_engine.core.exceptions import (
    ExecutionEngineError, ExpressionError, NodeExecutionError, QueryExecutionError,
    RunCancelledError, WorkflowNotFoundError
)
from workflow_engine.core.execution_engine import CancellationToken, ExecutionEngine
from workflow_engine.models.core import LogEventType

from conftest import (
    FakeQueryRunner, start, query_node, condition, output, edge, catalog_query, definition,
    node_by_definition_id
)


def branching_definition(code="B.result > 0"):
    return definition(
        "branching",
        [start("A"), query_node("B", "q1"), condition("C", code), output("D"), output("E")],
        [edge("A", "B"), edge("B", "C"), edge("C", "D", "true"), edge("C", "E", "false")],
        [catalog_query("q1", "B", {"limit": "{{startTrigger.params.limit}}"})]
    )


def executed_ids(store, run_id):
    return {node.id_on_definition for node in store.list_nodes(run_id) if node.executed}


class TestScenarios:
    """End-to-end runs of the branching workflow."""

    def test_true_branch(self, engine, store, query_runner):
        query_runner.handlers["B"] = lambda options: {"result": 5}
        run = engine.create_run(branching_definition(), {"limit": 10})

        result = engine.execute(run.id)

        assert result["B"] == {"result": 5}
        assert result["startTrigger"] == {"params": {"limit": 10}}
        assert executed_ids(store, run.id) == {"A", "B", "C", "D"}
        assert node_by_definition_id(store, run.id, "E").executed is False
        assert node_by_definition_id(store, run.id, "C").result is True
        assert store.get_run(run.id).executed
        assert query_runner.calls[0]["options"] == {"limit": 10}

    def test_scalar_query_result_takes_false_branch(self, engine, store, query_runner):
        # `B.result` cannot be read from a bare number, so the condition fails
        query_runner.handlers["B"] = lambda options: 5
        run = engine.create_run(branching_definition(), {"limit": 10})

        result = engine.execute(run.id)

        assert result["B"] == 5
        assert executed_ids(store, run.id) == {"A", "B", "C", "E"}
        assert node_by_definition_id(store, run.id, "D").executed is False

        condition_node = node_by_definition_id(store, run.id, "C")
        assert condition_node.chosen_branch == "false"
        assert condition_node.result["status"] == "failed"
        assert condition_node.result["exception"]["type"] == "ExpressionError"
        assert "result" in condition_node.result["exception"]["message"]
        assert store.get_run(run.id).executed

    def test_scalar_query_result_with_scalar_condition(self, engine, store, query_runner):
        query_runner.handlers["B"] = lambda options: 5
        run = engine.create_run(branching_definition("B > 0"))

        result = engine.execute(run.id)

        assert result["B"] == 5
        assert executed_ids(store, run.id) == {"A", "B", "C", "D"}

    def test_false_branch(self, engine, store, query_runner):
        query_runner.handlers["B"] = lambda options: {"result": -1}
        run = engine.create_run(branching_definition(), {"limit": 10})

        engine.execute(run.id)

        assert executed_ids(store, run.id) == {"A", "B", "C", "E"}
        assert node_by_definition_id(store, run.id, "C").chosen_branch == "false"

    def test_query_failure_continues_to_false_branch(self, engine, store, query_runner):
        def failing(options):
            raise QueryExecutionError("connection refused", query_name="B")

        query_runner.handlers["B"] = failing
        run = engine.create_run(branching_definition())

        result = engine.execute(run.id)

        assert result["B"]["status"] == "failed"
        assert result["B"]["exception"]["message"] == "connection refused"
        assert executed_ids(store, run.id) == {"A", "B", "C", "E"}

        condition_node = node_by_definition_id(store, run.id, "C")
        assert condition_node.result["status"] == "failed"
        assert condition_node.result["exception"]["type"] == "ExpressionError"
        assert store.get_run(run.id).executed

    def test_expression_failure_aborts_in_abort_mode(self, store, query_runner):
        def failing(options):
            raise QueryExecutionError("connection refused")

        query_runner.handlers["B"] = failing
        engine = ExecutionEngine(store, query_runner, abort_on_expression_error=True)
        run = engine.create_run(branching_definition())

        with pytest.raises(ExpressionError):
            engine.execute(run.id)

        persisted = store.get_run(run.id)
        assert persisted.aborted and not persisted.executed
        assert executed_ids(store, run.id) == {"A", "B"}
        events = [event.event_type for event in store.list_events(run.id)]
        assert LogEventType.NODE_ERROR in events
        assert events[-1] == LogEventType.WORKFLOW_ABORTED
        engine.shutdown()

    def test_execution_log(self, engine, store, query_runner):
        query_runner.handlers["B"] = lambda options: {"result": 5}
        run = engine.create_run(branching_definition())
        engine.execute(run.id)

        events = [event.event_type for event in engine.get_execution_logs(run.id)]
        assert events[0] == LogEventType.WORKFLOW_START
        assert events[-1] == LogEventType.WORKFLOW_COMPLETE
        assert events.count(LogEventType.NODE_START) == 4
        assert events.count(LogEventType.NODE_COMPLETE) == 4


class TestSchedulingProperties:
    """Termination, readiness and branching guarantees of the run loop."""

    def test_join_runs_once_after_all_predecessors(self, engine, store):
        nodes = [start("A"), query_node("B", "qb"), query_node("C", "qc"), output("J")]
        edges = [edge("A", "B"), edge("A", "C"), edge("B", "J"), edge("C", "J")]
        queries = [catalog_query("qb", "left"), catalog_query("qc", "right")]
        run = engine.create_run(definition("join", nodes, edges, queries))

        result = engine.execute(run.id)

        assert set(result) == {"startTrigger", "left", "right"}
        completions = Counter(
            event.node_id for event in store.list_events(run.id) if event.event_type == LogEventType.NODE_COMPLETE
        )
        assert set(completions.values()) == {1}
        assert len(completions) == 4

    def test_merge_is_last_writer_wins_in_edge_order(self, engine, query_runner):
        # Both queries write the same key; J lists C's edge before B's
        nodes = [start("A"), query_node("B", "q1"), query_node("C", "q2"), output("J")]
        edges = [edge("A", "B"), edge("A", "C"), edge("C", "J"), edge("B", "J")]
        queries = [catalog_query("q1", "shared"), catalog_query("q2", "shared")]
        run = engine.create_run(definition("merge", nodes, edges, queries))

        query_runner.handlers["shared"] = lambda options: {"who": len(query_runner.calls)}
        result = engine.execute(run.id)

        # B ran first (call 1), C second (call 2); edge order puts B's state last
        assert result["shared"] == {"who": 1}

    def test_join_below_untaken_branch_terminates(self, engine, store, query_runner):
        nodes = [start("A"), condition("C", "false"), output("X"), output("Y"), output("J")]
        edges = [
            edge("A", "C"), edge("C", "X", "true"), edge("C", "Y", "false"),
            edge("X", "J"), edge("Y", "J"),
        ]
        run = engine.create_run(definition("untaken-join", nodes, edges))

        result = engine.execute(run.id)

        assert executed_ids(store, run.id) == {"A", "C", "Y"}
        assert node_by_definition_id(store, run.id, "J").executed is False
        assert "startTrigger" in result
        assert store.get_run(run.id).executed

    def test_chained_outputs_last_one_wins(self, engine, store):
        nodes = [start("A"), output("Y"), query_node("B", "q1"), output("Z")]
        edges = [edge("A", "Y"), edge("Y", "B"), edge("B", "Z")]
        run = engine.create_run(definition("chained", nodes, edges, [catalog_query("q1", "B")]))

        result = engine.execute(run.id)

        assert "B" in result
        assert result == node_by_definition_id(store, run.id, "Z").state

    def test_run_without_output_returns_empty_result(self, engine):
        nodes = [start("A"), query_node("B", "q1")]
        run = engine.create_run(definition("no-output", nodes, [edge("A", "B")], [catalog_query("q1", "B")]))
        assert engine.execute(run.id) == {}

    def test_runs_do_not_share_state(self, engine, store):
        first = engine.create_run(branching_definition(), {"limit": 1})
        second = engine.create_run(branching_definition(), {"limit": 2})

        engine.execute(first.id)
        engine.execute(second.id)

        first_b = node_by_definition_id(store, first.id, "B")
        second_b = node_by_definition_id(store, second.id, "B")
        assert first_b.result["options"] == {"limit": 1}
        assert second_b.result["options"] == {"limit": 2}

    def test_execute_twice_is_rejected(self, engine):
        run = engine.create_run(branching_definition())
        engine.execute(run.id)

        with pytest.raises(ExecutionEngineError):
            engine.execute(run.id)

    def test_unknown_node_type_aborts_run(self, engine, store):
        nodes = [start("A"), {"id": "W", "type": "webhook", "data": {}}]
        run = engine.create_run(definition("unknown-type", nodes, [edge("A", "W")]))

        with pytest.raises(NodeExecutionError):
            engine.execute(run.id)

        assert store.get_run(run.id).aborted
        assert executed_ids(store, run.id) == {"A"}


class TestResumeAndCancellation:
    """Resuming partial runs, cancellation and mid-run status."""

    def test_resume_after_partial_run(self, engine, store, query_runner):
        query_runner.handlers["B"] = lambda options: {"result": 5}
        run = engine.create_run(branching_definition(), {"limit": 4})

        # The process driving the run died after the start node completed
        store.update_node(run.start_node_id, True, None, {"startTrigger": {"params": {"limit": 4}}})

        result = engine.resume(run.id)

        assert result["B"] == {"result": 5}
        assert executed_ids(store, run.id) == {"A", "B", "C", "D"}
        assert query_runner.calls[0]["options"] == {"limit": 4}

    def test_resume_seeds_result_from_executed_output(self, engine, store):
        nodes = [start("A"), output("Y"), query_node("B", "q1")]
        run = engine.create_run(definition("resume-output", nodes, [edge("A", "Y"), edge("Y", "B")],
                                           [catalog_query("q1", "B")]))

        store.update_node(run.start_node_id, True, None, {"startTrigger": {"params": {}}})
        y = node_by_definition_id(store, run.id, "Y")
        store.update_node(y.id, True, {"startTrigger": {"params": {}}}, {"startTrigger": {"params": {}}})

        assert engine.resume(run.id) == {"startTrigger": {"params": {}}}
        assert executed_ids(store, run.id) == {"A", "Y", "B"}

    def test_execute_refuses_started_run(self, engine, store):
        run = engine.create_run(branching_definition())
        store.update_node(run.start_node_id, True, None, {})

        with pytest.raises(ExecutionEngineError):
            engine.execute(run.id)

    def test_cancel_before_first_node(self, engine, store):
        run = engine.create_run(branching_definition())
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RunCancelledError):
            engine.execute(run.id, cancel_token=token)

        persisted = store.get_run(run.id)
        assert persisted.aborted and not persisted.executed
        assert executed_ids(store, run.id) == set()
        assert store.list_events(run.id)[-1].event_type == LogEventType.WORKFLOW_ABORTED

    def test_cancel_mid_run(self, engine, store, query_runner):
        token = CancellationToken()

        def cancel_then_answer(options):
            token.cancel()
            return {"result": 5}

        query_runner.handlers["B"] = cancel_then_answer
        run = engine.create_run(branching_definition())

        with pytest.raises(RunCancelledError):
            engine.execute(run.id, cancel_token=token)

        assert executed_ids(store, run.id) == {"A", "B"}
        with pytest.raises(ExecutionEngineError):
            engine.resume(run.id)

    def test_status_mid_run(self, engine, query_runner):
        observed = {}
        run = engine.create_run(branching_definition())

        def snapshot(options):
            observed["status"] = engine.get_status(run.id)
            return {"result": 5}

        query_runner.handlers["B"] = snapshot
        engine.execute(run.id)

        mid_run = {node.id_on_definition: node.executed for node in observed["status"].nodes}
        assert mid_run == {"A": True, "B": False, "C": False, "D": False, "E": False}
        assert not observed["status"].executed

        final = engine.get_status(run.id)
        assert final.executed
        assert {node.id_on_definition for node in final.nodes if node.executed} == {"A", "B", "C", "D"}


class TestTriggerAndBackgroundRuns:
    """Runs created from stored workflows and executed on the worker pool."""

    def test_trigger_uses_current_version(self, engine, workflow_manager, store):
        workflow_id = workflow_manager.create_workflow(branching_definition())
        first = engine.trigger(workflow_id, {"limit": 1}, executing_user_id="user-1")
        assert first.definition_version == 1

        updated = branching_definition("B.result > 100")
        assert workflow_manager.update_workflow(workflow_id, updated) == 2

        second = engine.trigger(workflow_id)
        assert second.definition_version == 2
        assert node_by_definition_id(store, first.id, "C").definition["code"] == "B.result > 0"
        assert node_by_definition_id(store, second.id, "C").definition["code"] == "B.result > 100"

    def test_trigger_unknown_workflow(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            engine.trigger("missing")

    def test_background_run(self, engine, store, query_runner):
        query_runner.handlers["B"] = lambda options: {"result": 5}
        run = engine.create_run(branching_definition())

        future = engine.start_run(run.id)
        result = future.result(timeout=10)

        assert result["B"] == {"result": 5}
        assert store.get_run(run.id).executed
        assert engine.wait_for_run(run.id) in (None, result)

    def test_cancel_background_run(self, engine, store, query_runner):
        started = threading.Event()
        release = threading.Event()

        def blocking(options):
            started.set()
            release.wait(timeout=10)
            return {"result": 5}

        query_runner.handlers["B"] = blocking
        run = engine.create_run(branching_definition())
        future = engine.start_run(run.id)

        assert started.wait(timeout=10)
        assert engine.is_run_active(run.id)
        assert engine.cancel_run(run.id) is True
        release.set()

        with pytest.raises(RunCancelledError):
            future.result(timeout=10)
        assert store.get_run(run.id).aborted
        assert executed_ids(store, run.id) == {"A", "B"}

    def test_cancel_inactive_run(self, engine):
        assert engine.cancel_run("not-running") is False
