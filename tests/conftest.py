"""Pytest configuration and fixtures."""

import os
import tempfile
from typing import Any, Callable, Dict, List, Optional

import pytest

from workflow_engine.core.execution_engine import ExecutionEngine
from workflow_engine.core.graph_store import SqlGraphStore
from workflow_engine.core.query_runner import QueryRunner
from workflow_engine.core.workflow_manager import WorkflowManager
from workflow_engine.models.core import QueryDefinition
from workflow_engine.storage.database import init_database, create_tables, reset_database_engine


@pytest.fixture
def temp_db():
    """Create a temporary SQLite database bound to the storage layer."""
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(db_fd)

    init_database(f'sqlite:///{db_path}')
    create_tables()

    yield db_path

    reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


class FakeQueryRunner(QueryRunner):
    """Query runner driven by per-query-name callables; records every call."""

    def __init__(self, handlers: Optional[Dict[str, Callable[[Dict[str, Any]], Any]]] = None):
        self.handlers = handlers or {}
        self.calls: List[Dict[str, Any]] = []

    def run_query(self, acting_user, query: QueryDefinition, options: Dict[str, Any]) -> Any:
        self.calls.append({"user": acting_user, "query": query.name, "options": options})
        handler = self.handlers.get(query.name)
        if handler is None:
            return {"query": query.name, "options": options}
        return handler(options)


@pytest.fixture
def query_runner():
    return FakeQueryRunner()


@pytest.fixture
def store(temp_db):
    return SqlGraphStore()


@pytest.fixture
def workflow_manager(temp_db):
    return WorkflowManager()


@pytest.fixture
def engine(store, query_runner, workflow_manager):
    """Create an ExecutionEngine instance for testing."""
    execution_engine = ExecutionEngine(
        store=store,
        query_runner=query_runner,
        workflow_manager=workflow_manager,
        max_concurrent_runs=2
    )
    yield execution_engine
    execution_engine.shutdown()


# Definition builders

def start(node_id: str = "A") -> Dict[str, Any]:
    return {"id": node_id, "type": "input", "data": {"node_type": "start"}}


def query_node(node_id: str, query_id: str) -> Dict[str, Any]:
    return {"id": node_id, "type": "query", "data": {"query_id": query_id}}


def condition(node_id: str, code: str) -> Dict[str, Any]:
    return {"id": node_id, "type": "if-condition", "data": {"code": code}}


def output(node_id: str) -> Dict[str, Any]:
    return {"id": node_id, "type": "output", "data": {}}


def edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    return {"source": source, "target": target, "source_handle": handle}


def catalog_query(query_id: str, name: str, options: Optional[Dict[str, Any]] = None,
                  kind: str = "static") -> Dict[str, Any]:
    return {"id": query_id, "name": name, "kind": kind, "options": options or {}}


def definition(name: str, nodes, edges, queries=None) -> Dict[str, Any]:
    return {"name": name, "nodes": nodes, "edges": edges, "queries": queries or []}


def node_by_definition_id(store, run_id: str, id_on_definition: str):
    for node in store.list_nodes(run_id):
        if node.id_on_definition == id_on_definition:
            return node
    raise AssertionError(f"No node {id_on_definition} in run {run_id}")
