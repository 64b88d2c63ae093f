"""Core Pydantic models for the workflow execution engine."""

import re
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, Field, field_validator, model_validator


_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]+$')


class NodeType(str, Enum):
    """Built-in node types. Other type tags may be registered with the executor registry."""
    INPUT = "input"
    QUERY = "query"
    IF_CONDITION = "if-condition"
    OUTPUT = "output"


BRANCH_TRUE = "true"
BRANCH_FALSE = "false"
BRANCH_LABELS = (BRANCH_TRUE, BRANCH_FALSE)
START_ROLE = "start"


class LogEventType(str, Enum):
    """Enumeration of log event types."""
    WORKFLOW_START = "workflow_start"
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_BLOCKED = "node_blocked"
    NODE_ERROR = "node_error"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_ABORTED = "workflow_aborted"


class ValidationResult(BaseModel):
    """Result of workflow definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node within the definition")
    type: str = Field(..., description="Node type tag, e.g. input, query, if-condition, output")
    data: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not _ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, '_', '-', '.' and ':'")
        return id_value.strip()

    @field_validator('type')
    @classmethod
    def validate_type(cls, type_value):
        """Ensure node type is not empty."""
        if not type_value or not type_value.strip():
            raise ValueError("Node type cannot be empty")
        return type_value.strip()

    @property
    def is_start(self) -> bool:
        """Whether this node is the designated start node."""
        return self.data.get("node_type") == START_ROLE


class EdgeDefinition(BaseModel):
    """Definition of an edge between workflow nodes."""
    id: Optional[str] = Field(None, description="Edge ID; derived from its endpoints when omitted")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(None, description="Branch label selecting this edge")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @model_validator(mode='after')
    def fill_id(self):
        """Derive a stable ID from the endpoints when none was given."""
        if not self.id:
            suffix = f":{self.source_handle}" if self.source_handle else ""
            self.id = f"{self.source}->{self.target}{suffix}"
        return self


class QueryDefinition(BaseModel):
    """Entry in a workflow definition's query catalog."""
    id: str = Field(..., description="Definition-time query ID referenced by query nodes")
    name: str = Field(..., description="Query name; also the state key its result is stored under")
    kind: str = Field(..., description="Query kind, used to pick a handler in the query runner")
    options: Dict[str, Any] = Field(default_factory=dict, description="Option templates")

    @field_validator('name', 'kind')
    @classmethod
    def validate_not_empty(cls, value):
        """Ensure the field is not empty."""
        if not value or not value.strip():
            raise ValueError("Query name and kind cannot be empty")
        return value.strip()


class WorkflowDefinition(BaseModel):
    """Complete, immutable definition of a workflow graph."""
    name: str = Field(..., description="Name of the workflow")
    description: str = Field(default="", description="Description of the workflow")
    nodes: List[NodeDefinition] = Field(..., description="Nodes in the workflow")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges connecting nodes, in enumeration order")
    queries: List[QueryDefinition] = Field(default_factory=list, description="Query catalog")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @model_validator(mode='after')
    def validate_graph_structure(self):
        """Reject structurally invalid definitions at construction time."""
        errors = self.structure_errors()
        if errors:
            raise ValueError("; ".join(errors))
        return self

    @property
    def start_node(self) -> Optional[NodeDefinition]:
        """The designated start node, if exactly one exists."""
        starts = [node for node in self.nodes if node.is_start]
        return starts[0] if len(starts) == 1 else None

    def get_query(self, query_id: str) -> Optional[QueryDefinition]:
        """Look up a catalog query by its definition-time ID."""
        for query in self.queries:
            if query.id == query_id:
                return query
        return None

    def structure_errors(self) -> List[str]:
        """Collect every structural error in the definition."""
        errors: List[str] = []

        if not self.nodes:
            return ["Workflow must contain at least one node"]

        node_ids = [node.id for node in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            errors.append("All node IDs must be unique")

        edge_ids = [edge.id for edge in self.edges]
        if len(edge_ids) != len(set(edge_ids)):
            errors.append("All edge IDs must be unique")

        query_ids = [query.id for query in self.queries]
        if len(query_ids) != len(set(query_ids)):
            errors.append("All query IDs must be unique")

        known = set(node_ids)
        for edge in self.edges:
            if edge.source not in known:
                errors.append(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in known:
                errors.append(f"Edge references non-existent target node: {edge.target}")
            if edge.source == edge.target:
                errors.append(f"Self-referencing edge not allowed: {edge.source}")

        starts = [node.id for node in self.nodes if node.is_start]
        if not starts:
            errors.append("Workflow has no start node")
        elif len(starts) > 1:
            errors.append(f"Workflow has more than one start node: {', '.join(starts)}")

        incoming: Dict[str, int] = {node_id: 0 for node_id in known}
        for edge in self.edges:
            if edge.target in incoming:
                incoming[edge.target] += 1
        for node in self.nodes:
            if node.is_start and incoming.get(node.id):
                errors.append(f"Start node '{node.id}' must not have incoming edges")
            elif not node.is_start and not incoming.get(node.id):
                errors.append(f"Node '{node.id}' has no incoming edges")

        for node in self.nodes:
            if node.type == NodeType.QUERY.value:
                query_id = node.data.get("query_id")
                if query_id is None or self.get_query(query_id) is None:
                    errors.append(f"Query node '{node.id}' references unknown query: {query_id}")
            elif node.type == NodeType.IF_CONDITION.value:
                labels = [edge.source_handle for edge in self.edges if edge.source == node.id]
                unlabeled = [label for label in labels if label not in BRANCH_LABELS]
                if unlabeled:
                    errors.append(f"If-condition node '{node.id}' has outgoing edges without a true/false label")
                if len(labels) != len(set(labels)):
                    errors.append(f"If-condition node '{node.id}' has more than one edge per branch label")

        if not errors and self._has_cycles():
            errors.append("Workflow contains a cycle")

        return errors

    def validate_structure(self) -> ValidationResult:
        """Perform comprehensive validation and return detailed results."""
        errors = self.structure_errors()
        warnings = []

        sources = {edge.source for edge in self.edges}
        for node in self.nodes:
            if node.type == NodeType.OUTPUT.value and node.id in sources:
                warnings.append(f"Output node '{node.id}' has outgoing edges that will still be followed")

        if not errors and self.start_node is not None:
            unreachable = {node.id for node in self.nodes} - self._find_reachable_nodes(self.start_node.id, self.edges)
            if unreachable:
                warnings.append(f"Nodes unreachable from the start node: {', '.join(sorted(unreachable))}")

        return ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )

    @staticmethod
    def _find_reachable_nodes(entry_point: str, edges: List[EdgeDefinition]) -> Set[str]:
        """Find all nodes reachable from the entry point."""
        reachable = {entry_point}
        edge_map: Dict[str, List[str]] = {}

        for edge in edges:
            edge_map.setdefault(edge.source, []).append(edge.target)

        queue = deque([entry_point])
        while queue:
            current = queue.popleft()
            for neighbor in edge_map.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)

        return reachable

    def _has_cycles(self) -> bool:
        """Check if the graph contains cycles by topological sort (Kahn's algorithm).

        Nodes are peeled off in dependency order; any node left over sits on
        or below a cycle.
        """
        if not self.edges:
            return False

        in_degree: Dict[str, int] = {node.id: 0 for node in self.nodes}
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)
            in_degree[edge.target] = in_degree.get(edge.target, 0) + 1

        ready = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
        sorted_count = 0
        while ready:
            current = ready.popleft()
            sorted_count += 1
            for neighbor in graph.get(current, []):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    ready.append(neighbor)

        return sorted_count < len(in_degree)


class WorkflowSummary(BaseModel):
    """Summary information about a stored workflow definition."""
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: str = Field(..., description="Workflow description")
    version: int = Field(..., description="Current definition version")
    created_at: datetime = Field(..., description="Creation timestamp")
    node_count: int = Field(..., description="Number of nodes in the definition")


class ExecutionRunView(BaseModel):
    """Snapshot of a persisted run."""
    id: str
    workflow_id: Optional[str] = None
    definition_version: Optional[int] = None
    start_node_id: str
    executed: bool = False
    aborted: bool = False
    params: Dict[str, Any] = Field(default_factory=dict)
    executing_user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ExecutionNodeView(BaseModel):
    """Snapshot of a persisted node. Once executed, result and state are frozen."""
    id: str
    run_id: str
    id_on_definition: str
    type: str
    definition: Dict[str, Any] = Field(default_factory=dict)
    executed: bool = False
    result: Any = None
    state: Dict[str, Any] = Field(default_factory=dict)
    chosen_branch: Optional[str] = None
    executed_at: Optional[datetime] = None


class ExecutionEdgeView(BaseModel):
    """Snapshot of a persisted edge."""
    id: str
    run_id: str
    id_on_definition: str
    source_node_id: str
    target_node_id: str
    source_handle: Optional[str] = None
    position: int = 0


class NodeOutcome(BaseModel):
    """What a node executor produced for one node."""
    result: Any = Field(None, description="Result payload recorded on the node")
    state_fragment: Dict[str, Any] = Field(default_factory=dict, description="Merged into the node's state")
    chosen_branch: Optional[str] = Field(None, description="Outgoing edge label to follow, for branching nodes")
    failed: bool = Field(False, description="Whether the node recorded a captured failure")


class NodeStatus(BaseModel):
    """Per-node progress entry of a run."""
    id: str = Field(..., description="Execution node ID")
    id_on_definition: str = Field(..., description="Node ID in the workflow definition")
    type: str = Field(..., description="Node type")
    executed: bool = Field(..., description="Whether the node has executed")
    result: Any = Field(None, description="Recorded result, if executed")


class ExecutionStatus(BaseModel):
    """Status of a run as most recently persisted."""
    run_id: str = Field(..., description="Run ID")
    executed: bool = Field(..., description="Whether the run has completed")
    aborted: bool = Field(False, description="Whether the run was cancelled or aborted")
    nodes: List[NodeStatus] = Field(default_factory=list, description="Per-node progress")


class LogEntry(BaseModel):
    """Log entry for workflow execution events."""
    timestamp: datetime = Field(..., description="Timestamp of the log entry")
    run_id: str = Field(..., description="ID of the run")
    node_id: Optional[str] = Field(None, description="ID of the node that generated the log")
    event_type: LogEventType = Field(..., description="Type of event")
    message: str = Field(..., description="Log message")
    state_snapshot: Optional[Dict[str, Any]] = Field(None, description="State snapshot at the time of the event")
