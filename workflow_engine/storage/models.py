"""SQLAlchemy database models for the workflow execution engine."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Authored, versioned workflow definition."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text)
    version = Column(Integer, nullable=False, default=1)
    definition = Column(JSON, nullable=False)  # Complete WorkflowDefinition payload
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("WorkflowExecutionModel", back_populates="workflow")


class WorkflowExecutionModel(Base):
    """One run of a workflow definition."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=True)
    definition_version = Column(Integer)
    start_node_id = Column(String)
    executed = Column(Boolean, nullable=False, default=False)
    aborted = Column(Boolean, nullable=False, default=False)
    params = Column(JSON)
    executing_user_id = Column(String)
    queries = Column(JSON)  # Snapshot of the definition's query catalog
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="executions")
    nodes = relationship("WorkflowExecutionNodeModel", back_populates="execution",
                         cascade="all, delete-orphan")
    edges = relationship("WorkflowExecutionEdgeModel", back_populates="execution",
                         cascade="all, delete-orphan")
    logs = relationship("LogEntryModel", back_populates="run", cascade="all, delete-orphan")


class WorkflowExecutionNodeModel(Base):
    """Instantiated node within a run."""
    __tablename__ = "workflow_execution_nodes"

    id = Column(String, primary_key=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    id_on_definition = Column(String, nullable=False)
    type = Column(String, nullable=False)
    definition = Column(JSON)
    executed = Column(Boolean, nullable=False, default=False)
    result = Column(JSON)
    state = Column(JSON)
    chosen_branch = Column(String)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    executed_at = Column(DateTime)

    execution = relationship("WorkflowExecutionModel", back_populates="nodes")


class WorkflowExecutionEdgeModel(Base):
    """Instantiated edge within a run. Immutable once created."""
    __tablename__ = "workflow_execution_edges"
    __table_args__ = (
        Index("ix_execution_edges_source", "source_node_id"),
        Index("ix_execution_edges_target", "target_node_id"),
    )

    id = Column(String, primary_key=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    id_on_definition = Column(String, nullable=False)
    source_node_id = Column(String, ForeignKey("workflow_execution_nodes.id"), nullable=False)
    target_node_id = Column(String, ForeignKey("workflow_execution_nodes.id"), nullable=False)
    source_handle = Column(String)
    position = Column(Integer, nullable=False)  # Edge enumeration order in the definition
    created_at = Column(DateTime, default=datetime.utcnow)

    execution = relationship("WorkflowExecutionModel", back_populates="edges")


class LogEntryModel(Base):
    """Database model for execution log entries."""
    __tablename__ = "log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow)
    node_id = Column(String)
    event_type = Column(String, nullable=False)  # node_start, node_complete, node_error, etc.
    message = Column(Text, nullable=False)
    state_snapshot = Column(JSON)

    run = relationship("WorkflowExecutionModel", back_populates="logs")
