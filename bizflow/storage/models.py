"""SQLAlchemy database models for the workflow engine."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from .database import Base


class WorkflowDefinitionModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="draft")  # draft, active, archived
    flow_data = Column(JSON, nullable=False)  # {"nodes": [...], "edges": [...]}
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    instances = relationship("WorkflowInstanceModel", back_populates="workflow")


class WorkflowInstanceModel(Base):
    """Database model for workflow runs."""
    __tablename__ = "workflow_instances"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    status = Column(String, nullable=False)  # pending, in_progress, completed, rejected, cancelled
    current_node_id = Column(String)
    context_data = Column(JSON)
    started_by = Column(String)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)
    version = Column(Integer, nullable=False, default=0)
    step = Column(Integer, nullable=False, default=0)

    workflow = relationship("WorkflowDefinitionModel", back_populates="instances")
    tasks = relationship("WorkflowTaskModel", back_populates="instance")


class WorkflowTaskModel(Base):
    """Database model for human tasks."""
    __tablename__ = "workflow_tasks"
    __table_args__ = (
        UniqueConstraint("instance_id", "node_id", "step", name="uq_workflow_tasks_visit"),
    )

    id = Column(String, primary_key=True)
    instance_id = Column(String, ForeignKey("workflow_instances.id"), nullable=False)
    node_id = Column(String, nullable=False)
    step = Column(Integer, nullable=False, default=0)
    title = Column(String, nullable=False)
    description = Column(Text)
    assigned_to = Column(String)
    status = Column(String, nullable=False, default="pending")  # pending, in_progress, completed, skipped
    due_date = Column(DateTime)
    completed_by = Column(String)
    completed_at = Column(DateTime)
    completion_metadata = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)

    instance = relationship("WorkflowInstanceModel", back_populates="tasks")
    approval = relationship("WorkflowApprovalModel", back_populates="task", uselist=False)


class WorkflowApprovalModel(Base):
    """Database model for approval decisions."""
    __tablename__ = "workflow_approvals"

    id = Column(String, primary_key=True)
    instance_id = Column(String, ForeignKey("workflow_instances.id"), nullable=False)
    task_id = Column(String, ForeignKey("workflow_tasks.id"), nullable=False, unique=True)
    node_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    approver_id = Column(String)
    status = Column(String, nullable=False, default="pending")  # pending, approved, rejected
    comments = Column(Text)
    approved_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    task = relationship("WorkflowTaskModel", back_populates="approval")


class WorkflowEventModel(Base):
    """Database model for instance state-change events."""
    __tablename__ = "workflow_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String, ForeignKey("workflow_instances.id"), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow)
    node_id = Column(String)
    event_type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON)
