"""Data models for the workflow engine."""

from .core import (
    NodeType,
    DefinitionStatus,
    InstanceStatus,
    TaskStatus,
    ApprovalStatus,
    TaskOutcome,
    InstanceEventType,
    NodeDefinition,
    EdgeDefinition,
    WorkflowGraph,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTask,
    WorkflowApproval,
    ValidationIssue,
    ValidationResult,
    InstanceEvent,
    DefinitionSummary,
    normalize_branch_label,
)

__all__ = [
    "NodeType",
    "DefinitionStatus",
    "InstanceStatus",
    "TaskStatus",
    "ApprovalStatus",
    "TaskOutcome",
    "InstanceEventType",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowGraph",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowTask",
    "WorkflowApproval",
    "ValidationIssue",
    "ValidationResult",
    "InstanceEvent",
    "DefinitionSummary",
    "normalize_branch_label",
]
