"""Core Pydantic models for the workflow engine."""

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    """Enumeration of workflow node types."""
    START = "start"
    TASK = "task"
    APPROVAL = "approval"
    CONDITION = "condition"
    AUTOMATION = "automation"
    END = "end"


class DefinitionStatus(str, Enum):
    """Enumeration of workflow definition statuses."""
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class InstanceStatus(str, Enum):
    """Enumeration of workflow instance statuses."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_INSTANCE_STATUSES


TERMINAL_INSTANCE_STATUSES = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.REJECTED,
    InstanceStatus.CANCELLED,
})


class TaskStatus(str, Enum):
    """Enumeration of workflow task statuses."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_open(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class ApprovalStatus(str, Enum):
    """Enumeration of approval decisions."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskOutcome(str, Enum):
    """Outcomes a human actor may submit when resolving a task."""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    APPROVED = "approved"
    REJECTED = "rejected"


class InstanceEventType(str, Enum):
    """Enumeration of instance state-change events."""
    INSTANCE_STARTED = "instance_started"
    NODE_ENTERED = "node_entered"
    TASK_CREATED = "task_created"
    APPROVAL_CREATED = "approval_created"
    TASK_RESOLVED = "task_resolved"
    APPROVAL_DECIDED = "approval_decided"
    BRANCH_SELECTED = "branch_selected"
    AUTOMATION_COMPLETED = "automation_completed"
    INSTANCE_SUSPENDED = "instance_suspended"
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_REJECTED = "instance_rejected"
    INSTANCE_CANCELLED = "instance_cancelled"
    RUN_FAILURE = "run_failure"


def _require_id(value: str, what: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{what} cannot be empty")
    return str(value).strip()


class NodeDefinition(BaseModel):
    """Definition of a workflow node.

    Nodes carry only their type tag; any icon or colour mapping is looked up
    by type in the presentation layer.
    """
    id: str = Field(..., description="Unique identifier for the node within its definition")
    type: NodeType = Field(..., description="Node type")
    label: str = Field(default="", description="Human readable label")
    description: Optional[str] = Field(None, description="Free-form description")
    params: Dict[str, Any] = Field(default_factory=dict, description="Type-specific parameters")

    @field_validator('id')
    @classmethod
    def validate_id(cls, value):
        """Ensure node ID is not blank."""
        return _require_id(value, "Node ID")

    @field_validator('params', mode='before')
    @classmethod
    def default_params(cls, value):
        return value or {}


class EdgeDefinition(BaseModel):
    """Definition of a directed edge between workflow nodes."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the edge")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    branch_label: Optional[str] = Field(
        None,
        alias="branchLabel",
        description="Branch label used by condition nodes to select an outgoing edge",
    )

    @field_validator('id', 'source', 'target')
    @classmethod
    def validate_ids(cls, value):
        """Ensure edge identifiers are not blank."""
        return _require_id(value, "Edge identifier")


def normalize_branch_label(label: Any) -> str:
    """Normalize a branch label or predicate result for comparison."""
    if label is None:
        return ""
    if isinstance(label, bool):
        return "true" if label else "false"
    return str(label).strip().lower()


class WorkflowGraph(BaseModel):
    """The node/edge document authored by the builder and read by the engine."""
    nodes: List[NodeDefinition] = Field(default_factory=list, description="Nodes in the graph")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges connecting nodes")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
            raise ValueError(f"Duplicate node IDs: {', '.join(duplicates)}")
        return nodes

    @field_validator('edges')
    @classmethod
    def validate_unique_edge_ids(cls, edges):
        """Ensure all edge IDs are unique."""
        edge_ids = [edge.id for edge in edges]
        if len(edge_ids) != len(set(edge_ids)):
            duplicates = sorted({edge_id for edge_id in edge_ids if edge_ids.count(edge_id) > 1})
            raise ValueError(f"Duplicate edge IDs: {', '.join(duplicates)}")
        return edges

    def node_by_id(self, node_id: Optional[str]) -> Optional[NodeDefinition]:
        """Return the node with the given id, or None."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[EdgeDefinition]:
        """Edges leaving the given node, in document order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming_edges(self, node_id: str) -> List[EdgeDefinition]:
        """Edges entering the given node, in document order."""
        return [edge for edge in self.edges if edge.target == node_id]

    def nodes_of_type(self, node_type: NodeType) -> List[NodeDefinition]:
        return [node for node in self.nodes if node.type == node_type]

    def start_nodes(self) -> List[NodeDefinition]:
        return self.nodes_of_type(NodeType.START)

    def end_nodes(self) -> List[NodeDefinition]:
        return self.nodes_of_type(NodeType.END)

    def reachable_from(self, node_id: str) -> Set[str]:
        """Find all node IDs reachable from the given node by forward traversal."""
        adjacency: Dict[str, List[str]] = {}
        for edge in self.edges:
            adjacency.setdefault(edge.source, []).append(edge.target)

        reachable = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for neighbor in adjacency.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return reachable

    def has_cycles(self) -> bool:
        """Check if the graph contains cycles using DFS."""
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)

        visited: Set[str] = set()
        rec_stack: Set[str] = set()

        def has_cycle_util(node_id):
            visited.add(node_id)
            rec_stack.add(node_id)
            for neighbor in graph.get(node_id, []):
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True
            rec_stack.remove(node_id)
            return False

        for node in self.nodes:
            if node.id not in visited and has_cycle_util(node.id):
                return True
        return False


class WorkflowDefinition(BaseModel):
    """A stored workflow definition."""
    id: str = Field(..., description="Definition ID")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    status: DefinitionStatus = Field(DefinitionStatus.DRAFT, description="Lifecycle status")
    graph: WorkflowGraph = Field(default_factory=WorkflowGraph, description="Node/edge document")
    created_by: Optional[str] = Field(None, description="Identity of the author")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name or not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()


class WorkflowInstance(BaseModel):
    """A single run of a workflow definition."""
    id: str = Field(..., description="Instance ID")
    definition_id: str = Field(..., description="Owning definition ID")
    status: InstanceStatus = Field(InstanceStatus.PENDING, description="Run status")
    current_node_id: Optional[str] = Field(None, description="Node the run is positioned on")
    context: Dict[str, Any] = Field(default_factory=dict, description="Accumulated key/value state")
    started_by: Optional[str] = Field(None, description="Identity that started the run")
    started_at: Optional[datetime] = Field(None, description="Start timestamp")
    completed_at: Optional[datetime] = Field(None, description="Terminal timestamp")
    version: int = Field(0, description="Optimistic lock version")
    step: int = Field(0, description="Number of node entries so far")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class WorkflowTask(BaseModel):
    """A human task materialized for a task or approval node."""
    id: str
    instance_id: str
    node_id: str
    step: int = Field(0, description="Instance step at which the task was created")
    title: str
    description: Optional[str] = None
    assignee: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    due_date: Optional[datetime] = None
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completion_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status.is_open


class WorkflowApproval(BaseModel):
    """An approval decision owned by an approval task."""
    id: str
    instance_id: str
    task_id: str
    node_id: str
    title: str
    approver_id: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    comments: Optional[str] = None
    decided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ValidationIssue(BaseModel):
    """A single validation finding."""
    code: str = Field(..., description="Reason code, e.g. NoStart or DanglingEdge")
    message: str = Field(..., description="Human readable message")
    node_ids: List[str] = Field(default_factory=list, description="Offending node IDs")
    edge_ids: List[str] = Field(default_factory=list, description="Offending edge IDs")


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[ValidationIssue] = Field(default_factory=list, description="Blocking issues")
    warnings: List[str] = Field(default_factory=list, description="Non-blocking findings")

    @property
    def reason(self) -> Optional[str]:
        """Reason code of the failing category, if any."""
        return self.errors[0].code if self.errors else None

    @property
    def node_ids(self) -> List[str]:
        ids: List[str] = []
        for issue in self.errors:
            for node_id in issue.node_ids:
                if node_id not in ids:
                    ids.append(node_id)
        return ids


class InstanceEvent(BaseModel):
    """State-change event emitted for an instance."""
    id: Optional[int] = None
    instance_id: str
    event_type: InstanceEventType
    node_id: Optional[str] = None
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class DefinitionSummary(BaseModel):
    """Summary information about a workflow definition."""
    id: str = Field(..., description="Definition ID")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    status: DefinitionStatus = Field(..., description="Lifecycle status")
    node_count: int = Field(..., description="Number of nodes in the graph")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")
