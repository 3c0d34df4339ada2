"""Structural validation of workflow graphs."""

from typing import Callable, List, Optional, Union

from ..models.core import (
    NodeType,
    ValidationIssue,
    ValidationResult,
    WorkflowDefinition,
    WorkflowGraph,
    normalize_branch_label,
)
from .exceptions import GraphValidationError
from .handler_registry import HandlerRegistry
from .logging import get_logger

logger = get_logger(__name__)

# Node types the engine leaves through "the single outgoing edge"
SINGLE_EXIT_TYPES = (NodeType.START, NodeType.TASK, NodeType.APPROVAL, NodeType.AUTOMATION)


class GraphValidator:
    """Checks the structural rules a definition must satisfy before it may run.

    Checks run in a fixed order. The first category that produces any issue
    ends validation, but every offender inside that category is reported.
    """

    def __init__(self, handler_registry: Optional[HandlerRegistry] = None):
        self.handler_registry = handler_registry
        self._checks: List[Callable[[WorkflowGraph], List[ValidationIssue]]] = [
            self._check_start,
            self._check_end,
            self._check_dangling_edges,
            self._check_reachability,
            self._check_condition_branches,
            self._check_dead_ends,
        ]

    def validate(self, definition: Union[WorkflowDefinition, WorkflowGraph]) -> ValidationResult:
        """
        Validate a definition (or a bare graph).

        Args:
            definition: The definition or graph document to validate

        Returns:
            ValidationResult: errors of the first failing category plus warnings
        """
        graph = definition.graph if isinstance(definition, WorkflowDefinition) else definition

        errors: List[ValidationIssue] = []
        for check in self._checks:
            errors = check(graph)
            if errors:
                break

        warnings = self._collect_warnings(graph) if not errors else []
        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

        logger.debug(f"Graph validation completed. Valid: {result.is_valid}, "
                     f"Reason: {result.reason}, Warnings: {len(result.warnings)}")
        return result

    def validate_or_raise(self, definition: Union[WorkflowDefinition, WorkflowGraph]) -> ValidationResult:
        """Validate and raise GraphValidationError on failure."""
        result = self.validate(definition)
        if not result.is_valid:
            raise GraphValidationError.from_result(result)
        return result

    def _check_start(self, graph: WorkflowGraph) -> List[ValidationIssue]:
        starts = graph.start_nodes()
        if not starts:
            return [ValidationIssue(code="NoStart", message="Workflow has no start node")]
        if len(starts) > 1:
            node_ids = [node.id for node in starts]
            return [ValidationIssue(
                code="MultipleStart",
                message=f"Workflow has {len(starts)} start nodes: {', '.join(node_ids)}",
                node_ids=node_ids,
            )]
        return []

    def _check_end(self, graph: WorkflowGraph) -> List[ValidationIssue]:
        if not graph.end_nodes():
            return [ValidationIssue(code="NoEnd", message="Workflow has no end node")]
        return []

    def _check_dangling_edges(self, graph: WorkflowGraph) -> List[ValidationIssue]:
        node_ids = {node.id for node in graph.nodes}
        issues = []
        for edge in graph.edges:
            missing = [endpoint for endpoint in (edge.source, edge.target) if endpoint not in node_ids]
            if missing:
                issues.append(ValidationIssue(
                    code="DanglingEdge",
                    message=f"Edge '{edge.id}' references non-existent node(s): {', '.join(missing)}",
                    node_ids=missing,
                    edge_ids=[edge.id],
                ))
        return issues

    def _check_reachability(self, graph: WorkflowGraph) -> List[ValidationIssue]:
        start = graph.start_nodes()[0]
        reachable = graph.reachable_from(start.id)
        return [
            ValidationIssue(
                code="UnreachableNode",
                message=f"Node '{node.id}' is not reachable from the start node",
                node_ids=[node.id],
            )
            for node in graph.nodes
            if node.id not in reachable
        ]

    def _check_condition_branches(self, graph: WorkflowGraph) -> List[ValidationIssue]:
        issues = []
        for node in graph.nodes_of_type(NodeType.CONDITION):
            outgoing = graph.outgoing_edges(node.id)

            unlabeled = [edge.id for edge in outgoing if not normalize_branch_label(edge.branch_label)]
            if unlabeled:
                issues.append(ValidationIssue(
                    code="MissingBranchLabel",
                    message=f"Condition node '{node.id}' has outgoing edges without a branch label",
                    node_ids=[node.id],
                    edge_ids=unlabeled,
                ))
                continue

            if len(outgoing) < 2:
                issues.append(ValidationIssue(
                    code="MissingBranchLabel",
                    message=f"Condition node '{node.id}' needs at least two labeled branches",
                    node_ids=[node.id],
                    edge_ids=[edge.id for edge in outgoing],
                ))
                continue

            seen = {}
            duplicates = []
            for edge in outgoing:
                label = normalize_branch_label(edge.branch_label)
                if label in seen:
                    duplicates.extend(edge_id for edge_id in (seen[label], edge.id) if edge_id not in duplicates)
                else:
                    seen[label] = edge.id
            if duplicates:
                issues.append(ValidationIssue(
                    code="AmbiguousBranch",
                    message=f"Condition node '{node.id}' has duplicate branch labels",
                    node_ids=[node.id],
                    edge_ids=duplicates,
                ))
        return issues

    def _check_dead_ends(self, graph: WorkflowGraph) -> List[ValidationIssue]:
        issues = []
        for node in graph.nodes:
            incoming = graph.incoming_edges(node.id)
            outgoing = graph.outgoing_edges(node.id)

            if node.type != NodeType.START and not incoming:
                issues.append(ValidationIssue(
                    code="DeadEnd",
                    message=f"Node '{node.id}' has no incoming edges",
                    node_ids=[node.id],
                ))
            if node.type != NodeType.END and not outgoing:
                issues.append(ValidationIssue(
                    code="DeadEnd",
                    message=f"Node '{node.id}' has no outgoing edges",
                    node_ids=[node.id],
                ))
            if node.type in SINGLE_EXIT_TYPES and len(outgoing) > 1:
                issues.append(ValidationIssue(
                    code="AmbiguousTransition",
                    message=f"{node.type.value.capitalize()} node '{node.id}' must have exactly one outgoing edge",
                    node_ids=[node.id],
                    edge_ids=[edge.id for edge in outgoing],
                ))
            if node.type == NodeType.END and outgoing:
                issues.append(ValidationIssue(
                    code="AmbiguousTransition",
                    message=f"End node '{node.id}' must not have outgoing edges",
                    node_ids=[node.id],
                    edge_ids=[edge.id for edge in outgoing],
                ))
        return issues

    def _collect_warnings(self, graph: WorkflowGraph) -> List[str]:
        warnings = []
        if graph.has_cycles():
            warnings.append("Graph contains cycles; make sure every loop passes a task, approval or exit branch")

        if self.handler_registry is not None:
            for node in graph.nodes_of_type(NodeType.CONDITION):
                predicate = node.params.get("predicate")
                if not self.handler_registry.has_predicate(predicate):
                    warnings.append(f"Condition node '{node.id}' uses unregistered predicate '{predicate}'")
            for node in graph.nodes_of_type(NodeType.AUTOMATION):
                handler = node.params.get("handler")
                if not self.handler_registry.has_automation(handler):
                    warnings.append(f"Automation node '{node.id}' uses unregistered handler '{handler}'")
        return warnings
