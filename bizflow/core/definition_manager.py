"""Definition Manager for workflow definition lifecycle."""

import uuid
from typing import List, Optional, Union

from ..models.core import (
    DefinitionStatus,
    DefinitionSummary,
    ValidationResult,
    WorkflowDefinition,
    WorkflowGraph,
)
from .exceptions import ConflictError, GraphValidationError, NotFoundError, WorkflowValidationError
from .instance_store import InstanceStore
from .logging import get_logger
from .validator import GraphValidator

logger = get_logger(__name__)


class DefinitionManager:
    """Manages workflow definitions: drafting, activation, archiving and removal."""

    def __init__(self, store: InstanceStore, validator: GraphValidator):
        self.store = store
        self.validator = validator

    def create(self, name: str, graph: WorkflowGraph, description: Optional[str] = None,
               created_by: Optional[str] = None, status: DefinitionStatus = DefinitionStatus.DRAFT,
               definition_id: Optional[str] = None) -> WorkflowDefinition:
        """
        Create a new workflow definition.

        Drafts are saved without validation so work in progress can be kept.

        Args:
            name: Workflow name
            graph: Node/edge document
            description: Optional description
            created_by: Identity of the author
            status: Initial status; ``active`` requires a valid graph
            definition_id: Optional explicit ID, generated when omitted

        Returns:
            WorkflowDefinition: The stored definition

        Raises:
            GraphValidationError: If an active definition fails validation
            WorkflowValidationError: If the explicit ID is already taken
        """
        logger.info(f"Creating workflow definition: {name}")

        if definition_id and self._exists(definition_id):
            raise WorkflowValidationError(f"Workflow definition '{definition_id}' already exists")

        definition = WorkflowDefinition(
            id=definition_id or self._generate_unique_id(),
            name=name,
            description=description,
            status=status,
            graph=graph,
            created_by=created_by,
        )
        if status == DefinitionStatus.ACTIVE:
            self._validate_or_raise(definition)

        return self.store.save_definition(definition)

    def update(self, definition_id: str, name: Optional[str] = None, description: Optional[str] = None,
               graph: Optional[WorkflowGraph] = None) -> WorkflowDefinition:
        """Update name, description or graph.

        An active definition must stay valid. The graph cannot change while
        instances of the definition are still running.

        Raises:
            NotFoundError: If the definition does not exist
            GraphValidationError: If an active definition would become invalid
            ConflictError: If the graph changes while instances are running
        """
        definition = self.store.get_definition(definition_id)
        if graph is not None and graph != definition.graph:
            self._ensure_no_running_instances(definition_id)

        changes = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if graph is not None:
            changes["graph"] = graph

        # Re-run field validators on the new name
        updated = WorkflowDefinition.model_validate({**definition.model_dump(), **changes})
        if updated.status == DefinitionStatus.ACTIVE:
            self._validate_or_raise(updated)

        logger.info(f"Updating workflow definition {definition_id}")
        return self.store.save_definition(updated)

    def get(self, definition_id: str) -> WorkflowDefinition:
        return self.store.get_definition(definition_id)

    def list(self, status: Optional[DefinitionStatus] = None) -> List[DefinitionSummary]:
        """List summaries of stored definitions, optionally filtered by status."""
        return [
            DefinitionSummary(
                id=definition.id,
                name=definition.name,
                description=definition.description,
                status=definition.status,
                node_count=len(definition.graph.nodes),
                created_at=definition.created_at,
                updated_at=definition.updated_at,
            )
            for definition in self.store.list_definitions(status)
        ]

    def activate(self, definition_id: str) -> WorkflowDefinition:
        """Make a definition startable. Validation must pass."""
        definition = self.store.get_definition(definition_id)
        self._validate_or_raise(definition)
        activated = definition.model_copy(update={"status": DefinitionStatus.ACTIVE})
        logger.info(f"Activating workflow definition {definition_id}")
        return self.store.save_definition(activated)

    def archive(self, definition_id: str) -> WorkflowDefinition:
        """Stop new instances from starting; running instances are unaffected."""
        definition = self.store.get_definition(definition_id)
        archived = definition.model_copy(update={"status": DefinitionStatus.ARCHIVED})
        logger.info(f"Archiving workflow definition {definition_id}")
        return self.store.save_definition(archived)

    def validate(self, definition: Union[WorkflowDefinition, WorkflowGraph]) -> ValidationResult:
        return self.validator.validate(definition)

    def delete(self, definition_id: str) -> None:
        """
        Delete a definition that has never been run.

        Raises:
            NotFoundError: If the definition does not exist
            ConflictError: If instances reference the definition
        """
        self.store.get_definition(definition_id)
        instance_count = self.store.count_instances(definition_id)
        if instance_count:
            raise ConflictError(
                f"Workflow definition {definition_id} has {instance_count} instance(s); archive it instead",
                reason=ConflictError.DEFINITION_HAS_INSTANCES
            )
        self.store.delete_definition(definition_id)

    def _validate_or_raise(self, definition: WorkflowDefinition) -> None:
        result = self.validator.validate(definition)
        if not result.is_valid:
            error = GraphValidationError.from_result(result)
            logger.error(f"Workflow definition {definition.id} failed validation: {error.message}")
            raise error
        if result.warnings:
            logger.warning(f"Workflow definition {definition.id} validation warnings: {'; '.join(result.warnings)}")

    def _ensure_no_running_instances(self, definition_id: str) -> None:
        running = [instance.id for instance in self.store.list_instances(definition_id=definition_id)
                   if not instance.is_terminal]
        if running:
            raise ConflictError(
                f"Workflow definition {definition_id} has {len(running)} running instance(s); "
                "finish or cancel them before changing the graph",
                reason=ConflictError.DEFINITION_IN_USE,
                details={"running_instances": running},
            )

    def _exists(self, definition_id: str) -> bool:
        try:
            self.store.get_definition(definition_id)
        except NotFoundError:
            return False
        return True

    def _generate_unique_id(self) -> str:
        return str(uuid.uuid4())
