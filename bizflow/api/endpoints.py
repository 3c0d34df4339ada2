"""FastAPI REST endpoints for the workflow engine.

Engine errors are not caught here; the application's exception handlers turn
them into JSON error bodies with the matching status code.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.definition_manager import DefinitionManager
from ..core.execution_engine import ExecutionEngine
from ..core.handler_registry import HandlerRegistry
from ..core.instance_store import InstanceStore
from ..core.logging import get_logger
from ..models.core import (
    DefinitionStatus,
    InstanceEvent,
    InstanceStatus,
    TaskStatus,
    ValidationIssue,
    WorkflowDefinition,
    WorkflowGraph,
    WorkflowInstance,
    WorkflowTask,
)

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_definition_manager: Optional[DefinitionManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_handler_registry: Optional[HandlerRegistry] = None
_instance_store: Optional[InstanceStore] = None


def init_dependencies(
    definition_manager: DefinitionManager,
    execution_engine: ExecutionEngine,
    handler_registry: HandlerRegistry,
    instance_store: InstanceStore,
):
    """Initialize the global dependencies."""
    global _definition_manager, _execution_engine, _handler_registry, _instance_store
    _definition_manager = definition_manager
    _execution_engine = execution_engine
    _handler_registry = handler_registry
    _instance_store = instance_store


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_definition_manager() -> DefinitionManager:
    """Dependency to get definition manager."""
    if _definition_manager is None:
        raise _not_initialized("Definition manager")
    return _definition_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise _not_initialized("Execution engine")
    return _execution_engine


def get_handler_registry() -> HandlerRegistry:
    """Dependency to get handler registry."""
    if _handler_registry is None:
        raise _not_initialized("Handler registry")
    return _handler_registry


def get_instance_store() -> InstanceStore:
    """Dependency to get instance store."""
    if _instance_store is None:
        raise _not_initialized("Instance store")
    return _instance_store


# Request/Response models

class CamelModel(BaseModel):
    """Base model exchanging camelCase keys with clients."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRequest(CamelModel):
    """Request model for starting an instance."""
    definition_id: str = Field(..., description="ID of the definition to run")
    actor_id: str = Field(..., description="Identity starting the instance")
    context: Dict[str, Any] = Field(default_factory=dict, description="Initial context values")


class ResumeTaskRequest(CamelModel):
    """Request model for resolving a human task."""
    task_id: str = Field(..., description="ID of the task to resolve")
    actor_id: str = Field(..., description="Identity resolving the task")
    outcome: str = Field(..., description="completed, skipped, approved or rejected")
    comments: Optional[str] = Field(None, description="Optional comments kept with the decision")


class CancelRequest(CamelModel):
    """Request model for cancelling an instance."""
    actor_id: str = Field(..., description="Identity cancelling the instance")
    reason: Optional[str] = Field(None, description="Why the instance was cancelled")


class InstanceStatusResponse(CamelModel):
    """Response model for start, resume, advance and cancel."""
    instance_id: str
    status: InstanceStatus


class InstanceResponse(CamelModel):
    """Response model describing an instance."""
    instance_id: str
    definition_id: str
    status: InstanceStatus
    current_node_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    started_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "InstanceResponse":
        return cls(
            instance_id=instance.id,
            definition_id=instance.definition_id,
            status=instance.status,
            current_node_id=instance.current_node_id,
            context=instance.context,
            started_by=instance.started_by,
            started_at=instance.started_at,
            completed_at=instance.completed_at,
            version=instance.version,
        )


class TaskResponse(CamelModel):
    """Response model describing a human task."""
    task_id: str
    instance_id: str
    node_id: str
    title: str
    description: Optional[str] = None
    assignee: Optional[str] = None
    status: TaskStatus
    due_date: Optional[datetime] = None
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completion_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_task(cls, task: WorkflowTask) -> "TaskResponse":
        return cls(
            task_id=task.id,
            instance_id=task.instance_id,
            node_id=task.node_id,
            title=task.title,
            description=task.description,
            assignee=task.assignee,
            status=task.status,
            due_date=task.due_date,
            completed_by=task.completed_by,
            completed_at=task.completed_at,
            completion_metadata=task.completion_metadata,
            created_at=task.created_at,
        )


class EventResponse(CamelModel):
    """Response model describing an instance event."""
    event_type: str
    node_id: Optional[str] = None
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @classmethod
    def from_event(cls, event: InstanceEvent) -> "EventResponse":
        return cls(
            event_type=event.event_type.value,
            node_id=event.node_id,
            message=event.message,
            payload=event.payload,
            timestamp=event.timestamp,
        )


class CreateWorkflowRequest(CamelModel):
    """Request model for creating a workflow definition."""
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    graph: WorkflowGraph = Field(default_factory=WorkflowGraph, description="Node/edge document")
    created_by: Optional[str] = Field(None, description="Identity of the author")
    status: DefinitionStatus = Field(DefinitionStatus.DRAFT, description="draft or active")


class UpdateWorkflowRequest(CamelModel):
    """Request model for updating a workflow definition."""
    name: Optional[str] = None
    description: Optional[str] = None
    graph: Optional[WorkflowGraph] = None


class ValidateWorkflowRequest(CamelModel):
    """Request model for validating a graph without saving it."""
    graph: WorkflowGraph


class DefinitionResponse(CamelModel):
    """Response model describing a workflow definition."""
    definition_id: str
    name: str
    description: Optional[str] = None
    status: DefinitionStatus
    graph: WorkflowGraph
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    validation_warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition,
                        warnings: Optional[List[str]] = None) -> "DefinitionResponse":
        return cls(
            definition_id=definition.id,
            name=definition.name,
            description=definition.description,
            status=definition.status,
            graph=definition.graph,
            created_by=definition.created_by,
            created_at=definition.created_at,
            updated_at=definition.updated_at,
            validation_warnings=warnings or [],
        )


class DefinitionSummaryResponse(CamelModel):
    """Response model for definition lists."""
    definition_id: str
    name: str
    description: Optional[str] = None
    status: DefinitionStatus
    node_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ValidationResponse(CamelModel):
    """Response model for graph validation."""
    is_valid: bool
    reason: Optional[str] = None
    node_ids: List[str] = Field(default_factory=list)
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation failed"},
    404: {"model": ErrorResponse, "description": "Resource not found"},
    409: {"model": ErrorResponse, "description": "Conflicting concurrent or repeated action"},
}


# Instance endpoints

@router.post(
    "/start",
    response_model=InstanceStatusResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Start a workflow instance",
    description="Start an instance of an active definition and run it until it waits on a human or ends"
)
def start_instance(
    request: StartRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> InstanceStatusResponse:
    logger.info(f"Starting instance of definition {request.definition_id} for {request.actor_id}")
    instance_id = engine.start(request.definition_id, request.actor_id, request.context)
    instance = engine.get_instance_status(instance_id)
    return InstanceStatusResponse(instance_id=instance_id, status=instance.status)


@router.post(
    "/resumeTask",
    response_model=InstanceStatusResponse,
    responses=ERROR_RESPONSES,
    summary="Resolve a human task",
    description="Record a task outcome or approval decision and continue the owning instance"
)
def resume_task(
    request: ResumeTaskRequest,
    engine: ExecutionEngine = Depends(get_execution_engine),
    store: InstanceStore = Depends(get_instance_store)
) -> InstanceStatusResponse:
    logger.info(f"Resuming task {request.task_id} with outcome {request.outcome} by {request.actor_id}")
    task = store.get_task(request.task_id)
    instance_status = engine.resume_task(request.task_id, request.actor_id, request.outcome, request.comments)
    return InstanceStatusResponse(instance_id=task.instance_id, status=instance_status)


@router.get(
    "/instance/{instance_id}",
    response_model=InstanceResponse,
    responses={404: ERROR_RESPONSES[404]},
    summary="Get instance state"
)
def get_instance(
    instance_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> InstanceResponse:
    return InstanceResponse.from_instance(engine.get_instance_status(instance_id))


@router.post(
    "/instance/{instance_id}/advance",
    response_model=InstanceStatusResponse,
    responses=ERROR_RESPONSES,
    summary="Advance an instance",
    description="Re-run the advance loop, e.g. after an interrupted call; a no-op for terminal instances"
)
def advance_instance(
    instance_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> InstanceStatusResponse:
    return InstanceStatusResponse(instance_id=instance_id, status=engine.advance(instance_id))


@router.post(
    "/instance/{instance_id}/cancel",
    response_model=InstanceStatusResponse,
    responses=ERROR_RESPONSES,
    summary="Cancel an instance"
)
def cancel_instance(
    instance_id: str,
    request: CancelRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> InstanceStatusResponse:
    instance_status = engine.cancel(instance_id, request.actor_id, request.reason)
    return InstanceStatusResponse(instance_id=instance_id, status=instance_status)


@router.get(
    "/instance/{instance_id}/tasks",
    response_model=List[TaskResponse],
    responses={404: ERROR_RESPONSES[404]},
    summary="List the tasks of an instance"
)
def list_instance_tasks(
    instance_id: str,
    store: InstanceStore = Depends(get_instance_store)
) -> List[TaskResponse]:
    store.get_instance(instance_id)
    return [TaskResponse.from_task(task) for task in store.list_tasks(instance_id=instance_id)]


@router.get(
    "/instance/{instance_id}/events",
    response_model=List[EventResponse],
    responses={404: ERROR_RESPONSES[404]},
    summary="List the state-change events of an instance"
)
def list_instance_events(
    instance_id: str,
    store: InstanceStore = Depends(get_instance_store)
) -> List[EventResponse]:
    store.get_instance(instance_id)
    return [EventResponse.from_event(event) for event in store.list_events(instance_id)]


@router.get(
    "/tasks",
    response_model=List[TaskResponse],
    summary="Task inbox",
    description="List tasks, optionally filtered by assignee and status"
)
def list_tasks(
    assignee: Optional[str] = Query(None, description="Only tasks assigned to this identity"),
    task_status: Optional[TaskStatus] = Query(None, alias="status", description="Only tasks in this status"),
    store: InstanceStore = Depends(get_instance_store)
) -> List[TaskResponse]:
    return [TaskResponse.from_task(task) for task in store.list_tasks(assignee=assignee, status=task_status)]


@router.get(
    "/instances",
    response_model=List[InstanceResponse],
    summary="List instances",
    description="List instances, optionally filtered by definition and status"
)
def list_instances(
    definition_id: Optional[str] = Query(None, alias="definitionId"),
    instance_status: Optional[InstanceStatus] = Query(None, alias="status"),
    store: InstanceStore = Depends(get_instance_store)
) -> List[InstanceResponse]:
    return [
        InstanceResponse.from_instance(instance)
        for instance in store.list_instances(definition_id=definition_id, status=instance_status)
    ]


# Definition endpoints

@router.post(
    "/workflows",
    response_model=DefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: ERROR_RESPONSES[400]},
    summary="Create a workflow definition",
    description="Save a draft (unvalidated) or an active (validated) workflow definition"
)
def create_workflow(
    request: CreateWorkflowRequest,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> DefinitionResponse:
    definition = manager.create(
        name=request.name,
        graph=request.graph,
        description=request.description,
        created_by=request.created_by,
        status=request.status,
    )
    warnings = manager.validate(definition).warnings
    return DefinitionResponse.from_definition(definition, warnings)


@router.get(
    "/workflows",
    response_model=List[DefinitionSummaryResponse],
    summary="List workflow definitions"
)
def list_workflows(
    definition_status: Optional[DefinitionStatus] = Query(None, alias="status"),
    manager: DefinitionManager = Depends(get_definition_manager)
) -> List[DefinitionSummaryResponse]:
    return [
        DefinitionSummaryResponse(
            definition_id=summary.id,
            name=summary.name,
            description=summary.description,
            status=summary.status,
            node_count=summary.node_count,
            created_at=summary.created_at,
            updated_at=summary.updated_at,
        )
        for summary in manager.list(definition_status)
    ]


@router.post(
    "/workflows/validate",
    response_model=ValidationResponse,
    summary="Validate a graph",
    description="Run the structural checks on a graph without saving it"
)
def validate_workflow(
    request: ValidateWorkflowRequest,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> ValidationResponse:
    result = manager.validate(request.graph)
    return ValidationResponse(
        is_valid=result.is_valid,
        reason=result.reason,
        node_ids=result.node_ids,
        errors=result.errors,
        warnings=result.warnings,
    )


@router.get(
    "/workflows/{definition_id}",
    response_model=DefinitionResponse,
    responses={404: ERROR_RESPONSES[404]},
    summary="Get a workflow definition"
)
def get_workflow(
    definition_id: str,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> DefinitionResponse:
    return DefinitionResponse.from_definition(manager.get(definition_id))


@router.put(
    "/workflows/{definition_id}",
    response_model=DefinitionResponse,
    responses={400: ERROR_RESPONSES[400], 404: ERROR_RESPONSES[404]},
    summary="Update a workflow definition"
)
def update_workflow(
    definition_id: str,
    request: UpdateWorkflowRequest,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> DefinitionResponse:
    definition = manager.update(definition_id, name=request.name, description=request.description,
                                graph=request.graph)
    return DefinitionResponse.from_definition(definition)


@router.delete(
    "/workflows/{definition_id}",
    responses={404: ERROR_RESPONSES[404], 409: ERROR_RESPONSES[409]},
    summary="Delete a workflow definition",
    description="Delete a definition that has no instances; archive definitions that have run"
)
def delete_workflow(
    definition_id: str,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> Dict[str, Any]:
    manager.delete(definition_id)
    return {
        "message": f"Workflow definition '{definition_id}' deleted successfully",
        "definitionId": definition_id,
        "deletedAt": datetime.utcnow().isoformat(),
    }


@router.post(
    "/workflows/{definition_id}/activate",
    response_model=DefinitionResponse,
    responses={400: ERROR_RESPONSES[400], 404: ERROR_RESPONSES[404]},
    summary="Activate a workflow definition"
)
def activate_workflow(
    definition_id: str,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> DefinitionResponse:
    definition = manager.activate(definition_id)
    return DefinitionResponse.from_definition(definition, manager.validate(definition).warnings)


@router.post(
    "/workflows/{definition_id}/archive",
    response_model=DefinitionResponse,
    responses={404: ERROR_RESPONSES[404]},
    summary="Archive a workflow definition"
)
def archive_workflow(
    definition_id: str,
    manager: DefinitionManager = Depends(get_definition_manager)
) -> DefinitionResponse:
    return DefinitionResponse.from_definition(manager.archive(definition_id))


@router.get(
    "/handlers",
    summary="List registered handlers",
    description="Condition predicates and automation handlers available to definitions"
)
def list_handlers(
    kind: Optional[str] = Query(None, description="predicate or automation"),
    registry: HandlerRegistry = Depends(get_handler_registry)
) -> Dict[str, Any]:
    handlers = registry.list_handlers(kind)
    return {"handlers": handlers, "count": len(handlers)}
