"""Persistence contract used by the execution engine, and its SQLAlchemy implementation."""

import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import (
    ApprovalStatus,
    DefinitionStatus,
    InstanceEvent,
    InstanceEventType,
    InstanceStatus,
    TaskStatus,
    WorkflowApproval,
    WorkflowDefinition,
    WorkflowGraph,
    WorkflowInstance,
    WorkflowTask,
)
from ..storage.models import (
    WorkflowApprovalModel,
    WorkflowDefinitionModel,
    WorkflowEventModel,
    WorkflowInstanceModel,
    WorkflowTaskModel,
)
from .exceptions import ConflictError, NotFoundError, StorageError, WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)

EventListener = Callable[[InstanceEvent], None]

OPEN_TASK_STATUSES = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value)


class InstanceStore(ABC):
    """Contract for the records the engine reads and writes.

    Every method is a single atomic operation. The engine never holds a
    store transaction open across calls; suspension at a task is just the
    stored instance state.
    """

    def __init__(self):
        self._listeners: List[EventListener] = []
        self._listener_lock = threading.Lock()

    # Definitions

    @abstractmethod
    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        """Return the definition or raise NotFoundError."""

    @abstractmethod
    def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert or replace a definition."""

    @abstractmethod
    def list_definitions(self, status: Optional[DefinitionStatus] = None) -> List[WorkflowDefinition]:
        pass

    @abstractmethod
    def delete_definition(self, definition_id: str) -> None:
        pass

    @abstractmethod
    def count_instances(self, definition_id: str) -> int:
        pass

    # Instances

    @abstractmethod
    def create_instance(self, definition_id: str, actor_id: Optional[str], start_node_id: str,
                        context: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        pass

    @abstractmethod
    def get_instance(self, instance_id: str) -> WorkflowInstance:
        """Return the instance or raise NotFoundError."""

    @abstractmethod
    def list_instances(self, definition_id: Optional[str] = None,
                       status: Optional[InstanceStatus] = None) -> List[WorkflowInstance]:
        pass

    @abstractmethod
    def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Replace the stored instance if its version still matches.

        Raises:
            ConflictError: If another writer updated the instance first
        """

    # Tasks and approvals

    @abstractmethod
    def create_task(self, instance: WorkflowInstance, node_id: str, title: str,
                    description: Optional[str] = None, assignee: Optional[str] = None,
                    due_date: Optional[datetime] = None) -> WorkflowTask:
        pass

    @abstractmethod
    def create_approval(self, task: WorkflowTask, approver: Optional[str]) -> WorkflowApproval:
        pass

    @abstractmethod
    def get_task(self, task_id: str) -> WorkflowTask:
        """Return the task or raise NotFoundError."""

    @abstractmethod
    def find_task(self, instance_id: str, node_id: str, step: int) -> Optional[WorkflowTask]:
        """Return the task created for one visit of a node, if any."""

    @abstractmethod
    def list_tasks(self, instance_id: Optional[str] = None, assignee: Optional[str] = None,
                   status: Optional[TaskStatus] = None) -> List[WorkflowTask]:
        pass

    @abstractmethod
    def get_approval_for_task(self, task_id: str) -> Optional[WorkflowApproval]:
        pass

    @abstractmethod
    def resolve_task(self, task_id: str, outcome: TaskStatus, actor_id: Optional[str],
                     metadata: Optional[Dict[str, Any]] = None) -> WorkflowTask:
        """Resolve an open task.

        Raises:
            ConflictError: If the task is no longer open
        """

    @abstractmethod
    def resolve_approval(self, approval_id: str, decision: ApprovalStatus, actor_id: Optional[str],
                         comments: Optional[str] = None) -> WorkflowApproval:
        """Record the decision on a pending approval.

        Raises:
            ConflictError: If the approval was already decided
        """

    @abstractmethod
    def skip_open_tasks(self, instance_id: str, actor_id: Optional[str], reason: Optional[str] = None) -> int:
        """Mark every open task of an instance as skipped. Returns the count."""

    # Events

    @abstractmethod
    def _store_event(self, instance_id: str, event_type: InstanceEventType, message: str,
                     node_id: Optional[str], payload: Dict[str, Any]) -> InstanceEvent:
        pass

    @abstractmethod
    def list_events(self, instance_id: str) -> List[InstanceEvent]:
        pass

    def record_event(self, instance_id: str, event_type: InstanceEventType, message: str,
                     node_id: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> InstanceEvent:
        """Persist a state-change event and hand it to every listener."""
        event = self._store_event(instance_id, event_type, message, node_id, payload or {})
        self._notify(event)
        return event

    def add_listener(self, listener: EventListener) -> None:
        """Subscribe to every recorded event."""
        with self._listener_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._listener_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, event: InstanceEvent) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(
                    f"Event listener failed for {event.event_type.value} on instance {event.instance_id}: {e}",
                    exc_info=True
                )


class SqlAlchemyInstanceStore(InstanceStore):
    """InstanceStore backed by the SQLAlchemy tables in ``bizflow.storage``."""

    def __init__(self, session_factory: sessionmaker):
        super().__init__()
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str, table: Optional[str] = None):
        """Yield a session, committing on success and translating database errors."""
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except WorkflowEngineError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}",
                               operation=operation, table=table)
        finally:
            session.close()

    # Conversions

    @staticmethod
    def _to_definition(model: WorkflowDefinitionModel) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=model.id,
            name=model.name,
            description=model.description,
            status=DefinitionStatus(model.status),
            graph=WorkflowGraph.model_validate(model.flow_data or {}),
            created_by=model.created_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_instance(model: WorkflowInstanceModel) -> WorkflowInstance:
        return WorkflowInstance(
            id=model.id,
            definition_id=model.workflow_id,
            status=InstanceStatus(model.status),
            current_node_id=model.current_node_id,
            context=dict(model.context_data or {}),
            started_by=model.started_by,
            started_at=model.started_at,
            completed_at=model.completed_at,
            version=model.version,
            step=model.step,
        )

    @staticmethod
    def _to_task(model: WorkflowTaskModel) -> WorkflowTask:
        return WorkflowTask(
            id=model.id,
            instance_id=model.instance_id,
            node_id=model.node_id,
            step=model.step,
            title=model.title,
            description=model.description,
            assignee=model.assigned_to,
            status=TaskStatus(model.status),
            due_date=model.due_date,
            completed_by=model.completed_by,
            completed_at=model.completed_at,
            completion_metadata=dict(model.completion_metadata or {}),
            created_at=model.created_at,
        )

    @staticmethod
    def _to_approval(model: WorkflowApprovalModel) -> WorkflowApproval:
        return WorkflowApproval(
            id=model.id,
            instance_id=model.instance_id,
            task_id=model.task_id,
            node_id=model.node_id,
            title=model.title,
            approver_id=model.approver_id,
            status=ApprovalStatus(model.status),
            comments=model.comments,
            decided_at=model.approved_at,
            created_at=model.created_at,
        )

    @staticmethod
    def _to_event(model: WorkflowEventModel) -> InstanceEvent:
        return InstanceEvent(
            id=model.id,
            instance_id=model.instance_id,
            event_type=InstanceEventType(model.event_type),
            node_id=model.node_id,
            message=model.message,
            payload=dict(model.payload or {}),
            timestamp=model.timestamp,
        )

    # Definitions

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        with self._session("get_definition", "workflows") as session:
            model = session.get(WorkflowDefinitionModel, definition_id)
            if model is None:
                raise NotFoundError(f"Workflow definition {definition_id} not found",
                                    resource="Definition", resource_id=definition_id)
            return self._to_definition(model)

    def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        now = datetime.utcnow()
        with self._session("save_definition", "workflows") as session:
            model = session.get(WorkflowDefinitionModel, definition.id)
            if model is None:
                model = WorkflowDefinitionModel(id=definition.id, created_at=definition.created_at or now)
                session.add(model)
            model.name = definition.name
            model.description = definition.description
            model.status = definition.status.value
            model.flow_data = definition.graph.model_dump(by_alias=True, exclude_none=True)
            model.created_by = definition.created_by
            model.updated_at = now
            session.flush()
            saved = self._to_definition(model)

        logger.info(f"Saved workflow definition {saved.id} ({saved.status.value})")
        return saved

    def list_definitions(self, status: Optional[DefinitionStatus] = None) -> List[WorkflowDefinition]:
        with self._session("list_definitions", "workflows") as session:
            query = select(WorkflowDefinitionModel).order_by(WorkflowDefinitionModel.created_at)
            if status is not None:
                query = query.where(WorkflowDefinitionModel.status == status.value)
            return [self._to_definition(model) for model in session.scalars(query)]

    def delete_definition(self, definition_id: str) -> None:
        with self._session("delete_definition", "workflows") as session:
            model = session.get(WorkflowDefinitionModel, definition_id)
            if model is None:
                raise NotFoundError(f"Workflow definition {definition_id} not found",
                                    resource="Definition", resource_id=definition_id)
            session.delete(model)
        logger.info(f"Deleted workflow definition {definition_id}")

    def count_instances(self, definition_id: str) -> int:
        with self._session("count_instances", "workflow_instances") as session:
            query = select(func.count()).select_from(WorkflowInstanceModel).where(
                WorkflowInstanceModel.workflow_id == definition_id
            )
            return session.scalar(query) or 0

    # Instances

    def create_instance(self, definition_id: str, actor_id: Optional[str], start_node_id: str,
                        context: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        with self._session("create_instance", "workflow_instances") as session:
            if session.get(WorkflowDefinitionModel, definition_id) is None:
                raise NotFoundError(f"Workflow definition {definition_id} not found",
                                    resource="Definition", resource_id=definition_id)
            model = WorkflowInstanceModel(
                id=str(uuid.uuid4()),
                workflow_id=definition_id,
                status=InstanceStatus.IN_PROGRESS.value,
                current_node_id=start_node_id,
                context_data=dict(context or {}),
                started_by=actor_id,
                started_at=datetime.utcnow(),
                version=0,
                step=1,
            )
            session.add(model)
            session.flush()
            instance = self._to_instance(model)

        logger.info(f"Created workflow instance {instance.id} for definition {definition_id}")
        return instance

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        with self._session("get_instance", "workflow_instances") as session:
            model = session.get(WorkflowInstanceModel, instance_id)
            if model is None:
                raise NotFoundError(f"Workflow instance {instance_id} not found",
                                    resource="Instance", resource_id=instance_id)
            return self._to_instance(model)

    def list_instances(self, definition_id: Optional[str] = None,
                       status: Optional[InstanceStatus] = None) -> List[WorkflowInstance]:
        with self._session("list_instances", "workflow_instances") as session:
            query = select(WorkflowInstanceModel).order_by(WorkflowInstanceModel.started_at)
            if definition_id:
                query = query.where(WorkflowInstanceModel.workflow_id == definition_id)
            if status is not None:
                query = query.where(WorkflowInstanceModel.status == status.value)
            return [self._to_instance(model) for model in session.scalars(query)]

    def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._session("update_instance", "workflow_instances") as session:
            result = session.execute(
                update(WorkflowInstanceModel)
                .where(WorkflowInstanceModel.id == instance.id)
                .where(WorkflowInstanceModel.version == instance.version)
                .values(
                    status=instance.status.value,
                    current_node_id=instance.current_node_id,
                    context_data=dict(instance.context),
                    completed_at=instance.completed_at,
                    step=instance.step,
                    version=instance.version + 1,
                )
            )
            if result.rowcount == 0:
                if session.get(WorkflowInstanceModel, instance.id) is None:
                    raise NotFoundError(f"Workflow instance {instance.id} not found",
                                        resource="Instance", resource_id=instance.id)
                raise ConflictError(
                    f"Workflow instance {instance.id} was modified concurrently (expected version {instance.version})",
                    reason=ConflictError.VERSION_MISMATCH
                )

        return instance.model_copy(update={"version": instance.version + 1})

    # Tasks and approvals

    def create_task(self, instance: WorkflowInstance, node_id: str, title: str,
                    description: Optional[str] = None, assignee: Optional[str] = None,
                    due_date: Optional[datetime] = None) -> WorkflowTask:
        session: Session = self._session_factory()
        try:
            model = WorkflowTaskModel(
                id=str(uuid.uuid4()),
                instance_id=instance.id,
                node_id=node_id,
                step=instance.step,
                title=title,
                description=description,
                assigned_to=assignee,
                status=TaskStatus.PENDING.value,
                due_date=due_date,
                created_at=datetime.utcnow(),
            )
            session.add(model)
            session.commit()
            task = self._to_task(model)
        except IntegrityError:
            session.rollback()
            raise ConflictError(
                f"A task already exists for node {node_id} at step {instance.step} of instance {instance.id}",
                reason=ConflictError.VERSION_MISMATCH
            )
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to create task: {str(e)}", operation="create_task", table="workflow_tasks")
        finally:
            session.close()

        logger.info(f"Created task {task.id} at node {node_id} for instance {instance.id}")
        return task

    def create_approval(self, task: WorkflowTask, approver: Optional[str]) -> WorkflowApproval:
        with self._session("create_approval", "workflow_approvals") as session:
            model = WorkflowApprovalModel(
                id=str(uuid.uuid4()),
                instance_id=task.instance_id,
                task_id=task.id,
                node_id=task.node_id,
                title=task.title,
                approver_id=approver,
                status=ApprovalStatus.PENDING.value,
                created_at=datetime.utcnow(),
            )
            session.add(model)
            session.flush()
            return self._to_approval(model)

    def get_task(self, task_id: str) -> WorkflowTask:
        with self._session("get_task", "workflow_tasks") as session:
            model = session.get(WorkflowTaskModel, task_id)
            if model is None:
                raise NotFoundError(f"Task {task_id} not found", resource="Task", resource_id=task_id)
            return self._to_task(model)

    def find_task(self, instance_id: str, node_id: str, step: int) -> Optional[WorkflowTask]:
        with self._session("find_task", "workflow_tasks") as session:
            model = session.scalars(
                select(WorkflowTaskModel)
                .where(WorkflowTaskModel.instance_id == instance_id)
                .where(WorkflowTaskModel.node_id == node_id)
                .where(WorkflowTaskModel.step == step)
            ).first()
            return self._to_task(model) if model is not None else None

    def list_tasks(self, instance_id: Optional[str] = None, assignee: Optional[str] = None,
                   status: Optional[TaskStatus] = None) -> List[WorkflowTask]:
        with self._session("list_tasks", "workflow_tasks") as session:
            query = select(WorkflowTaskModel).order_by(WorkflowTaskModel.created_at, WorkflowTaskModel.step)
            if instance_id:
                query = query.where(WorkflowTaskModel.instance_id == instance_id)
            if assignee:
                query = query.where(WorkflowTaskModel.assigned_to == assignee)
            if status is not None:
                query = query.where(WorkflowTaskModel.status == status.value)
            return [self._to_task(model) for model in session.scalars(query)]

    def get_approval_for_task(self, task_id: str) -> Optional[WorkflowApproval]:
        with self._session("get_approval_for_task", "workflow_approvals") as session:
            model = session.scalars(
                select(WorkflowApprovalModel).where(WorkflowApprovalModel.task_id == task_id)
            ).first()
            return self._to_approval(model) if model is not None else None

    def resolve_task(self, task_id: str, outcome: TaskStatus, actor_id: Optional[str],
                     metadata: Optional[Dict[str, Any]] = None) -> WorkflowTask:
        with self._session("resolve_task", "workflow_tasks") as session:
            result = session.execute(
                update(WorkflowTaskModel)
                .where(WorkflowTaskModel.id == task_id)
                .where(WorkflowTaskModel.status.in_(OPEN_TASK_STATUSES))
                .values(
                    status=outcome.value,
                    completed_by=actor_id,
                    completed_at=datetime.utcnow(),
                    completion_metadata=dict(metadata or {}),
                )
            )
            if result.rowcount == 0:
                model = session.get(WorkflowTaskModel, task_id)
                if model is None:
                    raise NotFoundError(f"Task {task_id} not found", resource="Task", resource_id=task_id)
                raise ConflictError(f"Task {task_id} is already {model.status}",
                                    reason=ConflictError.TASK_ALREADY_RESOLVED)
            session.expire_all()
            task = self._to_task(session.get(WorkflowTaskModel, task_id))

        logger.info(f"Resolved task {task_id} as {outcome.value} by {actor_id}")
        return task

    def resolve_approval(self, approval_id: str, decision: ApprovalStatus, actor_id: Optional[str],
                         comments: Optional[str] = None) -> WorkflowApproval:
        with self._session("resolve_approval", "workflow_approvals") as session:
            result = session.execute(
                update(WorkflowApprovalModel)
                .where(WorkflowApprovalModel.id == approval_id)
                .where(WorkflowApprovalModel.status == ApprovalStatus.PENDING.value)
                .values(
                    status=decision.value,
                    approver_id=actor_id,
                    comments=comments,
                    approved_at=datetime.utcnow(),
                )
            )
            if result.rowcount == 0:
                model = session.get(WorkflowApprovalModel, approval_id)
                if model is None:
                    raise NotFoundError(f"Approval {approval_id} not found",
                                        resource="Approval", resource_id=approval_id)
                raise ConflictError(f"Approval {approval_id} is already {model.status}",
                                    reason=ConflictError.TASK_ALREADY_RESOLVED)
            session.expire_all()
            approval = self._to_approval(session.get(WorkflowApprovalModel, approval_id))

        logger.info(f"Approval {approval_id} decided as {decision.value} by {actor_id}")
        return approval

    def skip_open_tasks(self, instance_id: str, actor_id: Optional[str], reason: Optional[str] = None) -> int:
        with self._session("skip_open_tasks", "workflow_tasks") as session:
            result = session.execute(
                update(WorkflowTaskModel)
                .where(WorkflowTaskModel.instance_id == instance_id)
                .where(WorkflowTaskModel.status.in_(OPEN_TASK_STATUSES))
                .values(
                    status=TaskStatus.SKIPPED.value,
                    completed_by=actor_id,
                    completed_at=datetime.utcnow(),
                    completion_metadata={"reason": reason} if reason else {},
                )
            )
            return result.rowcount

    # Events

    def _store_event(self, instance_id: str, event_type: InstanceEventType, message: str,
                     node_id: Optional[str], payload: Dict[str, Any]) -> InstanceEvent:
        with self._session("record_event", "workflow_events") as session:
            model = WorkflowEventModel(
                instance_id=instance_id,
                timestamp=datetime.utcnow(),
                node_id=node_id,
                event_type=event_type.value,
                message=message,
                payload=payload,
            )
            session.add(model)
            session.flush()
            return self._to_event(model)

    def list_events(self, instance_id: str) -> List[InstanceEvent]:
        with self._session("list_events", "workflow_events") as session:
            query = (
                select(WorkflowEventModel)
                .where(WorkflowEventModel.instance_id == instance_id)
                .order_by(WorkflowEventModel.id)
            )
            return [self._to_event(model) for model in session.scalars(query)]
