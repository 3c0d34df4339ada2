"""Execution engine that drives workflow instances through their graphs."""

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Union

from ..models.core import (
    ApprovalStatus,
    DefinitionStatus,
    EdgeDefinition,
    InstanceEventType,
    InstanceStatus,
    NodeDefinition,
    NodeType,
    TaskOutcome,
    TaskStatus,
    WorkflowGraph,
    WorkflowInstance,
    WorkflowTask,
    normalize_branch_label,
)
from .exceptions import (
    ConflictError,
    HandlerRegistryError,
    InvalidDefinitionError,
    InvalidOutcomeError,
    NotFoundError,
    RunFailure,
)
from .handler_registry import HandlerRegistry
from .instance_store import InstanceStore
from .logging import (
    clear_logging_context,
    get_logger,
    get_logging_context,
    log_with_context,
    set_logging_context,
)
from .validator import GraphValidator

logger = get_logger(__name__)

APPROVAL_OUTCOMES = (TaskOutcome.APPROVED, TaskOutcome.REJECTED)
TASK_OUTCOMES = (TaskOutcome.COMPLETED, TaskOutcome.SKIPPED)


class ExecutionEngine:
    """Runs the advance loop for workflow instances.

    The engine keeps no run state between calls. An instance waiting on a
    human is only a stored record; ``resume_task`` is a fresh call that
    resolves the task and drives the loop onward.
    """

    def __init__(self, store: InstanceStore, handler_registry: HandlerRegistry,
                 validator: Optional[GraphValidator] = None, automation_timeout: float = 30.0,
                 max_steps: int = 1000, automation_workers: int = 4):
        """Initialize the execution engine.

        Args:
            store: Persistence for definitions, instances, tasks and events
            handler_registry: Registry of condition predicates and automation handlers
            validator: Validator used by ``start``; one sharing the registry is built if omitted
            automation_timeout: Default seconds an automation handler may run
            max_steps: Node entries allowed within one advance call
            automation_workers: Threads available to automation handlers
        """
        self.store = store
        self.handler_registry = handler_registry
        self.validator = validator or GraphValidator(handler_registry)
        self.automation_timeout = automation_timeout
        self.max_steps = max_steps

        self._executor = ThreadPoolExecutor(max_workers=automation_workers,
                                            thread_name_prefix="bizflow-automation")

        # Per-instance mutual exclusion within this process
        self._instance_locks: Dict[str, threading.RLock] = {}
        self._lock_manager = threading.RLock()

        logger.info(f"ExecutionEngine initialized with automation_timeout={automation_timeout}s, "
                    f"max_steps={max_steps}, automation_workers={automation_workers}")

    # Public operations

    def start(self, definition_id: str, actor_id: Optional[str],
              initial_context: Optional[Dict[str, Any]] = None) -> str:
        """
        Start a new instance of an active, valid definition.

        Args:
            definition_id: ID of the definition to run
            actor_id: Identity starting the instance; default task assignee
            initial_context: Optional seed values for the instance context

        Returns:
            ID of the new instance

        Raises:
            NotFoundError: If the definition does not exist
            InvalidDefinitionError: If the definition is not active or fails validation
        """
        definition = self.store.get_definition(definition_id)

        if definition.status != DefinitionStatus.ACTIVE:
            raise InvalidDefinitionError(
                f"Workflow definition {definition_id} is {definition.status.value}, not active",
                definition_id=definition_id
            )

        result = self.validator.validate(definition)
        if not result.is_valid:
            raise InvalidDefinitionError(
                f"Workflow definition {definition_id} failed validation: "
                + "; ".join(issue.message for issue in result.errors),
                definition_id=definition_id,
                node_ids=result.node_ids,
                validation_errors=[issue.model_dump() for issue in result.errors],
            )

        start_node = definition.graph.start_nodes()[0]
        instance = self.store.create_instance(definition_id, actor_id, start_node.id, initial_context)
        self.store.record_event(
            instance.id, InstanceEventType.INSTANCE_STARTED,
            f"Instance started by {actor_id or 'anonymous'}",
            node_id=start_node.id,
            payload={"definition_id": definition_id, "actor_id": actor_id},
        )
        logger.info(f"Started instance {instance.id} of definition {definition_id}")

        self.advance(instance.id)
        return instance.id

    def advance(self, instance_id: str) -> InstanceStatus:
        """
        Drive an instance forward until it waits on a human or terminates.

        Safe to call repeatedly: a terminal instance is returned unchanged and
        an instance waiting on an open task stays where it is.
        """
        with self._instance_lock(instance_id), self._logging_context(instance_id, "advance"):
            status = self._advance_locked(instance_id)

        if status.is_terminal:
            self._cleanup_instance_lock(instance_id)
        return status

    def resume_task(self, task_id: str, actor_id: Optional[str], outcome: Union[TaskOutcome, str],
                    comments: Optional[str] = None) -> InstanceStatus:
        """
        Resolve a human task and continue its instance.

        Args:
            task_id: ID of the task to resolve
            actor_id: Identity resolving the task
            outcome: ``completed``/``skipped`` for tasks, ``approved``/``rejected`` for approvals
            comments: Optional free text kept with the decision

        Returns:
            Status of the instance after the advance loop ran

        Raises:
            NotFoundError: If the task does not exist
            InvalidOutcomeError: If the outcome does not fit the task's node
            ConflictError: If the task is already resolved or no longer current
        """
        try:
            outcome = TaskOutcome(outcome.strip().lower() if isinstance(outcome, str) else outcome)
        except ValueError:
            raise InvalidOutcomeError(
                f"Unknown outcome '{outcome}'. Expected one of: {', '.join(o.value for o in TaskOutcome)}",
                task_id=task_id, outcome=str(outcome)
            )

        task = self.store.get_task(task_id)
        instance_id = task.instance_id

        with self._instance_lock(instance_id), self._logging_context(instance_id, "resume_task"):
            # Re-read under the lock; another caller may have resolved it meanwhile
            task = self.store.get_task(task_id)
            if not task.is_open:
                raise ConflictError(f"Task {task_id} is already {task.status.value}",
                                    reason=ConflictError.TASK_ALREADY_RESOLVED)

            instance = self.store.get_instance(instance_id)
            if instance.is_terminal:
                raise ConflictError(f"Instance {instance_id} is already {instance.status.value}",
                                    reason=ConflictError.INSTANCE_TERMINAL)
            if instance.current_node_id != task.node_id or instance.step != task.step:
                raise ConflictError(
                    f"Task {task_id} does not belong to the node instance {instance_id} is waiting on",
                    reason=ConflictError.STALE_TASK
                )

            approval = self.store.get_approval_for_task(task.id)
            if approval is not None:
                if outcome not in APPROVAL_OUTCOMES:
                    raise InvalidOutcomeError(
                        f"Approval task {task_id} accepts 'approved' or 'rejected', got '{outcome.value}'",
                        task_id=task_id, outcome=outcome.value
                    )
                self.store.resolve_task(task.id, TaskStatus.COMPLETED, actor_id, {
                    "decision": outcome.value,
                    "rejected": outcome == TaskOutcome.REJECTED,
                    "comments": comments,
                })
                self.store.resolve_approval(approval.id, ApprovalStatus(outcome.value), actor_id, comments)
                self.store.record_event(
                    instance_id, InstanceEventType.APPROVAL_DECIDED,
                    f"Approval '{task.title}' {outcome.value} by {actor_id}",
                    node_id=task.node_id,
                    payload={"task_id": task.id, "approval_id": approval.id, "decision": outcome.value},
                )
            else:
                if outcome not in TASK_OUTCOMES:
                    raise InvalidOutcomeError(
                        f"Task {task_id} accepts 'completed' or 'skipped', got '{outcome.value}'",
                        task_id=task_id, outcome=outcome.value
                    )
                self.store.resolve_task(task.id, TaskStatus(outcome.value), actor_id,
                                        {"comments": comments} if comments else {})
                self.store.record_event(
                    instance_id, InstanceEventType.TASK_RESOLVED,
                    f"Task '{task.title}' {outcome.value} by {actor_id}",
                    node_id=task.node_id,
                    payload={"task_id": task.id, "outcome": outcome.value},
                )

            status = self._advance_locked(instance_id)

        if status.is_terminal:
            self._cleanup_instance_lock(instance_id)
        return status

    def cancel(self, instance_id: str, actor_id: Optional[str], reason: Optional[str] = None) -> InstanceStatus:
        """
        Cancel a running instance and skip its open tasks.

        Raises:
            NotFoundError: If the instance does not exist
            ConflictError: If the instance already reached a terminal status
        """
        with self._instance_lock(instance_id), self._logging_context(instance_id, "cancel"):
            instance = self.store.get_instance(instance_id)
            if instance.is_terminal:
                raise ConflictError(f"Instance {instance_id} is already {instance.status.value}",
                                    reason=ConflictError.INSTANCE_TERMINAL)

            skipped = self.store.skip_open_tasks(instance_id, actor_id, reason or "Instance cancelled")
            context = dict(instance.context)
            context["cancellation"] = {
                "cancelled_by": actor_id,
                "reason": reason,
                "node_id": instance.current_node_id,
            }
            updated = instance.model_copy(update={
                "status": InstanceStatus.CANCELLED,
                "current_node_id": None,
                "completed_at": datetime.utcnow(),
                "context": context,
            })
            self.store.update_instance(updated)
            self.store.record_event(
                instance_id, InstanceEventType.INSTANCE_CANCELLED,
                f"Instance cancelled by {actor_id}" + (f": {reason}" if reason else ""),
                node_id=instance.current_node_id,
                payload={"skipped_tasks": skipped, "reason": reason},
            )
            logger.info(f"Cancelled instance {instance_id} ({skipped} open task(s) skipped)")

        self._cleanup_instance_lock(instance_id)
        return InstanceStatus.CANCELLED

    def get_instance_status(self, instance_id: str) -> WorkflowInstance:
        """Return the stored instance, including status, current node and context."""
        return self.store.get_instance(instance_id)

    def shutdown(self) -> None:
        """Stop the automation thread pool."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._lock_manager:
            self._instance_locks.clear()
        logger.info("ExecutionEngine shutdown completed")

    # The advance loop

    def _advance_locked(self, instance_id: str) -> InstanceStatus:
        instance = self.store.get_instance(instance_id)
        if instance.is_terminal:
            return instance.status

        graph = self.store.get_definition(instance.definition_id).graph
        entries = 0
        try:
            while True:
                node = graph.node_by_id(instance.current_node_id)
                if node is None:
                    raise RunFailure(f"Node '{instance.current_node_id}' does not exist in the definition",
                                     code=RunFailure.MISSING_NODE, node_id=instance.current_node_id)

                if node.type == NodeType.END:
                    return self._finish(instance, InstanceStatus.COMPLETED, InstanceEventType.INSTANCE_COMPLETED,
                                        f"Instance completed at end node '{node.id}'", node.id)

                if node.type == NodeType.START:
                    target = self._single_target(graph, node)
                    instance = self._move(instance, target)

                elif node.type in (NodeType.TASK, NodeType.APPROVAL):
                    task = self.store.find_task(instance.id, node.id, instance.step)
                    if task is None:
                        self._create_human_task(instance, node)
                        self.store.record_event(
                            instance.id, InstanceEventType.INSTANCE_SUSPENDED,
                            f"Waiting on {node.type.value} '{node.label or node.id}'",
                            node_id=node.id,
                        )
                        return instance.status
                    if task.is_open:
                        return instance.status

                    if node.type == NodeType.APPROVAL and task.completion_metadata.get("rejected"):
                        context = dict(instance.context)
                        context["rejection"] = {
                            "node_id": node.id,
                            "rejected_by": task.completed_by,
                            "comments": task.completion_metadata.get("comments"),
                        }
                        instance = instance.model_copy(update={"context": context})
                        return self._finish(instance, InstanceStatus.REJECTED, InstanceEventType.INSTANCE_REJECTED,
                                            f"Approval '{task.title}' was rejected", node.id)

                    instance = self._move(instance, self._single_target(graph, node))

                elif node.type == NodeType.CONDITION:
                    edge = self._select_branch(graph, node, instance)
                    instance = self._move(instance, edge.target)

                elif node.type == NodeType.AUTOMATION:
                    output = self._run_automation(node, instance)
                    context = {**instance.context, **output}
                    self.store.record_event(
                        instance.id, InstanceEventType.AUTOMATION_COMPLETED,
                        f"Automation '{node.params.get('handler')}' completed",
                        node_id=node.id,
                        payload={"output_keys": sorted(output)},
                    )
                    instance = self._move(instance, self._single_target(graph, node), context)

                entries += 1
                if entries > self.max_steps:
                    raise RunFailure(
                        f"Exceeded {self.max_steps} node entries in one advance call",
                        code=RunFailure.STEP_LIMIT_EXCEEDED, node_id=instance.current_node_id
                    )

        except RunFailure as failure:
            return self._fail(instance, failure)

    def _move(self, instance: WorkflowInstance, target: str,
              context: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """Persist the transition onto ``target`` as a new visit."""
        updated = instance.model_copy(update={
            "current_node_id": target,
            "step": instance.step + 1,
            "context": context if context is not None else instance.context,
        })
        updated = self.store.update_instance(updated)
        self.store.record_event(updated.id, InstanceEventType.NODE_ENTERED,
                                f"Entered node '{target}'", node_id=target,
                                payload={"from": instance.current_node_id, "step": updated.step})
        logger.debug(f"Instance {updated.id} moved {instance.current_node_id} -> {target}")
        return updated

    def _finish(self, instance: WorkflowInstance, status: InstanceStatus, event_type: InstanceEventType,
                message: str, node_id: Optional[str]) -> InstanceStatus:
        updated = instance.model_copy(update={
            "status": status,
            "current_node_id": None,
            "completed_at": datetime.utcnow(),
        })
        self.store.update_instance(updated)
        self.store.record_event(instance.id, event_type, message, node_id=node_id)
        logger.info(f"Instance {instance.id} finished as {status.value}: {message}")
        return status

    def _fail(self, instance: WorkflowInstance, failure: RunFailure) -> InstanceStatus:
        log_with_context(logger, logging.WARNING,
                         f"Run failure on instance {instance.id} at node {failure.node_id}: {failure.message}",
                         failure_code=failure.code, node_id=failure.node_id)
        context = dict(instance.context)
        context["failure"] = failure.to_record()
        instance = instance.model_copy(update={"context": context})
        self.store.record_event(instance.id, InstanceEventType.RUN_FAILURE, failure.message,
                                node_id=failure.node_id, payload=failure.to_record())
        return self._finish(instance, InstanceStatus.REJECTED, InstanceEventType.INSTANCE_REJECTED,
                            f"Run failure {failure.code}", failure.node_id)

    def _single_target(self, graph: WorkflowGraph, node: NodeDefinition) -> str:
        edges = graph.outgoing_edges(node.id)
        if len(edges) != 1:
            raise RunFailure(
                f"{node.type.value.capitalize()} node '{node.id}' has {len(edges)} outgoing edges, expected 1",
                code=RunFailure.AMBIGUOUS_TRANSITION, node_id=node.id
            )
        return edges[0].target

    # Human tasks

    def _create_human_task(self, instance: WorkflowInstance, node: NodeDefinition) -> WorkflowTask:
        params = node.params
        title = params.get("title") or node.label or node.id
        assignee = params.get("assignee") or instance.started_by

        task = self.store.create_task(instance, node.id, title, node.description, assignee,
                                      self._due_date(node))
        self.store.record_event(instance.id, InstanceEventType.TASK_CREATED,
                                f"Task '{title}' assigned to {assignee}", node_id=node.id,
                                payload={"task_id": task.id, "assignee": assignee})

        if node.type == NodeType.APPROVAL:
            approver = params.get("approver") or assignee
            approval = self.store.create_approval(task, approver)
            self.store.record_event(instance.id, InstanceEventType.APPROVAL_CREATED,
                                    f"Approval '{title}' requested from {approver}", node_id=node.id,
                                    payload={"task_id": task.id, "approval_id": approval.id, "approver": approver})
        return task

    def _due_date(self, node: NodeDefinition) -> Optional[datetime]:
        due_in_hours = node.params.get("due_in_hours")
        if due_in_hours is None:
            return None
        try:
            return datetime.utcnow() + timedelta(hours=float(due_in_hours))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid due_in_hours {due_in_hours!r} on node {node.id}")
            return None

    # Conditions and automations

    def _select_branch(self, graph: WorkflowGraph, node: NodeDefinition, instance: WorkflowInstance) -> EdgeDefinition:
        name = node.params.get("predicate")
        try:
            predicate = self.handler_registry.get_predicate(name)
        except HandlerRegistryError as e:
            raise RunFailure(e.message, code=RunFailure.UNKNOWN_HANDLER, node_id=node.id)

        try:
            args = self.handler_registry.validate_args(predicate, node.params.get("args"))
        except HandlerRegistryError as e:
            raise RunFailure(e.message, code=RunFailure.CONDITION_ERROR, node_id=node.id)

        try:
            result = predicate.function(copy.deepcopy(instance.context), **args)
        except Exception as e:
            raise RunFailure(f"Predicate '{predicate.name}' raised {type(e).__name__}: {e}",
                             code=RunFailure.CONDITION_ERROR, node_id=node.id)

        if not isinstance(result, (bool, str, int)):
            raise RunFailure(f"Predicate '{predicate.name}' returned {type(result).__name__}, "
                             f"expected a bool or a branch label",
                             code=RunFailure.CONDITION_ERROR, node_id=node.id)

        label = normalize_branch_label(result)
        for edge in graph.outgoing_edges(node.id):
            if normalize_branch_label(edge.branch_label) == label:
                self.store.record_event(instance.id, InstanceEventType.BRANCH_SELECTED,
                                        f"Branch '{label}' selected", node_id=node.id,
                                        payload={"label": label, "edge_id": edge.id, "target": edge.target})
                return edge

        raise RunFailure(f"Condition '{node.label or node.id}' evaluated to '{label}' but no branch has that label",
                         code=RunFailure.NO_MATCHING_BRANCH, node_id=node.id)

    def _run_automation(self, node: NodeDefinition, instance: WorkflowInstance) -> Dict[str, Any]:
        name = node.params.get("handler")
        try:
            handler = self.handler_registry.get_automation(name)
        except HandlerRegistryError as e:
            raise RunFailure(e.message, code=RunFailure.UNKNOWN_HANDLER, node_id=node.id)

        try:
            kwargs = self.handler_registry.validate_args(handler, node.params.get("input"))
        except HandlerRegistryError as e:
            raise RunFailure(e.message, code=RunFailure.AUTOMATION_FAILED, node_id=node.id)

        timeout = self._automation_timeout(node)
        context = copy.deepcopy(instance.context)
        started = threading.Event()

        def run():
            started.set()
            return handler.function(context, **kwargs)

        future = self._executor.submit(run)
        # The timeout bounds the handler itself, not the wait for a free worker
        if not started.wait(timeout) and future.cancel():
            raise RunFailure(f"Automation '{handler.name}' found no free worker within {timeout} seconds",
                             code=RunFailure.AUTOMATION_UNAVAILABLE, node_id=node.id)
        try:
            output = future.result(timeout=timeout)
        except FutureTimeoutError:
            # The worker thread cannot be interrupted; its result is discarded
            raise RunFailure(f"Automation '{handler.name}' timed out after {timeout} seconds",
                             code=RunFailure.AUTOMATION_TIMEOUT, node_id=node.id)
        except Exception as e:
            raise RunFailure(f"Automation '{handler.name}' failed: {type(e).__name__}: {e}",
                             code=RunFailure.AUTOMATION_FAILED, node_id=node.id)

        if output is None:
            return {}
        if not isinstance(output, Mapping):
            raise RunFailure(f"Automation '{handler.name}' returned {type(output).__name__}, expected a mapping",
                             code=RunFailure.AUTOMATION_FAILED, node_id=node.id)
        return dict(output)

    def _automation_timeout(self, node: NodeDefinition) -> float:
        timeout = node.params.get("timeout")
        if timeout is None:
            return self.automation_timeout
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            return self.automation_timeout
        return timeout if timeout > 0 else self.automation_timeout

    # Locks and logging context

    def _get_instance_lock(self, instance_id: str) -> threading.RLock:
        with self._lock_manager:
            if instance_id not in self._instance_locks:
                self._instance_locks[instance_id] = threading.RLock()
            return self._instance_locks[instance_id]

    @contextmanager
    def _instance_lock(self, instance_id: str):
        lock = self._get_instance_lock(instance_id)
        try:
            with lock:
                yield
        except NotFoundError:
            # Unknown ids must not leave a lock behind
            self._cleanup_instance_lock(instance_id)
            raise

    def _cleanup_instance_lock(self, instance_id: str) -> None:
        with self._lock_manager:
            self._instance_locks.pop(instance_id, None)

    @contextmanager
    def _logging_context(self, instance_id: str, operation: str):
        previous = get_logging_context()
        set_logging_context(instance_id=instance_id, operation=operation)
        try:
            yield
        finally:
            clear_logging_context()
            set_logging_context(**previous)
