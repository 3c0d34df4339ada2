"""Tests for the execution engine's advance loop."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from bizflow.core.exceptions import (
    ConflictError,
    InvalidDefinitionError,
    InvalidOutcomeError,
    NotFoundError,
    RunFailure,
)
from bizflow.core.execution_engine import ExecutionEngine
from bizflow.models.core import (
    ApprovalStatus,
    DefinitionStatus,
    InstanceEventType,
    InstanceStatus,
    TaskStatus,
    WorkflowDefinition,
)
from graph_builders import (
    approval_graph,
    automation_chain,
    condition_graph,
    edge,
    graph,
    node,
    revision_loop_graph,
    task_graph,
)


def open_tasks(store, instance_id):
    return [task for task in store.list_tasks(instance_id=instance_id) if task.is_open]


def single_open_task(store, instance_id):
    tasks = open_tasks(store, instance_id)
    assert len(tasks) == 1
    return tasks[0]


def event_types(store, instance_id):
    return [event.event_type for event in store.list_events(instance_id)]


def branch_graph(predicate, args, branches=("approve", "deny")):
    """start -> decide -> (first: end_a, second: end_b)"""
    return graph(
        [
            node("start", "start"),
            node("decide", "condition", predicate=predicate, args=args),
            node("end_a", "end"),
            node("end_b", "end"),
        ],
        [
            edge("start", "decide"),
            edge("decide", "end_a", branches[0]),
            edge("decide", "end_b", branches[1]),
        ],
    )


class TestTaskNodes:
    """Instances waiting on and resuming from human tasks."""

    def test_start_suspends_at_first_task(self, execution_engine, store, active_definition):
        definition_id = active_definition(task_graph())

        instance_id = execution_engine.start(definition_id, "alice")

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.IN_PROGRESS
        assert instance.current_node_id == "A"

        tasks = store.list_tasks(instance_id=instance_id)
        assert len(tasks) == 1
        assert tasks[0].node_id == "A"
        assert tasks[0].status == TaskStatus.PENDING
        assert tasks[0].title == "Review request"
        assert tasks[0].assignee == "alice"
        assert not any(task.node_id == "end" for task in tasks)

    def test_completing_task_completes_instance(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        task = single_open_task(store, instance_id)

        status = execution_engine.resume_task(task.id, "alice", "completed", comments="Looks good")

        assert status == InstanceStatus.COMPLETED
        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.current_node_id is None
        assert instance.completed_at is not None

        resolved = store.get_task(task.id)
        assert resolved.status == TaskStatus.COMPLETED
        assert resolved.completed_by == "alice"
        assert resolved.completion_metadata == {"comments": "Looks good"}

    def test_skipping_task_also_moves_on(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        task = single_open_task(store, instance_id)

        assert execution_engine.resume_task(task.id, "bob", " Skipped ") == InstanceStatus.COMPLETED
        assert store.get_task(task.id).status == TaskStatus.SKIPPED

    def test_task_params(self, execution_engine, store, active_definition):
        definition_id = active_definition(task_graph(title="Check invoice", assignee="clerk", due_in_hours=24))

        before = datetime.utcnow()
        instance_id = execution_engine.start(definition_id, "alice")
        task = single_open_task(store, instance_id)

        assert task.title == "Check invoice"
        assert task.assignee == "clerk"
        assert before + timedelta(hours=23) < task.due_date < datetime.utcnow() + timedelta(hours=25)

    def test_invalid_due_in_hours_is_ignored(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph(due_in_hours="soon")), "alice")
        assert single_open_task(store, instance_id).due_date is None

    def test_initial_context_is_kept(self, execution_engine, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice", {"order_id": 42})
        assert execution_engine.get_instance_status(instance_id).context == {"order_id": 42}


class TestApprovalNodes:
    """Approvals move on when approved and reject the instance otherwise."""

    def test_approved(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(approval_graph(approver="manager")), "alice")
        task = single_open_task(store, instance_id)
        approval = store.get_approval_for_task(task.id)
        assert approval.approver_id == "manager"
        assert approval.status == ApprovalStatus.PENDING

        status = execution_engine.resume_task(task.id, "manager", "approved", comments="Fine")

        assert status == InstanceStatus.COMPLETED
        approval = store.get_approval_for_task(task.id)
        assert approval.status == ApprovalStatus.APPROVED
        assert approval.comments == "Fine"
        assert approval.decided_at is not None

    def test_rejected(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(approval_graph()), "alice")
        task = single_open_task(store, instance_id)

        status = execution_engine.resume_task(task.id, "manager", "REJECTED", comments="Over budget")

        assert status == InstanceStatus.REJECTED
        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.REJECTED
        assert instance.current_node_id is None
        assert instance.context["rejection"] == {
            "node_id": "A",
            "rejected_by": "manager",
            "comments": "Over budget",
        }
        assert store.get_approval_for_task(task.id).status == ApprovalStatus.REJECTED
        assert InstanceEventType.INSTANCE_REJECTED in event_types(store, instance_id)

    def test_approver_defaults_to_assignee(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(approval_graph(assignee="lead")), "alice")
        task = single_open_task(store, instance_id)

        assert task.assignee == "lead"
        assert store.get_approval_for_task(task.id).approver_id == "lead"

    def test_approval_rejects_task_outcomes(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(approval_graph()), "alice")
        task = single_open_task(store, instance_id)

        with pytest.raises(InvalidOutcomeError):
            execution_engine.resume_task(task.id, "manager", "completed")
        assert store.get_task(task.id).is_open

    def test_task_rejects_approval_outcomes(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        task = single_open_task(store, instance_id)

        with pytest.raises(InvalidOutcomeError):
            execution_engine.resume_task(task.id, "alice", "approved")

    def test_unknown_outcome(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        task = single_open_task(store, instance_id)

        with pytest.raises(InvalidOutcomeError) as exc_info:
            execution_engine.resume_task(task.id, "alice", "done")
        assert exc_info.value.error_code == "InvalidOutcome"


class TestConditionNodes:
    """Branch selection through registered predicates."""

    def test_true_branch_reaches_approval(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(condition_graph()), "alice", {"amount": 5000})

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.current_node_id == "approve"
        assert store.get_approval_for_task(single_open_task(store, instance_id).id) is not None

    def test_false_branch_completes(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(condition_graph()), "alice", {"amount": 10})

        assert execution_engine.get_instance_status(instance_id).status == InstanceStatus.COMPLETED
        assert store.list_tasks(instance_id=instance_id) == []
        branch = [e for e in store.list_events(instance_id) if e.event_type == InstanceEventType.BRANCH_SELECTED]
        assert branch[0].payload["label"] == "false"

    def test_string_result_selects_labelled_branch(self, execution_engine, active_definition):
        definition_id = active_definition(branch_graph("context_value", {"field": "decision"}))

        first = execution_engine.start(definition_id, "alice", {"decision": "Deny"})

        assert execution_engine.get_instance_status(first).status == InstanceStatus.COMPLETED
        events = execution_engine.store.list_events(first)
        assert any(e.event_type == InstanceEventType.NODE_ENTERED and e.node_id == "end_b" for e in events)

    def test_no_matching_branch_rejects_instance(self, execution_engine, store, active_definition):
        definition_id = active_definition(branch_graph("context_value", {"field": "decision"}))

        instance_id = execution_engine.start(definition_id, "alice", {"decision": "maybe"})

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.REJECTED
        assert instance.context["failure"]["code"] == RunFailure.NO_MATCHING_BRANCH
        assert instance.context["failure"]["node_id"] == "decide"
        assert "maybe" in instance.context["failure"]["reason"]
        assert InstanceEventType.RUN_FAILURE in event_types(store, instance_id)

    def test_unknown_predicate(self, execution_engine, active_definition):
        instance_id = execution_engine.start(active_definition(branch_graph("is_vip", {})), "alice")

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.REJECTED
        assert instance.context["failure"]["code"] == RunFailure.UNKNOWN_HANDLER

    def test_invalid_predicate_args(self, execution_engine, active_definition):
        instance_id = execution_engine.start(active_definition(branch_graph("context_truthy", {})), "alice")
        failure = execution_engine.get_instance_status(instance_id).context["failure"]
        assert failure["code"] == RunFailure.CONDITION_ERROR

    def test_predicate_exception(self, execution_engine, handler_registry, active_definition):
        def explode(context):
            raise KeyError("customer")

        handler_registry.register_predicate("explode", explode)
        instance_id = execution_engine.start(active_definition(branch_graph("explode", {})), "alice")

        failure = execution_engine.get_instance_status(instance_id).context["failure"]
        assert failure["code"] == RunFailure.CONDITION_ERROR
        assert "KeyError" in failure["reason"]

    def test_predicate_with_unusable_result(self, execution_engine, handler_registry, active_definition):
        handler_registry.register_predicate("listy", lambda context: ["approve"])
        instance_id = execution_engine.start(active_definition(branch_graph("listy", {})), "alice")

        failure = execution_engine.get_instance_status(instance_id).context["failure"]
        assert failure["code"] == RunFailure.CONDITION_ERROR

    def test_predicate_receives_copy_of_context(self, execution_engine, handler_registry, active_definition):
        def meddle(context):
            context["tampered"] = True
            return "approve"

        handler_registry.register_predicate("meddle", meddle)
        instance_id = execution_engine.start(active_definition(branch_graph("meddle", {})), "alice", {"x": 1})

        assert execution_engine.get_instance_status(instance_id).context == {"x": 1}


class TestAutomationNodes:
    """Automation handlers run inline within one advance call."""

    def test_chain_traversed_in_one_call(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(automation_chain()), "alice")

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.context == {"counter": 2, "notified": True}
        assert event_types(store, instance_id).count(InstanceEventType.AUTOMATION_COMPLETED) == 3

    def test_handler_exception(self, execution_engine, handler_registry, active_definition):
        def fail(context):
            raise RuntimeError("SMTP down")

        handler_registry.register_automation("send_email", fail)
        instance_id = execution_engine.start(active_definition(automation_chain([{"handler": "send_email"}])), "alice")

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.REJECTED
        assert instance.context["failure"]["code"] == RunFailure.AUTOMATION_FAILED
        assert "SMTP down" in instance.context["failure"]["reason"]

    def test_unknown_handler(self, execution_engine, active_definition):
        instance_id = execution_engine.start(active_definition(automation_chain([{"handler": "send_email"}])), "alice")
        failure = execution_engine.get_instance_status(instance_id).context["failure"]
        assert failure["code"] == RunFailure.UNKNOWN_HANDLER
        assert failure["node_id"] == "auto1"

    def test_invalid_input(self, execution_engine, active_definition):
        definition_id = active_definition(automation_chain([{"handler": "increment", "input": {"amount": 2}}]))
        instance_id = execution_engine.start(definition_id, "alice")

        failure = execution_engine.get_instance_status(instance_id).context["failure"]
        assert failure["code"] == RunFailure.AUTOMATION_FAILED

    def test_non_mapping_output(self, execution_engine, handler_registry, active_definition):
        handler_registry.register_automation("answer", lambda context: 42)
        instance_id = execution_engine.start(active_definition(automation_chain([{"handler": "answer"}])), "alice")

        failure = execution_engine.get_instance_status(instance_id).context["failure"]
        assert failure["code"] == RunFailure.AUTOMATION_FAILED

    def test_timeout(self, execution_engine, handler_registry, active_definition):
        release = threading.Event()

        def slow(context):
            release.wait(5)
            return {"late": True}

        handler_registry.register_automation("slow", slow)
        definition_id = active_definition(automation_chain([{"handler": "slow", "timeout": 0.2}]))

        try:
            instance_id = execution_engine.start(definition_id, "alice")
        finally:
            release.set()

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.REJECTED
        assert instance.context["failure"]["code"] == RunFailure.AUTOMATION_TIMEOUT
        assert "late" not in instance.context

    def test_queue_wait_not_counted_against_timeout(self, store, handler_registry, validator, active_definition):
        engine = ExecutionEngine(store=store, handler_registry=handler_registry, validator=validator,
                                 automation_timeout=2.0, automation_workers=1)
        release = threading.Event()

        def hang(context):
            release.wait(5)

        def fast(context):
            time.sleep(0.6)
            return {"ok": True}

        handler_registry.register_automation("hang", hang)
        handler_registry.register_automation("fast", fast)
        hung_definition = active_definition(automation_chain([{"handler": "hang", "timeout": 0.2}]))
        healthy_definition = active_definition(automation_chain([{"handler": "fast", "timeout": 1.0}]))

        try:
            hung_id = engine.start(hung_definition, "alice")
            # The only worker frees up 0.6s into the next run, which then needs 0.6s more
            threading.Timer(0.6, release.set).start()
            healthy_id = engine.start(healthy_definition, "alice")
        finally:
            release.set()
            engine.shutdown()

        assert engine.get_instance_status(hung_id).context["failure"]["code"] == RunFailure.AUTOMATION_TIMEOUT
        healthy = engine.get_instance_status(healthy_id)
        assert healthy.status == InstanceStatus.COMPLETED
        assert healthy.context["ok"] is True

    def test_no_free_worker(self, store, handler_registry, validator, active_definition):
        engine = ExecutionEngine(store=store, handler_registry=handler_registry, validator=validator,
                                 automation_timeout=2.0, automation_workers=1)
        release = threading.Event()
        calls = []

        def hang(context):
            release.wait(5)

        def fast(context):
            calls.append("fast")
            return {"ok": True}

        handler_registry.register_automation("hang", hang)
        handler_registry.register_automation("fast", fast)

        try:
            engine.start(active_definition(automation_chain([{"handler": "hang", "timeout": 0.2}])), "alice")
            instance_id = engine.start(active_definition(automation_chain([{"handler": "fast", "timeout": 0.2}])),
                                       "alice")
        finally:
            release.set()
            engine.shutdown()

        failure = engine.get_instance_status(instance_id).context["failure"]
        assert failure["code"] == RunFailure.AUTOMATION_UNAVAILABLE
        assert failure["node_id"] == "auto1"
        assert calls == []

    def test_step_limit(self, execution_engine, active_definition):
        endless = graph(
            [
                node("start", "start"),
                node("tick", "automation", handler="increment", input={"field": "ticks"}),
                node("done", "condition", predicate="context_truthy", args={"field": "stop"}),
                node("end", "end"),
            ],
            [
                edge("start", "tick"),
                edge("tick", "done"),
                edge("done", "tick", "false"),
                edge("done", "end", "true"),
            ],
        )
        instance_id = execution_engine.start(active_definition(endless), "alice")

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.REJECTED
        assert instance.context["failure"]["code"] == RunFailure.STEP_LIMIT_EXCEEDED
        assert 0 < instance.context["ticks"] <= execution_engine.max_steps


class TestLoops:
    """Revisiting a node creates a fresh task for each visit."""

    def test_revision_loop(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(revision_loop_graph()), "writer")

        first = single_open_task(store, instance_id)
        assert execution_engine.resume_task(first.id, "writer", "completed") == InstanceStatus.IN_PROGRESS

        second = single_open_task(store, instance_id)
        assert second.id != first.id
        assert second.node_id == "draft"
        assert second.step > first.step

        assert execution_engine.resume_task(second.id, "writer", "completed") == InstanceStatus.COMPLETED
        instance = execution_engine.get_instance_status(instance_id)
        assert instance.context["revisions"] == 2
        assert len(store.list_tasks(instance_id=instance_id)) == 2


class TestResumeConflicts:
    """Repeated, stale and concurrent resolutions."""

    def test_second_resume_conflicts(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        task = single_open_task(store, instance_id)
        execution_engine.resume_task(task.id, "alice", "completed")
        after_first = execution_engine.get_instance_status(instance_id)

        with pytest.raises(ConflictError) as exc_info:
            execution_engine.resume_task(task.id, "alice", "completed")

        assert exc_info.value.reason == ConflictError.TASK_ALREADY_RESOLVED
        assert execution_engine.get_instance_status(instance_id) == after_first

    def test_unknown_task(self, execution_engine):
        with pytest.raises(NotFoundError) as exc_info:
            execution_engine.resume_task("missing", "alice", "completed")
        assert exc_info.value.error_code == "TaskNotFound"

    def test_stale_task(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        instance = execution_engine.get_instance_status(instance_id)
        stray = store.create_task(instance.model_copy(update={"step": instance.step + 10}), "A", "Stray")

        with pytest.raises(ConflictError) as exc_info:
            execution_engine.resume_task(stray.id, "alice", "completed")

        assert exc_info.value.reason == ConflictError.STALE_TASK
        assert execution_engine.get_instance_status(instance_id).status == InstanceStatus.IN_PROGRESS

    def test_concurrent_resumes_have_one_winner(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        task = single_open_task(store, instance_id)
        barrier = threading.Barrier(4)

        def resume():
            barrier.wait()
            try:
                execution_engine.resume_task(task.id, "alice", "completed")
                return "ok"
            except ConflictError as e:
                return e.reason

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: resume(), range(4)))

        assert results.count("ok") == 1
        assert results.count(ConflictError.TASK_ALREADY_RESOLVED) == 3
        assert execution_engine.get_instance_status(instance_id).status == InstanceStatus.COMPLETED

    def test_resume_on_cancelled_instance(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        task = single_open_task(store, instance_id)
        execution_engine.cancel(instance_id, "admin")

        with pytest.raises(ConflictError) as exc_info:
            execution_engine.resume_task(task.id, "alice", "completed")
        assert exc_info.value.reason == ConflictError.TASK_ALREADY_RESOLVED


class TestStartAndAdvance:
    """Starting instances and re-entering the loop."""

    def test_draft_definition_cannot_start(self, execution_engine, definition_manager):
        definition = definition_manager.create("Draft", task_graph())

        with pytest.raises(InvalidDefinitionError, match="draft"):
            execution_engine.start(definition.id, "alice")

    def test_invalid_active_definition_cannot_start(self, execution_engine, store):
        broken = graph([node("start", "start"), node("orphan", "task"), node("end", "end")],
                       [edge("start", "end"), edge("orphan", "end")])
        store.save_definition(WorkflowDefinition(id="broken", name="Broken", status=DefinitionStatus.ACTIVE,
                                                 graph=broken))

        with pytest.raises(InvalidDefinitionError) as exc_info:
            execution_engine.start("broken", "alice")

        assert exc_info.value.error_code == "InvalidDefinition"
        assert exc_info.value.node_ids == ["orphan"]
        assert store.list_instances(definition_id="broken") == []

    def test_unknown_definition(self, execution_engine):
        with pytest.raises(NotFoundError):
            execution_engine.start("missing", "alice")

    def test_advance_is_idempotent_while_waiting(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        before = execution_engine.get_instance_status(instance_id)

        assert execution_engine.advance(instance_id) == InstanceStatus.IN_PROGRESS
        assert execution_engine.advance(instance_id) == InstanceStatus.IN_PROGRESS

        assert execution_engine.get_instance_status(instance_id) == before
        assert len(store.list_tasks(instance_id=instance_id)) == 1

    def test_advance_on_terminal_instance_is_noop(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(automation_chain()), "alice")
        events_before = len(store.list_events(instance_id))

        assert execution_engine.advance(instance_id) == InstanceStatus.COMPLETED
        assert len(store.list_events(instance_id)) == events_before

    def test_unknown_instance_leaves_no_lock(self, execution_engine):
        for attempt in range(20):
            with pytest.raises(NotFoundError):
                execution_engine.advance(f"missing-{attempt}")
            with pytest.raises(NotFoundError):
                execution_engine.cancel(f"missing-{attempt}", "admin")

        assert execution_engine._instance_locks == {}

    def test_concurrent_instances(self, execution_engine, store, active_definition):
        definition_id = active_definition(task_graph())

        with ThreadPoolExecutor(max_workers=4) as pool:
            instance_ids = list(pool.map(lambda i: execution_engine.start(definition_id, f"user{i}"), range(4)))

        assert len(set(instance_ids)) == 4
        for instance_id in instance_ids:
            assert len(open_tasks(store, instance_id)) == 1


class TestCancel:

    def test_cancel_skips_open_tasks(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        task = single_open_task(store, instance_id)

        assert execution_engine.cancel(instance_id, "admin", "Duplicate request") == InstanceStatus.CANCELLED

        instance = execution_engine.get_instance_status(instance_id)
        assert instance.status == InstanceStatus.CANCELLED
        assert instance.current_node_id is None
        assert instance.context["cancellation"] == {
            "cancelled_by": "admin",
            "reason": "Duplicate request",
            "node_id": "A",
        }
        skipped = store.get_task(task.id)
        assert skipped.status == TaskStatus.SKIPPED
        assert skipped.completion_metadata == {"reason": "Duplicate request"}

    def test_cancel_terminal_instance(self, execution_engine, active_definition):
        instance_id = execution_engine.start(active_definition(automation_chain()), "alice")

        with pytest.raises(ConflictError) as exc_info:
            execution_engine.cancel(instance_id, "admin")
        assert exc_info.value.reason == ConflictError.INSTANCE_TERMINAL


class TestEvents:
    """State-change events recorded by the store."""

    def test_event_sequence(self, execution_engine, store, active_definition):
        instance_id = execution_engine.start(active_definition(task_graph()), "alice")
        execution_engine.resume_task(single_open_task(store, instance_id).id, "alice", "completed")

        assert event_types(store, instance_id) == [
            InstanceEventType.INSTANCE_STARTED,
            InstanceEventType.NODE_ENTERED,
            InstanceEventType.TASK_CREATED,
            InstanceEventType.INSTANCE_SUSPENDED,
            InstanceEventType.TASK_RESOLVED,
            InstanceEventType.NODE_ENTERED,
            InstanceEventType.INSTANCE_COMPLETED,
        ]

    def test_listeners_receive_events(self, execution_engine, store, active_definition):
        received = []
        store.add_listener(received.append)

        instance_id = execution_engine.start(active_definition(automation_chain()), "alice")

        assert [event.instance_id for event in received] == [instance_id] * len(received)
        assert received[0].event_type == InstanceEventType.INSTANCE_STARTED
        assert received[-1].event_type == InstanceEventType.INSTANCE_COMPLETED

        store.remove_listener(received.append)
        execution_engine.start(active_definition(automation_chain()), "alice")
        assert {event.instance_id for event in received} == {instance_id}

    def test_failing_listener_does_not_break_run(self, execution_engine, store, active_definition):
        def broken_listener(event):
            raise RuntimeError("subscriber offline")

        store.add_listener(broken_listener)
        instance_id = execution_engine.start(active_definition(automation_chain()), "alice")

        assert execution_engine.get_instance_status(instance_id).status == InstanceStatus.COMPLETED
