"""Tests for the definition lifecycle."""

import pytest

from bizflow.core.exceptions import (
    ConflictError,
    GraphValidationError,
    NotFoundError,
    WorkflowValidationError,
)
from bizflow.models.core import DefinitionStatus
from graph_builders import edge, graph, node, task_graph


def broken_graph():
    return graph([node("start", "start"), node("A", "task")], [edge("start", "A")])


class TestDefinitionManager:
    """Test cases for DefinitionManager."""

    def test_create_draft(self, definition_manager):
        definition = definition_manager.create("Expense claim", task_graph(), "Claims under 500",
                                               created_by="author")

        assert definition.id
        assert definition.status == DefinitionStatus.DRAFT
        assert definition.created_by == "author"
        assert definition.created_at is not None

        stored = definition_manager.get(definition.id)
        assert stored.name == "Expense claim"
        assert stored.graph == task_graph()

    def test_drafts_skip_validation(self, definition_manager):
        definition = definition_manager.create("Work in progress", broken_graph())
        assert definition.status == DefinitionStatus.DRAFT

    def test_create_active_requires_valid_graph(self, definition_manager):
        with pytest.raises(GraphValidationError) as exc_info:
            definition_manager.create("Broken", broken_graph(), status=DefinitionStatus.ACTIVE)
        assert exc_info.value.reason == "NoEnd"
        assert definition_manager.list() == []

    def test_explicit_id(self, definition_manager):
        definition = definition_manager.create("Onboarding", task_graph(), definition_id="onboarding")
        assert definition.id == "onboarding"

        with pytest.raises(WorkflowValidationError, match="already exists"):
            definition_manager.create("Onboarding again", task_graph(), definition_id="onboarding")

    def test_blank_name_rejected(self, definition_manager):
        with pytest.raises(ValueError):
            definition_manager.create("   ", task_graph())

    def test_get_missing(self, definition_manager):
        with pytest.raises(NotFoundError) as exc_info:
            definition_manager.get("missing")
        assert exc_info.value.error_code == "DefinitionNotFound"

    def test_update(self, definition_manager):
        definition = definition_manager.create("Old name", task_graph())
        new_graph = task_graph(title="Sign contract")

        updated = definition_manager.update(definition.id, name="  New name ", description="Updated",
                                            graph=new_graph)

        assert updated.name == "New name"
        assert updated.description == "Updated"
        assert updated.graph.node_by_id("A").params == {"title": "Sign contract"}
        assert updated.created_at == definition.created_at

    def test_update_active_must_stay_valid(self, definition_manager):
        definition = definition_manager.create("Live", task_graph(), status=DefinitionStatus.ACTIVE)

        with pytest.raises(GraphValidationError):
            definition_manager.update(definition.id, graph=broken_graph())
        assert definition_manager.get(definition.id).graph == task_graph()

    def test_graph_frozen_while_instances_run(self, definition_manager, execution_engine):
        definition = definition_manager.create("Live", task_graph(), status=DefinitionStatus.ACTIVE)
        instance_id = execution_engine.start(definition.id, "alice")

        with pytest.raises(ConflictError) as exc_info:
            definition_manager.update(definition.id, graph=task_graph(title="Rewired"))
        assert exc_info.value.reason == ConflictError.DEFINITION_IN_USE
        assert exc_info.value.details["running_instances"] == [instance_id]
        assert definition_manager.get(definition.id).graph == task_graph()

        renamed = definition_manager.update(definition.id, name="Still live", graph=task_graph())
        assert renamed.name == "Still live"

        execution_engine.cancel(instance_id, "admin")
        updated = definition_manager.update(definition.id, graph=task_graph(title="Rewired"))
        assert updated.graph.node_by_id("A").params == {"title": "Rewired"}

    def test_activate(self, definition_manager):
        definition = definition_manager.create("Draft", task_graph())

        activated = definition_manager.activate(definition.id)

        assert activated.status == DefinitionStatus.ACTIVE
        assert definition_manager.get(definition.id).status == DefinitionStatus.ACTIVE

    def test_activate_invalid(self, definition_manager):
        definition = definition_manager.create("Draft", broken_graph())

        with pytest.raises(GraphValidationError):
            definition_manager.activate(definition.id)
        assert definition_manager.get(definition.id).status == DefinitionStatus.DRAFT

    def test_archive(self, definition_manager):
        definition = definition_manager.create("Retired", task_graph(), status=DefinitionStatus.ACTIVE)

        assert definition_manager.archive(definition.id).status == DefinitionStatus.ARCHIVED

    def test_list_filters_by_status(self, definition_manager):
        definition_manager.create("Draft", task_graph())
        active = definition_manager.create("Active", task_graph(), status=DefinitionStatus.ACTIVE)

        summaries = definition_manager.list(DefinitionStatus.ACTIVE)

        assert [s.id for s in summaries] == [active.id]
        assert summaries[0].node_count == 3
        assert len(definition_manager.list()) == 2

    def test_validate_does_not_store(self, definition_manager):
        result = definition_manager.validate(broken_graph())

        assert not result.is_valid
        assert result.reason == "NoEnd"
        assert definition_manager.list() == []

    def test_delete(self, definition_manager):
        definition = definition_manager.create("Temporary", task_graph())

        definition_manager.delete(definition.id)

        with pytest.raises(NotFoundError):
            definition_manager.get(definition.id)
        with pytest.raises(NotFoundError):
            definition_manager.delete(definition.id)

    def test_delete_with_instances(self, definition_manager, execution_engine):
        definition = definition_manager.create("Used", task_graph(), status=DefinitionStatus.ACTIVE)
        execution_engine.start(definition.id, "alice")

        with pytest.raises(ConflictError) as exc_info:
            definition_manager.delete(definition.id)

        assert exc_info.value.reason == ConflictError.DEFINITION_HAS_INSTANCES
        assert definition_manager.get(definition.id)
