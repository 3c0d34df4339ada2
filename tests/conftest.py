"""Pytest configuration and fixtures."""

import os
import tempfile

import pytest

from bizflow.core.definition_manager import DefinitionManager
from bizflow.core.execution_engine import ExecutionEngine
from bizflow.core.handler_registry import HandlerRegistry
from bizflow.core.instance_store import SqlAlchemyInstanceStore
from bizflow.core.validator import GraphValidator
from bizflow.models.core import DefinitionStatus
from bizflow.storage.database import build_engine, create_session_factory, create_tables


@pytest.fixture
def temp_db_url():
    """Create a temporary SQLite database file and return its URL."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    yield f"sqlite:///{db_path}"

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def db_engine(temp_db_url):
    """Create a database engine with all tables."""
    engine = build_engine(temp_db_url)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    """Create an InstanceStore backed by the temporary database."""
    return SqlAlchemyInstanceStore(create_session_factory(db_engine))


@pytest.fixture
def handler_registry():
    """Create a HandlerRegistry with the built-in handlers."""
    return HandlerRegistry()


@pytest.fixture
def validator(handler_registry):
    return GraphValidator(handler_registry)


@pytest.fixture
def definition_manager(store, validator):
    return DefinitionManager(store, validator)


@pytest.fixture
def execution_engine(store, handler_registry, validator):
    """Create an ExecutionEngine with short limits for testing."""
    engine = ExecutionEngine(
        store=store,
        handler_registry=handler_registry,
        validator=validator,
        automation_timeout=2.0,
        max_steps=50,
        automation_workers=2,
    )
    yield engine
    engine.shutdown()


@pytest.fixture
def active_definition(definition_manager):
    """Factory storing a graph as an active definition and returning its ID."""
    def _create(graph, name="Test workflow"):
        definition = definition_manager.create(name, graph, created_by="author", status=DefinitionStatus.ACTIVE)
        return definition.id
    return _create
