"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    GraphValidationError,
    InvalidDefinitionError,
    InvalidOutcomeError,
    NotFoundError,
    ConflictError,
    RunFailure,
    HandlerRegistryError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .handler_registry import HandlerRegistry
from .validator import GraphValidator
from .instance_store import InstanceStore, SqlAlchemyInstanceStore
from .execution_engine import ExecutionEngine
from .definition_manager import DefinitionManager

__all__ = [
    "WorkflowEngineError",
    "WorkflowValidationError",
    "GraphValidationError",
    "InvalidDefinitionError",
    "InvalidOutcomeError",
    "NotFoundError",
    "ConflictError",
    "RunFailure",
    "HandlerRegistryError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "HandlerRegistry",
    "GraphValidator",
    "InstanceStore",
    "SqlAlchemyInstanceStore",
    "ExecutionEngine",
    "DefinitionManager",
]
